"""Kubernetes models used by the HTTP-01 solver."""

from http01_solver.integrations.kubernetes.models.base import K8sEntityBase, newest_first
from http01_solver.integrations.kubernetes.models.challenge import (
    Challenge,
    ChallengeIdentity,
    HTTP01GatewayHTTPRouteSolver,
    HTTP01IngressSolver,
    IngressTemplate,
    ObjectMetaOverrides,
    ParentReference,
    PodSpecOverrides,
    PodTemplate,
)
from http01_solver.integrations.kubernetes.models.solver import (
    CleanupResult,
    RoutingSummary,
    SolveResult,
    SolverIngressSummary,
    SolverPodSummary,
    SolverServiceSummary,
    SweepResult,
)

__all__ = [
    "Challenge",
    "ChallengeIdentity",
    "CleanupResult",
    "HTTP01GatewayHTTPRouteSolver",
    "HTTP01IngressSolver",
    "IngressTemplate",
    "K8sEntityBase",
    "ObjectMetaOverrides",
    "ParentReference",
    "PodSpecOverrides",
    "PodTemplate",
    "RoutingSummary",
    "SolveResult",
    "SolverIngressSummary",
    "SolverPodSummary",
    "SolverServiceSummary",
    "SweepResult",
    "newest_first",
]
