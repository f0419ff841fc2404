"""HTTP-01 solver service module.

Resource managers for the solver pod, service and routing rule, the cleanup
engine, and the orchestrator that drives them for one Challenge.
"""

from http01_solver.services.solver.cleanup_manager import SolverCleanupManager
from http01_solver.services.solver.exceptions import (
    SolverConfigurationError,
    SolverError,
    SolverTransientError,
)
from http01_solver.services.solver.httproute_manager import SolverHTTPRouteManager
from http01_solver.services.solver.ingress_manager import SolverIngressManager
from http01_solver.services.solver.pod_manager import SolverPodManager
from http01_solver.services.solver.service_manager import SolverServiceManager
from http01_solver.services.solver.solver import HTTP01Solver

__all__ = [
    "HTTP01Solver",
    "SolverCleanupManager",
    "SolverConfigurationError",
    "SolverError",
    "SolverHTTPRouteManager",
    "SolverIngressManager",
    "SolverPodManager",
    "SolverServiceManager",
    "SolverTransientError",
]
