"""Cleanup and orphan sweep for solver resources.

Cleanup works from the identity key alone, so it succeeds whether or not the
Challenge still exists. Resources are removed in the reverse of the order they
were created: routing first, then the service, then the pod.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from http01_solver.integrations.kubernetes.models.challenge import (
    ACME_GROUP,
    ACME_VERSION,
    CHALLENGE_PLURAL,
    Challenge,
)
from http01_solver.integrations.kubernetes.models.solver import CleanupResult, SweepResult
from http01_solver.services.solver.base import KeyPredicate, SolverBaseManager
from http01_solver.services.solver.httproute_manager import SolverHTTPRouteManager
from http01_solver.services.solver.httproute_manager import fragment_keys as route_fragment_keys
from http01_solver.services.solver.ingress_manager import SolverIngressManager
from http01_solver.services.solver.ingress_manager import fragment_keys as ingress_fragment_keys
from http01_solver.services.solver.naming import KEY_LABEL, identity_key
from http01_solver.services.solver.pod_manager import SolverPodManager
from http01_solver.services.solver.service_manager import SolverServiceManager

if TYPE_CHECKING:
    from http01_solver.core.config import SolverSettings
    from http01_solver.integrations.kubernetes.client import KubernetesClient
    from http01_solver.integrations.kubernetes.models.challenge import ChallengeIdentity


class SolverCleanupManager(SolverBaseManager):
    """Removes solver resources for finished or vanished challenges."""

    _entity_name = "solver_cleanup"

    def __init__(self, client: KubernetesClient, settings: SolverSettings | None = None) -> None:
        super().__init__(client, settings)
        self._pods = SolverPodManager(client, self._settings)
        self._services = SolverServiceManager(client, self._settings)
        self._ingresses = SolverIngressManager(client, self._settings)
        self._routes = SolverHTTPRouteManager(client, self._settings)

    def cleanup(self, identity: ChallengeIdentity) -> CleanupResult:
        """Remove everything the solver created or merged for ``identity``."""
        return self.cleanup_key(identity.namespace, identity_key(identity))

    def cleanup_key(self, namespace: str, key: str) -> CleanupResult:
        """Remove every solver resource carrying ``key`` in ``namespace``.

        Safe to call repeatedly; objects already gone count as removed.
        """
        result = self._release(namespace, lambda k: k == key)
        cleanup = result.get(key) or CleanupResult(challenge_key=key)
        self._log.info(
            "cleaned_up_challenge",
            namespace=namespace,
            key=key,
            deleted=len(cleanup.deleted),
            patched=len(cleanup.patched),
        )
        return cleanup

    def sweep_orphans(self, namespace: str | None = None) -> SweepResult:
        """Remove solver resources whose Challenge no longer needs them.

        Solver resources are listed before Challenges: a Challenge created in
        between is then seen as live and its fresh resources are left alone.

        Args:
            namespace: Namespace to sweep, or None for all namespaces.
        """
        candidates = self._solver_keys(namespace)
        live = self._live_keys(namespace)
        orphaned = sorted(candidates - live)
        self._log.info(
            "sweeping_orphans",
            namespace=namespace or "*",
            candidates=len(candidates),
            live=len(live),
            orphaned=len(orphaned),
        )
        if not orphaned:
            return SweepResult(live_keys=len(live))

        targets = set(orphaned)
        by_key = self._release(namespace, targets.__contains__)
        return SweepResult(
            live_keys=len(live),
            orphaned_keys=orphaned,
            cleanups=[by_key.get(k) or CleanupResult(challenge_key=k) for k in orphaned],
        )

    def _release(self, namespace: str | None, matches: KeyPredicate) -> dict[str, CleanupResult]:
        """Remove matching routing fragments, then services, then pods."""
        results: dict[str, CleanupResult] = {}

        def record(key: str, ref: str, patched: bool = False) -> None:
            entry = results.setdefault(key, CleanupResult(challenge_key=key))
            (entry.patched if patched else entry.deleted).append(ref)

        released = [
            *self._ingresses.release(namespace, matches),
            *self._routes.release(namespace, matches),
        ]
        for obj in released:
            for key in sorted(obj.keys):
                record(key, obj.ref, patched=not obj.deleted)

        for service in self._services.list_services(namespace):
            key = (service.labels or {}).get(KEY_LABEL)
            if key and matches(key) and service.namespace:
                if self._services.delete_service(service.name, service.namespace):
                    record(key, f"Service/{service.namespace}/{service.name}")

        for pod in self._pods.list_pods(namespace):
            key = (pod.labels or {}).get(KEY_LABEL)
            if key and matches(key) and pod.namespace:
                if self._pods.delete_pod(pod.name, pod.namespace):
                    record(key, f"Pod/{pod.namespace}/{pod.name}")

        return results

    def _solver_keys(self, namespace: str | None) -> set[str]:
        """Identity keys of every solver pod, service and routing fragment."""
        keys: set[str] = set()
        for summary in [*self._pods.list_pods(namespace), *self._services.list_services(namespace)]:
            if key := (summary.labels or {}).get(KEY_LABEL):
                keys.add(key)
        for ingress in self._ingresses.list_ingresses(namespace):
            wire = self._client.to_dict(ingress)
            keys |= ingress_fragment_keys(wire) | _label_key(wire)
        for route in self._routes.list_routes(namespace):
            keys |= route_fragment_keys(route) | _label_key(route)
        return keys

    def _live_keys(self, namespace: str | None) -> set[str]:
        """Identity keys of every Challenge that still needs its solver."""
        try:
            if namespace is None:
                result: dict[str, Any] = self._client.call(
                    self._client.custom_objects.list_cluster_custom_object,
                    group=ACME_GROUP,
                    version=ACME_VERSION,
                    plural=CHALLENGE_PLURAL,
                )
            else:
                result = self._client.call(
                    self._client.custom_objects.list_namespaced_custom_object,
                    group=ACME_GROUP,
                    version=ACME_VERSION,
                    namespace=namespace,
                    plural=CHALLENGE_PLURAL,
                )
        except Exception as e:
            self._handle_api_error(e, "Challenge", None, namespace)

        keys = set()
        for item in result.get("items", []):
            challenge = Challenge.from_k8s_object(item)
            if challenge.type.upper() == "HTTP-01" and not challenge.is_final:
                keys.add(identity_key(challenge.identity))
        return keys


def _label_key(obj: dict[str, Any]) -> set[str]:
    key = ((obj.get("metadata") or {}).get("labels") or {}).get(KEY_LABEL)
    return {key} if key else set()
