"""Solver service ensurer.

Routes cluster traffic for one challenge to its solver pod.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from http01_solver.integrations.kubernetes.exceptions import KubernetesConflictError
from http01_solver.integrations.kubernetes.models.base import newest_first
from http01_solver.integrations.kubernetes.models.solver import (
    SolverPodSummary,
    SolverServiceSummary,
)
from http01_solver.services.solver.base import SolverBaseManager, resource_version_guard
from http01_solver.services.solver.naming import (
    identity_key,
    key_selector,
    resource_name,
    solver_labels,
)

if TYPE_CHECKING:
    from kubernetes.client import V1Service

    from http01_solver.integrations.kubernetes.models.challenge import Challenge


class SolverServiceManager(SolverBaseManager):
    """Creates, verifies and removes solver services."""

    _entity_name = "solver_service"

    def ensure_service(
        self, challenge: Challenge, pod: SolverPodSummary | None = None
    ) -> SolverServiceSummary:
        """Make sure one service selects the challenge's solver pod.

        A service whose selector, port or type drifted is patched in place.

        Args:
            challenge: Challenge being solved.
            pod: The ensured solver pod, used only for logging context.

        Returns:
            The service the routing rule should point at.
        """
        ns = challenge.namespace
        services = [
            s
            for s in self.list_services(ns, key=identity_key(challenge.identity))
            if not s.terminating
        ]
        if not services:
            return self.create_service(challenge)

        newest, *extras = newest_first(services)
        for extra in extras:
            self._log.warning("deleting_duplicate_service", name=extra.name, namespace=ns)
            self.delete_service(extra.name, ns)

        ops = self._drift_ops(newest, challenge)
        if not ops:
            return newest

        self._log.info(
            "patching_drifted_service",
            name=newest.name,
            namespace=ns,
            pod=pod.name if pod else None,
            fields=[op["path"] for op in ops],
        )
        guard = resource_version_guard({"metadata": {"resourceVersion": newest.resource_version}})
        try:
            result = self._client.call(
                self._client.core_v1.patch_namespaced_service,
                name=newest.name,
                namespace=ns,
                body=[guard, *ops],
            )
        except Exception as e:
            self._handle_api_error(e, "Service", newest.name, ns)
        return SolverServiceSummary.from_k8s_object(result)

    def list_services(
        self, namespace: str | None, *, key: str | None = None
    ) -> list[SolverServiceSummary]:
        """List solver services, optionally only those of one identity key.

        Args:
            namespace: Target namespace, or None for all namespaces.
            key: Identity key to filter on.
        """
        selector = key_selector(key)
        try:
            if namespace is None:
                result = self._client.call(
                    self._client.core_v1.list_service_for_all_namespaces,
                    label_selector=selector,
                )
            else:
                result = self._client.call(
                    self._client.core_v1.list_namespaced_service,
                    namespace=namespace,
                    label_selector=selector,
                )
        except Exception as e:
            self._handle_api_error(e, "Service", None, namespace)
        return [SolverServiceSummary.from_k8s_object(svc) for svc in result.items]

    def create_service(self, challenge: Challenge) -> SolverServiceSummary:
        """Create the solver service, adopting one created concurrently."""
        body = self.build_service(challenge)
        name = body.metadata.name
        ns = challenge.namespace
        self._log.info("creating_service", name=name, namespace=ns, type=body.spec.type)
        try:
            result = self._client.call(
                self._client.core_v1.create_namespaced_service,
                namespace=ns,
                body=body,
            )
        except Exception as e:
            error = self._client.translate_api_exception(e, "Service", name, ns)
            if not (isinstance(error, KubernetesConflictError) and error.already_exists):
                raise error from e
            self._log.debug("service_already_exists", name=name, namespace=ns)
            try:
                result = self._client.call(
                    self._client.core_v1.read_namespaced_service,
                    name=name,
                    namespace=ns,
                )
            except Exception as read_error:
                self._handle_api_error(read_error, "Service", name, ns)
        self._log.info("created_service", name=name, namespace=ns)
        return SolverServiceSummary.from_k8s_object(result)

    def delete_service(self, name: str, namespace: str) -> bool:
        """Delete a solver service; returns False if it was already gone."""
        return self._delete(
            self._client.core_v1.delete_namespaced_service, "Service", name, namespace
        )

    def service_type(self, challenge: Challenge) -> str:
        """Service type requested by the challenge, else the configured default."""
        if challenge.solver and challenge.solver.service_type:
            return challenge.solver.service_type
        return self._settings.default_service_type

    def build_service(self, challenge: Challenge) -> V1Service:
        """Build the solver service for a challenge."""
        from kubernetes.client import (
            V1ObjectMeta,
            V1Service,
            V1ServicePort,
            V1ServiceSpec,
        )

        labels = solver_labels(challenge.identity)
        port = self._settings.listen_port
        return V1Service(
            metadata=V1ObjectMeta(
                name=resource_name(challenge.identity, "Service"),
                namespace=challenge.namespace,
                labels=labels,
                annotations={f"auth.istio.io/{port}": "NONE"},
            ),
            spec=V1ServiceSpec(
                type=self.service_type(challenge),
                selector=labels,
                ports=[
                    V1ServicePort(name="http", port=port, target_port=port, protocol="TCP"),
                ],
            ),
        )

    def _drift_ops(
        self, service: SolverServiceSummary, challenge: Challenge
    ) -> list[dict[str, Any]]:
        """JSON patch ops that bring the service back to its desired spec."""
        port = self._settings.listen_port
        labels = solver_labels(challenge.identity)
        desired_type = self.service_type(challenge)
        ops: list[dict[str, Any]] = []
        if service.selector != labels:
            ops.append({"op": "replace", "path": "/spec/selector", "value": labels})
        if service.port != port or service.target_port != str(port):
            ops.append(
                {
                    "op": "replace",
                    "path": "/spec/ports",
                    "value": [
                        {"name": "http", "port": port, "targetPort": port, "protocol": "TCP"}
                    ],
                }
            )
        if service.type != desired_type:
            ops.append({"op": "replace", "path": "/spec/type", "value": desired_type})
        return ops


def selects_pod(service: SolverServiceSummary, pod: SolverPodSummary) -> bool:
    """Whether the service's selector matches the pod's labels."""
    pod_labels = pod.labels or {}
    return bool(service.selector) and all(
        pod_labels.get(k) == v for k, v in service.selector.items()
    )
