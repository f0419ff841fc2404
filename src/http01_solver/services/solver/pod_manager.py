"""Solver pod ensurer.

Keeps exactly one ephemeral pod per challenge that answers
``/.well-known/acme-challenge/<token>`` with the key authorization.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from http01_solver.integrations.kubernetes.exceptions import KubernetesConflictError
from http01_solver.integrations.kubernetes.models.base import newest_first
from http01_solver.integrations.kubernetes.models.solver import SolverPodSummary
from http01_solver.services.solver.base import SolverBaseManager
from http01_solver.services.solver.naming import (
    challenge_path,
    identity_key,
    key_selector,
    resource_name,
    solver_labels,
)

if TYPE_CHECKING:
    from kubernetes.client import V1Pod

    from http01_solver.integrations.kubernetes.models.challenge import Challenge

CONTAINER_NAME = "acmesolver"


class SolverPodManager(SolverBaseManager):
    """Creates, verifies and removes solver pods.

    Pod specs are mostly immutable, so a pod whose image, arguments or port
    no longer match is deleted and recreated on a later call rather than
    patched.
    """

    _entity_name = "solver_pod"

    def ensure_pod(self, challenge: Challenge) -> SolverPodSummary:
        """Make sure one up-to-date solver pod exists for the challenge.

        Never waits: the returned summary's ``ready`` tells the caller whether
        to continue or come back later.

        Args:
            challenge: Challenge being solved.

        Returns:
            The pod the challenge is (or will be) served from.
        """
        ns = challenge.namespace
        pods = self.list_pods(ns, key=identity_key(challenge.identity))
        live = [p for p in pods if not p.terminating]

        if not live:
            if pods:
                # Same deterministic name; wait until the old pod is gone.
                self._log.debug("waiting_for_pod_termination", name=pods[0].name, namespace=ns)
                return pods[0].model_copy(update={"ready": False})
            return self.create_pod(challenge)

        newest, *extras = newest_first(live)
        for extra in extras:
            self._log.warning("deleting_duplicate_pod", name=extra.name, namespace=ns)
            self.delete_pod(extra.name, ns)

        drift = self.drifted_fields(newest, challenge)
        if drift:
            self._log.info("recreating_drifted_pod", name=newest.name, namespace=ns, fields=drift)
            self.delete_pod(newest.name, ns)
            return newest.model_copy(update={"ready": False})

        return newest

    def list_pods(self, namespace: str | None, *, key: str | None = None) -> list[SolverPodSummary]:
        """List solver pods, optionally only those of one identity key.

        Args:
            namespace: Target namespace, or None for all namespaces.
            key: Identity key to filter on.
        """
        selector = key_selector(key)
        try:
            if namespace is None:
                result = self._client.call(
                    self._client.core_v1.list_pod_for_all_namespaces,
                    label_selector=selector,
                )
            else:
                result = self._client.call(
                    self._client.core_v1.list_namespaced_pod,
                    namespace=namespace,
                    label_selector=selector,
                )
        except Exception as e:
            self._handle_api_error(e, "Pod", None, namespace)
        return [SolverPodSummary.from_k8s_object(pod) for pod in result.items]

    def create_pod(self, challenge: Challenge) -> SolverPodSummary:
        """Create the solver pod, adopting one created concurrently."""
        body = self.build_pod(challenge)
        name = body.metadata.name
        ns = challenge.namespace
        self._log.info("creating_pod", name=name, namespace=ns, dns_name=challenge.dns_name)
        try:
            result = self._client.call(
                self._client.core_v1.create_namespaced_pod,
                namespace=ns,
                body=body,
            )
        except Exception as e:
            error = self._client.translate_api_exception(e, "Pod", name, ns)
            if not (isinstance(error, KubernetesConflictError) and error.already_exists):
                raise error from e
            self._log.debug("pod_already_exists", name=name, namespace=ns)
            try:
                result = self._client.call(
                    self._client.core_v1.read_namespaced_pod,
                    name=name,
                    namespace=ns,
                )
            except Exception as read_error:
                self._handle_api_error(read_error, "Pod", name, ns)
        self._log.info("created_pod", name=name, namespace=ns)
        return SolverPodSummary.from_k8s_object(result)

    def delete_pod(self, name: str, namespace: str) -> bool:
        """Delete a solver pod; returns False if it was already gone."""
        return self._delete(self._client.core_v1.delete_namespaced_pod, "Pod", name, namespace)

    def desired_args(self, challenge: Challenge) -> list[str]:
        """Arguments the solver container must run with."""
        return [
            f"--listen-port={self._settings.listen_port}",
            f"--domain={challenge.dns_name}",
            f"--token={challenge.token}",
            f"--key={challenge.key}",
        ]

    def drifted_fields(self, pod: SolverPodSummary, challenge: Challenge) -> list[str]:
        """Security-relevant fields where the pod differs from what is desired."""
        drift = []
        if pod.image != self._settings.image:
            drift.append("image")
        if pod.args != self.desired_args(challenge):
            drift.append("args")
        if pod.container_port != self._settings.listen_port:
            drift.append("port")
        return drift

    def build_pod(self, challenge: Challenge) -> V1Pod:
        """Build the solver pod spec for a challenge."""
        from kubernetes.client import (
            V1Capabilities,
            V1Container,
            V1ContainerPort,
            V1HTTPGetAction,
            V1HTTPHeader,
            V1ObjectMeta,
            V1Pod,
            V1PodSecurityContext,
            V1PodSpec,
            V1Probe,
            V1ResourceRequirements,
            V1SeccompProfile,
            V1SecurityContext,
            V1TCPSocketAction,
        )

        settings = self._settings
        template = challenge.solver.pod_template if challenge.solver else None
        meta_overrides = template.metadata if template else None
        spec_overrides = template.spec if template else None
        port = settings.listen_port

        labels = {**(meta_overrides.labels if meta_overrides else {})}
        labels.update(solver_labels(challenge.identity))
        annotations = {"sidecar.istio.io/inject": "false"}
        annotations.update(meta_overrides.annotations if meta_overrides else {})

        readiness = V1Probe(
            http_get=V1HTTPGetAction(
                path=challenge_path(challenge.token),
                port=port,
                http_headers=[V1HTTPHeader(name="Host", value=challenge.dns_name)],
            ),
            initial_delay_seconds=1,
            period_seconds=5,
        )
        if settings.health_path:
            liveness = V1Probe(
                http_get=V1HTTPGetAction(path=settings.health_path, port=port),
                period_seconds=10,
            )
        else:
            liveness = V1Probe(tcp_socket=V1TCPSocketAction(port=port), period_seconds=10)

        container = V1Container(
            name=CONTAINER_NAME,
            image=settings.image,
            image_pull_policy=settings.image_pull_policy,
            args=self.desired_args(challenge),
            ports=[V1ContainerPort(name="http", container_port=port)],
            readiness_probe=readiness,
            liveness_probe=liveness,
            resources=V1ResourceRequirements(
                requests={"cpu": settings.cpu_request, "memory": settings.memory_request},
                limits={"cpu": settings.cpu_limit, "memory": settings.memory_limit},
            ),
            security_context=V1SecurityContext(
                allow_privilege_escalation=False,
                read_only_root_filesystem=True,
                capabilities=V1Capabilities(drop=["ALL"]),
            ),
        )

        node_selector = {"kubernetes.io/os": "linux"}
        spec_kwargs: dict[str, Any] = {}
        if spec_overrides:
            node_selector.update(spec_overrides.node_selector)
            spec_kwargs = {
                "tolerations": spec_overrides.tolerations or None,
                "affinity": spec_overrides.affinity,
                "priority_class_name": spec_overrides.priority_class_name,
                "service_account_name": spec_overrides.service_account_name,
                "image_pull_secrets": spec_overrides.image_pull_secrets or None,
            }

        return V1Pod(
            metadata=V1ObjectMeta(
                name=resource_name(challenge.identity, "Pod"),
                namespace=challenge.namespace,
                labels=labels,
                annotations=annotations,
            ),
            spec=V1PodSpec(
                containers=[container],
                restart_policy="OnFailure",
                enable_service_links=False,
                node_selector=node_selector,
                security_context=V1PodSecurityContext(
                    run_as_non_root=settings.run_as_non_root,
                    seccomp_profile=V1SeccompProfile(type="RuntimeDefault"),
                ),
                **spec_kwargs,
            ),
        )
