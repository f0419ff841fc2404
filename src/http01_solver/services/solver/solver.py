"""HTTP-01 solver orchestrator.

Drives the pod, service and routing ensurers for one Challenge, in that order,
and the cleanup engine once the Challenge is finished. Every call is a bounded
sequence of API requests; anything that is not ready yet is reported as such
for the caller to retry later.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from http01_solver.core.config import SolverSettings
from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesError,
    KubernetesValidationError,
)
from http01_solver.integrations.kubernetes.models.challenge import (
    ACME_GROUP,
    ACME_VERSION,
    CHALLENGE_PLURAL,
    Challenge,
    HTTP01GatewayHTTPRouteSolver,
    HTTP01IngressSolver,
)
from http01_solver.integrations.kubernetes.models.solver import (
    CleanupResult,
    RoutingSummary,
    SolveResult,
    SolverServiceSummary,
    SweepResult,
)
from http01_solver.services.solver.cleanup_manager import SolverCleanupManager
from http01_solver.services.solver.exceptions import (
    SolverConfigurationError,
    SolverError,
    SolverTransientError,
)
from http01_solver.services.solver.httproute_manager import SolverHTTPRouteManager
from http01_solver.services.solver.ingress_manager import SolverIngressManager
from http01_solver.services.solver.naming import challenge_path, identity_key
from http01_solver.services.solver.pod_manager import SolverPodManager
from http01_solver.services.solver.service_manager import SolverServiceManager, selects_pod

if TYPE_CHECKING:
    from http01_solver.integrations.kubernetes.client import KubernetesClient

logger = structlog.get_logger()


class HTTP01Solver:
    """Provisions and tears down the serving path for HTTP-01 challenges.

    Holds no per-challenge state: every decision is made from what the API
    server returns, so any number of instances may work on the same
    challenges concurrently.

    Example:
        ```python
        solver = HTTP01Solver(client)
        challenge = solver.load_challenge("default", "example-com-1234")
        result = solver.reconcile(challenge)
        ```
    """

    def __init__(
        self,
        client: KubernetesClient,
        settings: SolverSettings | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the solver.

        Args:
            client: Kubernetes API client instance.
            settings: Solver-wide settings; defaults apply when omitted.
            http_client: Client for self checks; one is created on demand.
        """
        self._client = client
        self._settings = settings or SolverSettings()
        self._http = http_client
        self._owns_http = http_client is None
        self._log = logger.bind(entity="http01_solver")

        self._pods = SolverPodManager(client, self._settings)
        self._services = SolverServiceManager(client, self._settings)
        self._ingresses = SolverIngressManager(client, self._settings)
        self._routes = SolverHTTPRouteManager(client, self._settings)
        self._cleanup = SolverCleanupManager(client, self._settings)

    # =========================================================================
    # Entry Points
    # =========================================================================

    def reconcile(self, challenge: Challenge) -> SolveResult | CleanupResult:
        """Present or clean up, depending on the challenge's lifecycle."""
        if challenge.is_final:
            return self.cleanup(challenge)
        return self.present(challenge)

    def present(self, challenge: Challenge) -> SolveResult:
        """Bring the challenge's pod, service and routing rule into place.

        Stops at the first component that is not ready yet; the routing rule
        is only touched once the pod is Running and Ready.

        Raises:
            SolverConfigurationError: The solver configuration cannot work.
            SolverTransientError: An API failure a later call may not hit.
        """
        self._require_http01(challenge)
        log = self._log.bind(
            challenge=f"{challenge.namespace}/{challenge.name}",
            challenge_key=identity_key(challenge.identity),
        )

        with self._solver_errors(challenge):
            pod = self._pods.ensure_pod(challenge)
            if not (pod.phase == "Running" and pod.ready):
                log.info("solver_pod_not_ready", pod=pod.name, phase=pod.phase)
                return SolveResult(
                    ready=False,
                    stage="pod",
                    message=f"waiting for pod {pod.name} to become ready (phase {pod.phase})",
                    pod=pod,
                )

            service = self._services.ensure_service(challenge, pod)
            if not selects_pod(service, pod):
                log.info("solver_service_not_ready", service=service.name)
                return SolveResult(
                    ready=False,
                    stage="service",
                    message=f"service {service.name} does not select pod {pod.name} yet",
                    pod=pod,
                    service=service,
                )

            routing = self._ensure_routing(challenge, service)

        if not routing.present:
            log.info("solver_routing_not_ready", kind=routing.kind, name=routing.name)
            return SolveResult(
                ready=False,
                stage="routing",
                message=f"{routing.kind} {routing.name} does not route the challenge path yet",
                pod=pod,
                service=service,
                routing=routing,
            )

        log.info("challenge_presented", kind=routing.kind, name=routing.name, mode=routing.mode)
        return SolveResult(
            ready=True,
            stage="ready",
            message=f"serving {challenge_path(challenge.token)} for {challenge.dns_name}",
            pod=pod,
            service=service,
            routing=routing,
        )

    def cleanup(self, challenge: Challenge) -> CleanupResult:
        """Remove everything presented for the challenge."""
        with self._solver_errors(challenge):
            return self._cleanup.cleanup(challenge.identity)

    def cleanup_key(self, namespace: str, key: str) -> CleanupResult:
        """Remove everything presented under an identity key.

        For challenges that are already gone and can no longer be read.
        """
        with self._solver_errors(None):
            return self._cleanup.cleanup_key(namespace, key)

    def sweep(self, namespace: str | None = None) -> SweepResult:
        """Remove solver resources of challenges that no longer need them.

        Args:
            namespace: Namespace to sweep, or None for all namespaces.
        """
        with self._solver_errors(None):
            return self._cleanup.sweep_orphans(namespace)

    def check(self, challenge: Challenge) -> bool:
        """Fetch the challenge URL the way the CA will and compare the body.

        Returns:
            True if the key authorization is served; False on any mismatch or
            network failure.
        """
        url = f"http://{challenge.dns_name}{challenge_path(challenge.token)}"
        try:
            response = self.http_client.get(url)
        except httpx.HTTPError as e:
            self._log.warning("self_check_failed", url=url, error=str(e))
            return False

        if response.status_code != 200:
            self._log.info("self_check_bad_status", url=url, status_code=response.status_code)
            return False
        if response.text.strip() != challenge.key:
            self._log.info("self_check_wrong_body", url=url)
            return False
        self._log.info("self_check_passed", url=url)
        return True

    def load_challenge(self, namespace: str, name: str) -> Challenge:
        """Read and parse a Challenge custom object.

        Raises:
            KubernetesNotFoundError: The Challenge does not exist.
        """
        try:
            obj: dict[str, Any] = self._client.call(
                self._client.custom_objects.get_namespaced_custom_object,
                group=ACME_GROUP,
                version=ACME_VERSION,
                namespace=namespace,
                plural=CHALLENGE_PLURAL,
                name=name,
            )
        except Exception as e:
            raise self._client.translate_api_exception(e, "Challenge", name, namespace) from e
        return Challenge.from_k8s_object(obj)

    # =========================================================================
    # Internals
    # =========================================================================

    @property
    def settings(self) -> SolverSettings:
        """Solver-wide settings in effect."""
        return self._settings

    @property
    def default_namespace(self) -> str:
        """Namespace from the connection config."""
        return self._client.default_namespace

    @property
    def http_client(self) -> httpx.Client:
        """HTTP client used for self checks."""
        if self._http is None:
            self._http = httpx.Client(
                timeout=httpx.Timeout(self._settings.self_check_timeout),
                follow_redirects=True,
            )
        return self._http

    def close(self) -> None:
        """Close the self-check HTTP client if this solver created it."""
        if self._http is not None and self._owns_http:
            self._http.close()
            self._http = None

    def __enter__(self) -> HTTP01Solver:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _ensure_routing(
        self, challenge: Challenge, service: SolverServiceSummary
    ) -> RoutingSummary:
        solver = challenge.solver
        if isinstance(solver, HTTP01GatewayHTTPRouteSolver):
            return self._routes.ensure_route(challenge, service)
        if isinstance(solver, HTTP01IngressSolver):
            return self._ingresses.ensure_ingress_rule(challenge, service)
        raise SolverConfigurationError(
            "challenge has no HTTP-01 solver configuration",
            challenge=f"{challenge.namespace}/{challenge.name}",
        )

    def _require_http01(self, challenge: Challenge) -> None:
        ref = f"{challenge.namespace}/{challenge.name}"
        if challenge.type.upper() != "HTTP-01":
            raise SolverConfigurationError(
                f"unsupported challenge type {challenge.type!r}", challenge=ref
            )
        if challenge.solver is None:
            raise SolverConfigurationError(
                "challenge has no HTTP-01 solver configuration", challenge=ref
            )
        if not (challenge.dns_name and challenge.token and challenge.key):
            raise SolverConfigurationError(
                "challenge is missing dnsName, token or key", challenge=ref
            )

    @contextmanager
    def _solver_errors(self, challenge: Challenge | None) -> Generator[None]:
        """Re-raise Kubernetes API errors as solver errors.

        Permission and validation failures will not fix themselves and are
        reported as configuration errors; everything else is transient.
        """
        ref = f"{challenge.namespace}/{challenge.name}" if challenge else None
        try:
            yield
        except SolverError:
            raise
        except (KubernetesAuthError, KubernetesValidationError) as e:
            self._log.error("solver_configuration_error", challenge=ref, error=str(e))
            raise SolverConfigurationError(str(e), challenge=ref) from e
        except KubernetesError as e:
            self._log.warning("solver_transient_error", challenge=ref, error=str(e))
            raise SolverTransientError(str(e), challenge=ref, cause=e) from e
