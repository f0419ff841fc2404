"""End-to-end solver scenarios against the in-memory cluster."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest
import respx

from http01_solver.core.config import SolverSettings
from http01_solver.integrations.kubernetes.exceptions import KubernetesNotFoundError
from http01_solver.integrations.kubernetes.models.challenge import Challenge
from http01_solver.integrations.kubernetes.models.solver import CleanupResult, SolveResult
from http01_solver.services.solver.exceptions import (
    SolverConfigurationError,
    SolverTransientError,
)
from http01_solver.services.solver.naming import identity_key, resource_name
from http01_solver.services.solver.solver import HTTP01Solver
from tests.unit.conftest import (
    FakeCluster,
    FakeKubernetesClient,
    api_error,
    challenge_object,
)

MERGE_WEB = {"http01": {"ingress": {"name": "web"}}}
APP_PATH = {
    "path": "/app",
    "pathType": "Prefix",
    "backend": {"service": {"name": "web", "port": {"number": 80}}},
}


def _user_ingress(hosts: tuple[str, ...] = ("example.com",)) -> dict[str, Any]:
    return {
        "metadata": {"name": "web", "namespace": "default"},
        "spec": {
            "ingressClassName": "nginx",
            "rules": [{"host": h, "http": {"paths": [dict(APP_PATH)]}} for h in hosts],
        },
    }


def _paths(cluster: FakeCluster, host: str = "example.com") -> list[str]:
    stored = cluster.get("ingresses", "default", "web")
    assert stored is not None
    rule = next(r for r in stored["spec"]["rules"] if r["host"] == host)
    return [p["path"] for p in rule["http"]["paths"]]


@pytest.fixture
def solver(fake_client: FakeKubernetesClient, solver_settings: SolverSettings) -> HTTP01Solver:
    """Solver backed by the fake cluster."""
    return HTTP01Solver(fake_client, solver_settings)


@pytest.mark.unit
@pytest.mark.solver
class TestPresent:
    """Tests for presenting a challenge."""

    def test_exclusive_ingress(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test pod, service and a one-rule Ingress are created."""
        challenge = make_challenge("example.com", "tok1")

        result = solver.present(challenge)

        assert result.ready
        assert result.stage == "ready"
        assert result.message == "serving /.well-known/acme-challenge/tok1 for example.com"
        assert result.routing is not None and result.routing.mode == "exclusive"
        assert cluster.names("pods") == [resource_name(challenge.identity, "Pod")]
        assert cluster.names("services") == [resource_name(challenge.identity, "Service")]
        assert cluster.names("ingresses") == [resource_name(challenge.identity, "Ingress")]

    def test_requests_carry_timeout(
        self,
        solver: HTTP01Solver,
        fake_client: FakeKubernetesClient,
        cluster: FakeCluster,
        make_challenge: Callable[..., Challenge],
    ) -> None:
        """Test every API request made while presenting and cleaning up is bounded."""
        challenge = make_challenge()
        solver.present(challenge)
        solver.cleanup(challenge)

        assert cluster.request_timeouts
        assert set(cluster.request_timeouts) == {fake_client.timeout}

    def test_idempotent(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test presenting twice creates nothing more and writes nothing."""
        challenge = make_challenge()
        solver.present(challenge)
        writes = len(cluster.writes)

        result = solver.present(challenge)

        assert result.ready
        assert result.routing is not None and not result.routing.changed
        assert len(cluster.writes) == writes

    def test_waits_for_pod_before_routing(self, solver_settings: SolverSettings) -> None:
        """Test routing is only touched once the pod is ready."""
        client = FakeKubernetesClient(auto_ready_pods=False)
        solver = HTTP01Solver(client, solver_settings)
        challenge = Challenge.from_k8s_object(challenge_object())

        pending = solver.present(challenge)

        assert not pending.ready
        assert pending.stage == "pod"
        assert pending.pod is not None
        assert client.cluster.names("services") == []
        assert client.cluster.names("ingresses") == []

        client.cluster.set_pod_ready("default", pending.pod.name)
        assert solver.present(challenge).ready
        assert len(client.cluster.names("ingresses")) == 1

    @pytest.mark.parametrize("phase", ["Pending", "Succeeded"])
    def test_ready_condition_outside_running_phase(
        self, solver_settings: SolverSettings, phase: str
    ) -> None:
        """Test a pod reporting Ready outside the Running phase still gates routing."""
        client = FakeKubernetesClient(auto_ready_pods=False)
        solver = HTTP01Solver(client, solver_settings)
        challenge = Challenge.from_k8s_object(challenge_object())
        pod_name = resource_name(challenge.identity, "Pod")
        solver.present(challenge)
        client.cluster.objects[("pods", "default", pod_name)]["status"] = {
            "phase": phase,
            "conditions": [{"type": "Ready", "status": "True"}],
        }

        result = solver.present(challenge)

        assert not result.ready
        assert result.stage == "pod"
        assert client.cluster.names("ingresses") == []

    def test_merge_keeps_user_paths(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test the solver path lands after the user's path in the named Ingress."""
        cluster.put("ingresses", _user_ingress())
        challenge = make_challenge("example.com", "tok2", solver=MERGE_WEB)

        result = solver.present(challenge)

        assert result.ready
        assert result.routing is not None and result.routing.mode == "merge"
        assert _paths(cluster) == ["/app", "/.well-known/acme-challenge/tok2"]
        assert cluster.names("ingresses") == ["web"]

    def test_gateway_route(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test the gatewayHTTPRoute variant creates an HTTPRoute and no Ingress."""
        challenge = make_challenge(
            solver={"http01": {"gatewayHTTPRoute": {"parentRefs": [{"name": "gw"}]}}}
        )

        result = solver.present(challenge)

        assert result.ready
        assert result.routing is not None and result.routing.kind == "HTTPRoute"
        assert cluster.names("httproutes") == [resource_name(challenge.identity, "HTTPRoute")]
        assert cluster.names("ingresses") == []

    def test_reconcile_dispatches_on_state(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test pending challenges are presented and finished ones cleaned up."""
        pending = make_challenge()
        assert isinstance(solver.reconcile(pending), SolveResult)

        finished = Challenge.from_k8s_object(challenge_object(state="valid"))
        result = solver.reconcile(finished)

        assert isinstance(result, CleanupResult)
        assert result.changed
        assert cluster.names("pods") == []


@pytest.mark.unit
@pytest.mark.solver
class TestSharedIngress:
    """Tests for several challenges merged into one Ingress."""

    def test_cleanup_removes_only_its_own_path(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test three merged challenges, then cleanup of the middle one."""
        cluster.put("ingresses", _user_ingress())
        a, b, c = (make_challenge("example.com", t, solver=MERGE_WEB) for t in "abc")
        for challenge in (a, b, c):
            assert solver.present(challenge).ready

        result = solver.cleanup(b)

        assert result.patched == ["Ingress/default/web"]
        assert _paths(cluster) == [
            "/app",
            "/.well-known/acme-challenge/a",
            "/.well-known/acme-challenge/c",
        ]
        assert sorted(cluster.names("pods")) == sorted(
            resource_name(x.identity, "Pod") for x in (a, c)
        )

    def test_re_merge_does_not_duplicate(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test presenting again after others merged adds no second copy."""
        cluster.put("ingresses", _user_ingress())
        a = make_challenge("example.com", "a", solver=MERGE_WEB)
        b = make_challenge("example.com", "b", solver=MERGE_WEB)
        solver.present(a)
        solver.present(b)
        solver.present(a)

        assert _paths(cluster) == [
            "/app",
            "/.well-known/acme-challenge/a",
            "/.well-known/acme-challenge/b",
        ]

    def test_concurrent_merges_for_two_hosts(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test a merge racing another one retries and both paths end up present."""
        cluster.put("ingresses", _user_ingress(("a.example.com", "b.example.com")))
        challenge_a = make_challenge("a.example.com", "ta", solver=MERGE_WEB)
        challenge_b = make_challenge("b.example.com", "tb", solver=MERGE_WEB)
        cluster.before_next_patch(lambda: solver.present(challenge_b))

        result = solver.present(challenge_a)

        assert result.ready
        assert _paths(cluster, "a.example.com") == ["/app", "/.well-known/acme-challenge/ta"]
        assert _paths(cluster, "b.example.com") == ["/app", "/.well-known/acme-challenge/tb"]
        assert cluster.writes.count(("patch", "ingresses", "default", "web")) == 2

    def test_same_domain_two_owners(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test two certificates validating one domain get separate resources."""
        first = make_challenge("example.com", "tok", name="c1", owner="order-1")
        second = make_challenge("example.com", "tok", name="c2", owner="order-2")
        solver.present(first)
        solver.present(second)

        assert identity_key(first.identity) != identity_key(second.identity)
        assert len(cluster.names("pods")) == 2
        solver.cleanup(first)
        assert cluster.names("pods") == [resource_name(second.identity, "Pod")]


@pytest.mark.unit
@pytest.mark.solver
class TestSolverErrors:
    """Tests for error reporting."""

    def test_ambiguous_ingress_class(
        self, solver: HTTP01Solver, cluster: FakeCluster, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test several classes and no default is a configuration error."""
        cluster.add_ingress_class("nginx")
        cluster.add_ingress_class("traefik")

        with pytest.raises(SolverConfigurationError) as exc_info:
            solver.present(make_challenge())

        assert exc_info.value.challenge == "default/example-com-tok1"
        assert cluster.names("ingresses") == []

    def test_merge_target_missing(
        self, solver: HTTP01Solver, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test naming an Ingress that does not exist is a configuration error."""
        with pytest.raises(SolverConfigurationError, match="does not exist"):
            solver.present(make_challenge(solver=MERGE_WEB))

    def test_unsupported_type(self, solver: HTTP01Solver) -> None:
        """Test non HTTP-01 challenges are rejected."""
        obj = challenge_object()
        obj["spec"]["type"] = "DNS-01"
        with pytest.raises(SolverConfigurationError, match="unsupported challenge type"):
            solver.present(Challenge.from_k8s_object(obj))

    def test_missing_solver(self, solver: HTTP01Solver) -> None:
        """Test a challenge without an HTTP-01 solver block is rejected."""
        challenge = Challenge.from_k8s_object(challenge_object(solver={}))
        with pytest.raises(SolverConfigurationError, match="no HTTP-01 solver"):
            solver.present(challenge)

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (403, SolverConfigurationError),
            (422, SolverConfigurationError),
            (500, SolverTransientError),
            (429, SolverTransientError),
        ],
    )
    def test_api_errors_are_mapped(
        self,
        solver: HTTP01Solver,
        fake_client: FakeKubernetesClient,
        monkeypatch: pytest.MonkeyPatch,
        make_challenge: Callable[..., Challenge],
        status: int,
        expected: type[Exception],
    ) -> None:
        """Test permission and validation errors are permanent, the rest transient."""

        def fail(*args: Any, **kwargs: Any) -> Any:
            raise api_error(status, "Failure")

        monkeypatch.setattr(fake_client.core_v1, "list_namespaced_pod", fail)

        with pytest.raises(expected):
            solver.present(make_challenge())

    def test_load_challenge(
        self, solver: HTTP01Solver, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test a Challenge is read back and parsed."""
        created = make_challenge()
        loaded = solver.load_challenge("default", created.name)
        assert loaded.identity == created.identity

    def test_load_missing_challenge(self, solver: HTTP01Solver) -> None:
        """Test a missing Challenge raises NotFound."""
        with pytest.raises(KubernetesNotFoundError):
            solver.load_challenge("default", "nope")


@pytest.mark.unit
@pytest.mark.solver
class TestSelfCheck:
    """Tests for HTTP01Solver.check."""

    URL = "http://example.com/.well-known/acme-challenge/tok1"

    @pytest.fixture
    def checker(self, fake_client: FakeKubernetesClient) -> HTTP01Solver:
        """Solver with an injected HTTP client."""
        return HTTP01Solver(fake_client, http_client=httpx.Client())

    @respx.mock
    def test_served(self, checker: HTTP01Solver, make_challenge: Callable[..., Challenge]) -> None:
        """Test the key authorization is found."""
        respx.get(self.URL).respond(200, text="tok1.thumbprint\n")
        assert checker.check(make_challenge(register=False)) is True

    @respx.mock
    def test_wrong_body(
        self, checker: HTTP01Solver, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test another body fails the check."""
        respx.get(self.URL).respond(200, text="something else")
        assert checker.check(make_challenge(register=False)) is False

    @respx.mock
    def test_bad_status(
        self, checker: HTTP01Solver, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test a non-200 response fails the check."""
        respx.get(self.URL).respond(404)
        assert checker.check(make_challenge(register=False)) is False

    @respx.mock
    def test_connection_error(
        self, checker: HTTP01Solver, make_challenge: Callable[..., Challenge]
    ) -> None:
        """Test a network failure fails the check instead of raising."""
        respx.get(self.URL).mock(side_effect=httpx.ConnectError("refused"))
        assert checker.check(make_challenge(register=False)) is False

    def test_close_keeps_injected_client(self, checker: HTTP01Solver) -> None:
        """Test only a solver-created HTTP client is closed."""
        client = checker.http_client
        checker.close()
        assert not client.is_closed
        client.close()
