"""In-memory Kubernetes API used by the solver unit and scenario tests.

``FakeKubernetesClient`` is a real ``KubernetesClient`` whose API groups are
replaced by dict-backed fakes. Typed objects go through the real kubernetes
``ApiClient`` (de)serialization, so managers see exactly the models they would
get from a cluster. Patches are JSON patches honouring a
``/metadata/resourceVersion`` guard, and ``FakeCluster.before_next_patch`` lets
a test slip a concurrent write in between a manager's read and its patch.
"""

from __future__ import annotations

import copy
import functools
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiClient, ApiException

from http01_solver.core.config import SolverSettings
from http01_solver.integrations.kubernetes.client import KubernetesClient
from http01_solver.integrations.kubernetes.config import KubernetesConnectionConfig
from http01_solver.integrations.kubernetes.models.challenge import Challenge

_EPOCH = datetime(2026, 1, 1, tzinfo=UTC)

Key = tuple[str, str | None, str]


def api_error(status: int, reason: str, status_reason: str | None = None) -> ApiException:
    """ApiException carrying a ``Status`` body like the API server sends."""
    error = ApiException(status=status, reason=reason)
    error.body = json.dumps(
        {"kind": "Status", "reason": status_reason or reason, "message": reason, "code": status}
    )
    return error


def _matches_selector(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


def _pointer(path: str) -> list[str]:
    return [p.replace("~1", "/").replace("~0", "~") for p in path.split("/")[1:]]


def apply_json_patch(doc: dict[str, Any], ops: list[dict[str, Any]]) -> dict[str, Any]:
    """Apply add/replace/remove operations to a copy of ``doc``."""
    doc = copy.deepcopy(doc)
    for op in ops:
        parts = _pointer(op["path"])
        try:
            parent: Any = doc
            for part in parts[:-1]:
                parent = parent[int(part)] if isinstance(parent, list) else parent[part]
            last = parts[-1]
            if isinstance(parent, list):
                if op["op"] == "add":
                    if last == "-":
                        parent.append(copy.deepcopy(op["value"]))
                    else:
                        parent.insert(int(last), copy.deepcopy(op["value"]))
                elif op["op"] == "replace":
                    parent[int(last)] = copy.deepcopy(op["value"])
                else:
                    del parent[int(last)]
            else:
                if op["op"] == "add":
                    parent[last] = copy.deepcopy(op["value"])
                elif op["op"] == "replace":
                    if last not in parent:
                        raise KeyError(last)
                    parent[last] = copy.deepcopy(op["value"])
                else:
                    del parent[last]
        except (KeyError, IndexError, ValueError, TypeError) as e:
            raise api_error(422, f"the server rejected our request: {op['path']}", "Invalid") from e
    return doc


class FakeCluster:
    """Dict-backed object store shared by the fake API groups."""

    def __init__(self, api_client: ApiClient, *, auto_ready_pods: bool = True) -> None:
        self.api_client = api_client
        self.auto_ready_pods = auto_ready_pods
        self.objects: dict[Key, dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str | None, str]] = []
        self.request_timeouts: list[float] = []
        self._counter = 0
        self._patch_hooks: list[Callable[[], None]] = []

    # -- helpers used by tests ------------------------------------------------

    def before_next_patch(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` right before the next patch is applied."""
        self._patch_hooks.append(hook)

    def put(self, kind: str, obj: Any) -> dict[str, Any]:
        """Store an object as if a user had created it."""
        wire = self.api_client.sanitize_for_serialization(obj)
        return self._create(kind, wire.get("metadata", {}).get("namespace"), wire, record=False)

    def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any] | None:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj else None

    def names(self, kind: str, namespace: str | None = None) -> list[str]:
        return sorted(
            name
            for (k, ns, name) in self.objects
            if k == kind and (namespace is None or ns == namespace)
        )

    def set_pod_ready(self, namespace: str, name: str, ready: bool = True) -> None:
        pod = self.objects[("pods", namespace, name)]
        pod["status"] = self._pod_status(ready)
        self._bump(pod)

    def mark_terminating(self, kind: str, namespace: str | None, name: str) -> None:
        obj = self.objects[(kind, namespace, name)]
        obj["metadata"]["deletionTimestamp"] = self._timestamp()
        self._bump(obj)

    def add_ingress_class(self, name: str, *, default: bool = False) -> None:
        annotations = {"ingressclass.kubernetes.io/is-default-class": "true"} if default else {}
        self.put(
            "ingressclasses",
            {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "IngressClass",
                "metadata": {"name": name, "annotations": annotations},
                "spec": {"controller": f"example.com/{name}"},
            },
        )

    # -- store operations -------------------------------------------------------

    def _timestamp(self) -> str:
        return (_EPOCH + timedelta(seconds=self._counter)).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _bump(self, obj: dict[str, Any]) -> None:
        self._counter += 1
        obj["metadata"]["resourceVersion"] = str(self._counter)

    def _pod_status(self, ready: bool) -> dict[str, Any]:
        if ready:
            return {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]}
        return {"phase": "Pending", "conditions": [{"type": "Ready", "status": "False"}]}

    def _create(
        self, kind: str, namespace: str | None, body: Any, *, record: bool = True
    ) -> dict[str, Any]:
        obj = copy.deepcopy(self.api_client.sanitize_for_serialization(body))
        meta = obj.setdefault("metadata", {})
        if namespace is not None:
            meta["namespace"] = namespace
        key = (kind, namespace, meta["name"])
        if key in self.objects:
            raise api_error(409, "Conflict", "AlreadyExists")

        self._counter += 1
        meta["uid"] = f"uid-{self._counter}"
        meta["creationTimestamp"] = self._timestamp()
        meta["resourceVersion"] = str(self._counter)
        if kind == "pods" and "status" not in obj:
            obj["status"] = self._pod_status(self.auto_ready_pods)
        if kind == "services":
            obj.setdefault("spec", {}).setdefault("type", "ClusterIP")
            obj["spec"].setdefault("clusterIP", f"10.96.0.{self._counter % 250}")

        self.objects[key] = obj
        if record:
            self.writes.append(("create", kind, namespace, meta["name"]))
        return copy.deepcopy(obj)

    def _read(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise api_error(404, "Not Found", "NotFound")
        return copy.deepcopy(obj)

    def _list(
        self, kind: str, namespace: str | None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda kv: str(kv[0]))
            if k == kind
            and (namespace is None or ns == namespace)
            and _matches_selector(obj["metadata"].get("labels") or {}, label_selector)
        ]

    def _patch(
        self, kind: str, namespace: str | None, name: str, ops: list[dict[str, Any]]
    ) -> dict[str, Any]:
        if self._patch_hooks:
            self._patch_hooks.pop(0)()
        current = self._read(kind, namespace, name)
        for op in ops:
            if op["op"] == "replace" and op["path"] == "/metadata/resourceVersion":
                if op["value"] != current["metadata"]["resourceVersion"]:
                    raise api_error(409, "Conflict", "Conflict")
        patched = apply_json_patch(current, ops)
        self._bump(patched)
        self.objects[(kind, namespace, name)] = patched
        self.writes.append(("patch", kind, namespace, name))
        return copy.deepcopy(patched)

    def _delete(self, kind: str, namespace: str | None, name: str) -> None:
        self._read(kind, namespace, name)
        del self.objects[(kind, namespace, name)]
        self.writes.append(("delete", kind, namespace, name))

    def typed(self, obj: dict[str, Any], model: str) -> Any:
        return self.api_client.deserialize(SimpleNamespace(data=json.dumps(obj)), model)

    def typed_list(self, objs: list[dict[str, Any]], model: str) -> Any:
        return SimpleNamespace(items=[self.typed(o, model) for o in objs])


def _requires_timeout(method: Callable[..., Any]) -> Callable[..., Any]:
    """Reject calls made without ``_request_timeout``, recording the value."""

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, _request_timeout: float, **kwargs: Any) -> Any:
        self._c.request_timeouts.append(_request_timeout)
        return method(self, *args, **kwargs)

    return wrapper


class _FakeCoreV1:
    def __init__(self, cluster: FakeCluster) -> None:
        self._c = cluster

    @_requires_timeout
    def list_namespaced_pod(self, namespace: str, label_selector: str | None = None) -> Any:
        return self._c.typed_list(self._c._list("pods", namespace, label_selector), "V1Pod")

    @_requires_timeout
    def list_pod_for_all_namespaces(self, label_selector: str | None = None) -> Any:
        return self._c.typed_list(self._c._list("pods", None, label_selector), "V1Pod")

    @_requires_timeout
    def read_namespaced_pod(self, name: str, namespace: str) -> Any:
        return self._c.typed(self._c._read("pods", namespace, name), "V1Pod")

    @_requires_timeout
    def create_namespaced_pod(self, namespace: str, body: Any) -> Any:
        return self._c.typed(self._c._create("pods", namespace, body), "V1Pod")

    @_requires_timeout
    def delete_namespaced_pod(self, name: str, namespace: str) -> None:
        self._c._delete("pods", namespace, name)

    @_requires_timeout
    def list_namespaced_service(self, namespace: str, label_selector: str | None = None) -> Any:
        return self._c.typed_list(
            self._c._list("services", namespace, label_selector), "V1Service"
        )

    @_requires_timeout
    def list_service_for_all_namespaces(self, label_selector: str | None = None) -> Any:
        return self._c.typed_list(self._c._list("services", None, label_selector), "V1Service")

    @_requires_timeout
    def read_namespaced_service(self, name: str, namespace: str) -> Any:
        return self._c.typed(self._c._read("services", namespace, name), "V1Service")

    @_requires_timeout
    def create_namespaced_service(self, namespace: str, body: Any) -> Any:
        return self._c.typed(self._c._create("services", namespace, body), "V1Service")

    @_requires_timeout
    def patch_namespaced_service(self, name: str, namespace: str, body: Any) -> Any:
        return self._c.typed(self._c._patch("services", namespace, name, body), "V1Service")

    @_requires_timeout
    def delete_namespaced_service(self, name: str, namespace: str) -> None:
        self._c._delete("services", namespace, name)


class _FakeNetworkingV1:
    def __init__(self, cluster: FakeCluster) -> None:
        self._c = cluster

    @_requires_timeout
    def list_namespaced_ingress(self, namespace: str, label_selector: str | None = None) -> Any:
        return self._c.typed_list(
            self._c._list("ingresses", namespace, label_selector), "V1Ingress"
        )

    @_requires_timeout
    def list_ingress_for_all_namespaces(self, label_selector: str | None = None) -> Any:
        return self._c.typed_list(self._c._list("ingresses", None, label_selector), "V1Ingress")

    @_requires_timeout
    def read_namespaced_ingress(self, name: str, namespace: str) -> Any:
        return self._c.typed(self._c._read("ingresses", namespace, name), "V1Ingress")

    @_requires_timeout
    def create_namespaced_ingress(self, namespace: str, body: Any) -> Any:
        return self._c.typed(self._c._create("ingresses", namespace, body), "V1Ingress")

    @_requires_timeout
    def patch_namespaced_ingress(self, name: str, namespace: str, body: Any) -> Any:
        return self._c.typed(self._c._patch("ingresses", namespace, name, body), "V1Ingress")

    @_requires_timeout
    def delete_namespaced_ingress(self, name: str, namespace: str) -> None:
        self._c._delete("ingresses", namespace, name)

    @_requires_timeout
    def list_ingress_class(self) -> Any:
        return self._c.typed_list(self._c._list("ingressclasses", None), "V1IngressClass")


class _FakeCustomObjects:
    def __init__(self, cluster: FakeCluster) -> None:
        self._c = cluster

    @_requires_timeout
    def list_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        label_selector: str | None = None,
    ) -> dict[str, Any]:
        return {"items": self._c._list(plural, namespace, label_selector)}

    @_requires_timeout
    def list_cluster_custom_object(
        self, group: str, version: str, plural: str, label_selector: str | None = None
    ) -> dict[str, Any]:
        return {"items": self._c._list(plural, None, label_selector)}

    @_requires_timeout
    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> dict[str, Any]:
        return self._c._read(plural, namespace, name)

    @_requires_timeout
    def create_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return self._c._create(plural, namespace, body)

    @_requires_timeout
    def patch_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Any
    ) -> dict[str, Any]:
        return self._c._patch(plural, namespace, name, body)

    @_requires_timeout
    def delete_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> None:
        self._c._delete(plural, namespace, name)


class FakeKubernetesClient(KubernetesClient):
    """KubernetesClient wired to a FakeCluster instead of an API server."""

    def __init__(self, *, auto_ready_pods: bool = True) -> None:
        self._config = KubernetesConnectionConfig()
        self._retries = 1
        self._current_context = "fake"
        self._api_client = ApiClient()
        self.cluster = FakeCluster(self._api_client, auto_ready_pods=auto_ready_pods)
        self._core_v1 = _FakeCoreV1(self.cluster)  # type: ignore[assignment]
        self._networking_v1 = _FakeNetworkingV1(self.cluster)  # type: ignore[assignment]
        self._custom_objects = _FakeCustomObjects(self.cluster)  # type: ignore[assignment]

    def close(self) -> None:
        """Nothing to release."""


def challenge_object(
    dns_name: str = "example.com",
    token: str = "tok1",
    *,
    name: str | None = None,
    namespace: str = "default",
    key: str | None = None,
    solver: dict[str, Any] | None = None,
    owner: str = "order-1",
    state: str = "pending",
) -> dict[str, Any]:
    """A cert-manager Challenge custom object."""
    return {
        "apiVersion": "acme.cert-manager.io/v1",
        "kind": "Challenge",
        "metadata": {
            "name": name or f"{dns_name.replace('.', '-')}-{token}",
            "namespace": namespace,
            "ownerReferences": [
                {
                    "apiVersion": "acme.cert-manager.io/v1",
                    "kind": "Order",
                    "name": owner,
                    "uid": f"{owner}-uid",
                    "controller": True,
                }
            ],
        },
        "spec": {
            "type": "HTTP-01",
            "dnsName": dns_name,
            "token": token,
            "key": key or f"{token}.thumbprint",
            "solver": solver if solver is not None else {"http01": {"ingress": {}}},
        },
        "status": {"state": state},
    }


@pytest.fixture
def fake_client() -> FakeKubernetesClient:
    """Fake client whose solver pods become ready as soon as they are created."""
    return FakeKubernetesClient()


@pytest.fixture
def cluster(fake_client: FakeKubernetesClient) -> FakeCluster:
    """The object store behind ``fake_client``."""
    return fake_client.cluster


@pytest.fixture
def solver_settings() -> SolverSettings:
    """Settings with no backoff so conflict retries run instantly."""
    return SolverSettings(conflict_retry_wait=0)


@pytest.fixture
def make_challenge(cluster: FakeCluster) -> Callable[..., Challenge]:
    """Create a Challenge in the fake cluster and return its parsed model."""

    def _make(*args: Any, register: bool = True, **kwargs: Any) -> Challenge:
        obj = challenge_object(*args, **kwargs)
        if register:
            cluster.put("challenges", obj)
        return Challenge.from_k8s_object(obj)

    return _make
