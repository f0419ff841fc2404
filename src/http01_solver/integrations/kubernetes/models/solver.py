"""Models for the resources the solver creates and the results it reports."""

from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from http01_solver.integrations.kubernetes.models.base import K8sEntityBase, _safe_get


class SolverPodSummary(K8sEntityBase):
    """Solver pod as observed in the cluster."""

    _entity_name: ClassVar[str] = "pod"

    phase: str = Field(default="Unknown", description="Pod phase")
    ready: bool = Field(default=False, description="Ready condition is True")
    image: str | None = Field(default=None, description="Solver container image")
    args: list[str] = Field(default_factory=list, description="Solver container args")
    container_port: int | None = Field(default=None, description="Solver listen port")

    @classmethod
    def from_k8s_object(cls, obj: Any) -> SolverPodSummary:
        """Create from a kubernetes V1Pod object."""
        containers = _safe_get(obj, "spec", "containers") or []
        container = containers[0] if containers else None
        ports = _safe_get(container, "ports") or []
        conditions = _safe_get(obj, "status", "conditions") or []
        ready = any(
            getattr(c, "type", None) == "Ready" and getattr(c, "status", None) == "True"
            for c in conditions
        )
        return cls(
            **cls._metadata_fields(obj),
            phase=_safe_get(obj, "status", "phase", default="Unknown"),
            ready=ready,
            image=_safe_get(container, "image"),
            args=list(_safe_get(container, "args", default=[])),
            container_port=getattr(ports[0], "container_port", None) if ports else None,
        )


class SolverServiceSummary(K8sEntityBase):
    """Solver service as observed in the cluster."""

    _entity_name: ClassVar[str] = "service"

    type: str = Field(default="ClusterIP", description="Service type")
    selector: dict[str, str] = Field(default_factory=dict, description="Pod selector")
    port: int | None = Field(default=None, description="Service port")
    target_port: str | None = Field(default=None, description="Target port")

    @classmethod
    def from_k8s_object(cls, obj: Any) -> SolverServiceSummary:
        """Create from a kubernetes V1Service object."""
        ports = _safe_get(obj, "spec", "ports") or []
        port = ports[0] if ports else None
        target_port = getattr(port, "target_port", None)
        return cls(
            **cls._metadata_fields(obj),
            type=_safe_get(obj, "spec", "type", default="ClusterIP"),
            selector=dict(_safe_get(obj, "spec", "selector", default={})),
            port=getattr(port, "port", None),
            target_port=str(target_port) if target_port is not None else None,
        )


class SolverIngressSummary(K8sEntityBase):
    """Solver-owned Ingress as observed in the cluster."""

    _entity_name: ClassVar[str] = "ingress"

    ingress_class_name: str | None = Field(default=None, description="spec.ingressClassName")
    hosts: list[str] = Field(default_factory=list, description="Rule hosts")

    @classmethod
    def from_k8s_object(cls, obj: Any) -> SolverIngressSummary:
        """Create from a kubernetes V1Ingress object."""
        rules = _safe_get(obj, "spec", "rules") or []
        return cls(
            **cls._metadata_fields(obj),
            ingress_class_name=_safe_get(obj, "spec", "ingress_class_name"),
            hosts=[h for r in rules if (h := getattr(r, "host", None))],
        )


class RoutingSummary(BaseModel):
    """Outcome of ensuring the Ingress or HTTPRoute fragment."""

    kind: Literal["Ingress", "HTTPRoute"]
    name: str
    namespace: str
    mode: Literal["exclusive", "merge"]
    changed: bool = Field(default=False, description="A write was issued")
    present: bool = Field(default=False, description="Fragment confirmed on the object")


class SolveResult(BaseModel):
    """What one ``present`` invocation achieved."""

    ready: bool
    stage: Literal["pod", "service", "routing", "ready"]
    message: str = ""
    pod: SolverPodSummary | None = None
    service: SolverServiceSummary | None = None
    routing: RoutingSummary | None = None


class CleanupResult(BaseModel):
    """Objects removed or patched while cleaning up one challenge key."""

    challenge_key: str
    deleted: list[str] = Field(default_factory=list, description="Kind/name deleted")
    patched: list[str] = Field(default_factory=list, description="Kind/name patched")

    @property
    def changed(self) -> bool:
        """Whether anything was touched."""
        return bool(self.deleted or self.patched)


class SweepResult(BaseModel):
    """Outcome of one orphan sweep pass."""

    live_keys: int = 0
    orphaned_keys: list[str] = Field(default_factory=list)
    cleanups: list[CleanupResult] = Field(default_factory=list)
