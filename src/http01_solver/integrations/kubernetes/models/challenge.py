"""Models for cert-manager ACME ``Challenge`` resources.

The solver only reads Challenges. These models parse the
``acme.cert-manager.io/v1`` custom object dict into the identity, payload and
HTTP-01 solver configuration the solver works from.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ACME_GROUP = "acme.cert-manager.io"
ACME_VERSION = "v1"
CHALLENGE_PLURAL = "challenges"

# Challenge states after which the solver resources are no longer needed.
FINAL_STATES = frozenset({"valid", "invalid", "errored", "expired"})


class _CamelModel(BaseModel):
    """Model parsed from camelCase custom resource fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ObjectMetaOverrides(_CamelModel):
    """Labels and annotations merged into a generated object's metadata."""

    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class PodSpecOverrides(_CamelModel):
    """Scheduling and identity fields copied onto the solver pod spec."""

    node_selector: dict[str, str] = Field(default_factory=dict)
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    affinity: dict[str, Any] | None = None
    priority_class_name: str | None = None
    service_account_name: str | None = None
    image_pull_secrets: list[dict[str, str]] = Field(default_factory=list)


class PodTemplate(_CamelModel):
    """``podTemplate`` section of an HTTP-01 solver."""

    metadata: ObjectMetaOverrides = Field(default_factory=ObjectMetaOverrides)
    spec: PodSpecOverrides = Field(default_factory=PodSpecOverrides)


class IngressTemplate(_CamelModel):
    """``ingressTemplate`` section of an HTTP-01 ingress solver."""

    metadata: ObjectMetaOverrides = Field(default_factory=ObjectMetaOverrides)


class ParentReference(_CamelModel):
    """Gateway API ``ParentReference``."""

    name: str
    group: str | None = None
    kind: str | None = None
    namespace: str | None = None
    section_name: str | None = None
    port: int | None = None

    def to_k8s(self) -> dict[str, Any]:
        """Render as the camelCase dict used in HTTPRoute specs."""
        return self.model_dump(by_alias=True, exclude_none=True)


class HTTP01IngressSolver(_CamelModel):
    """HTTP-01 solver that routes traffic through an Ingress.

    ``name`` designates a pre-existing Ingress to merge into; without it the
    solver creates its own.
    """

    kind: Literal["ingress"] = "ingress"
    service_type: str | None = None
    ingress_class_name: str | None = None
    class_: str | None = Field(default=None, alias="class")
    name: str | None = None
    pod_template: PodTemplate = Field(default_factory=PodTemplate)
    ingress_template: IngressTemplate = Field(default_factory=IngressTemplate)


class HTTP01GatewayHTTPRouteSolver(_CamelModel):
    """HTTP-01 solver that routes traffic through a Gateway API HTTPRoute."""

    kind: Literal["gatewayHTTPRoute"] = "gatewayHTTPRoute"
    service_type: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    parent_refs: list[ParentReference] = Field(default_factory=list)
    name: str | None = None
    pod_template: PodTemplate = Field(default_factory=PodTemplate)


HTTP01Solver = Annotated[
    HTTP01IngressSolver | HTTP01GatewayHTTPRouteSolver,
    Field(discriminator="kind"),
]


class ChallengeIdentity(BaseModel):
    """What makes one challenge's solver resources distinct from another's."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    owner: str = ""
    dns_name: str
    token: str


class Challenge(BaseModel):
    """An ACME HTTP-01 Challenge as seen by the solver."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    _entity_name: ClassVar[str] = "challenge"

    name: str
    namespace: str
    uid: str | None = None
    owner: str = Field(default="", description="Owning object as kind/name/uid")
    dns_name: str
    token: str
    key: str
    wildcard: bool = False
    type: str = "HTTP-01"
    state: str = ""
    deletion_timestamp: str | None = None
    solver: HTTP01Solver | None = None

    @property
    def identity(self) -> ChallengeIdentity:
        """The identity the solver's names and labels derive from."""
        return ChallengeIdentity(
            namespace=self.namespace,
            owner=self.owner,
            dns_name=self.dns_name,
            token=self.token,
        )

    @property
    def is_final(self) -> bool:
        """Whether the challenge is resolved or being deleted."""
        return self.deletion_timestamp is not None or self.state.lower() in FINAL_STATES

    @classmethod
    def from_k8s_object(cls, obj: dict[str, Any]) -> Challenge:
        """Create from a cert-manager Challenge custom object dict."""
        metadata: dict[str, Any] = obj.get("metadata", {})
        spec: dict[str, Any] = obj.get("spec", {})
        status: dict[str, Any] = obj.get("status") or {}

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid"),
            owner=_owner_ref(metadata.get("ownerReferences") or []),
            dns_name=spec.get("dnsName", ""),
            token=spec.get("token", ""),
            key=spec.get("key", ""),
            wildcard=bool(spec.get("wildcard", False)),
            type=spec.get("type", "HTTP-01"),
            state=status.get("state", ""),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            solver=_parse_solver(spec.get("solver") or {}),
        )


def _owner_ref(refs: list[dict[str, Any]]) -> str:
    """Pick the controlling owner reference, else the first one."""
    if not refs:
        return ""
    ref = next((r for r in refs if r.get("controller")), refs[0])
    return "/".join(str(ref.get(k, "")) for k in ("kind", "name", "uid"))


def _parse_solver(
    solver: dict[str, Any],
) -> HTTP01IngressSolver | HTTP01GatewayHTTPRouteSolver | None:
    http01: dict[str, Any] = solver.get("http01") or {}
    if "gatewayHTTPRoute" in http01:
        return HTTP01GatewayHTTPRouteSolver.model_validate(http01["gatewayHTTPRoute"] or {})
    if "ingress" in http01:
        return HTTP01IngressSolver.model_validate(http01["ingress"] or {})
    return None
