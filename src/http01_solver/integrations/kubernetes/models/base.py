"""Base models for Kubernetes resources handled by the solver."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class K8sEntityBase(BaseModel):
    """Common metadata shared by every solver resource model."""

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    name: str = Field(description="Resource name")
    namespace: str | None = Field(default=None, description="Resource namespace")
    uid: str | None = Field(default=None, description="Kubernetes UID")
    resource_version: str | None = Field(default=None, description="Resource version")
    creation_timestamp: str | None = Field(default=None, description="Creation time")
    deletion_timestamp: str | None = Field(default=None, description="Deletion time")
    labels: dict[str, str] | None = Field(default=None, description="Resource labels")

    _entity_name: ClassVar[str] = "entity"

    @property
    def terminating(self) -> bool:
        """Whether the resource is being deleted."""
        return self.deletion_timestamp is not None

    @property
    def created_at(self) -> datetime:
        """Creation time as a datetime; the epoch when unknown."""
        if not self.creation_timestamp:
            return datetime.fromtimestamp(0, UTC)
        try:
            return datetime.fromisoformat(self.creation_timestamp.replace("Z", "+00:00"))
        except ValueError:
            return datetime.fromtimestamp(0, UTC)

    @classmethod
    def _metadata_fields(cls, obj: Any) -> dict[str, Any]:
        """Extract metadata fields from a typed kubernetes object."""
        return {
            "name": _safe_get(obj, "metadata", "name", default=""),
            "namespace": _safe_get(obj, "metadata", "namespace"),
            "uid": _safe_get(obj, "metadata", "uid"),
            "resource_version": _safe_get(obj, "metadata", "resource_version"),
            "creation_timestamp": _get_timestamp(
                _safe_get(obj, "metadata", "creation_timestamp")
            ),
            "deletion_timestamp": _get_timestamp(
                _safe_get(obj, "metadata", "deletion_timestamp")
            ),
            "labels": _get_labels(obj),
        }


T = TypeVar("T", bound=K8sEntityBase)


def newest_first(items: list[T]) -> list[T]:
    """Order resources most recently created first, ties broken by name."""
    return sorted(items, key=lambda item: (item.created_at, item.name), reverse=True)


def _safe_get(obj: Any, *attrs: str, default: Any = None) -> Any:
    """Safely traverse nested attributes on kubernetes SDK objects."""
    current = obj
    for attr in attrs:
        if current is None:
            return default
        current = getattr(current, attr, None)
    return current if current is not None else default


def _get_timestamp(obj: Any) -> str | None:
    """Extract ISO timestamp string from a datetime or string."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def _get_labels(obj: Any) -> dict[str, str] | None:
    """Extract labels dict, returning None if empty."""
    labels = _safe_get(obj, "metadata", "labels")
    return dict(labels) if labels else None
