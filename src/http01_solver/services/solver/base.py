"""Base manager for the solver resource managers.

Provides the shared infrastructure every ensurer needs: client access,
structured logging with entity binding, API error translation, bounded
retry-on-conflict and idempotent deletes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, NamedTuple, NoReturn

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from http01_solver.core.config import SolverSettings
from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesNotFoundError,
)

if TYPE_CHECKING:
    from http01_solver.integrations.kubernetes.client import KubernetesClient

logger = structlog.get_logger()

# Selects the identity keys an operation applies to.
KeyPredicate = Callable[[str], bool]


class ReleasedObject(NamedTuple):
    """A routing object cleanup deleted or patched."""

    ref: str
    deleted: bool
    keys: frozenset[str]


class SolverBaseManager:
    """Base class for solver resource managers.

    Subclasses set ``_entity_name`` for structured log context.

    Example:
        >>> class SolverPodManager(SolverBaseManager):
        ...     _entity_name = "solver_pod"
    """

    _entity_name: str = ""

    def __init__(self, client: KubernetesClient, settings: SolverSettings | None = None) -> None:
        """Initialize the manager.

        Args:
            client: Kubernetes API client instance.
            settings: Solver-wide settings; defaults apply when omitted.
        """
        self._client = client
        self._settings = settings or SolverSettings()
        self._log = logger.bind(entity=self._entity_name)

    def _handle_api_error(
        self,
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> NoReturn:
        """Translate a Kubernetes API exception and re-raise.

        Raises:
            KubernetesError: Always raises an appropriate subclass.
        """
        raise self._client.translate_api_exception(
            e,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        ) from e

    def _conflict_retry(self) -> Any:
        """Create a retry decorator for optimistic concurrency conflicts.

        Each attempt must re-read the object it patches. After
        ``conflict_retry_attempts`` the last ``KubernetesConflictError`` is
        re-raised for the caller to surface as transient.
        """
        return retry(
            retry=retry_if_exception_type(KubernetesConflictError),
            stop=stop_after_attempt(self._settings.conflict_retry_attempts),
            wait=wait_exponential(multiplier=self._settings.conflict_retry_wait, max=5),
            before_sleep=self._log_conflict,
            reraise=True,
        )

    def _log_conflict(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._log.debug(
            "patch_conflict_retrying",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    def _delete(
        self,
        delete: Callable[..., Any],
        resource_type: str,
        name: str,
        namespace: str,
    ) -> bool:
        """Delete a namespaced object, treating "already gone" as success.

        Returns:
            True if this call deleted the object, False if it did not exist.
        """
        self._log.info(f"deleting_{resource_type.lower()}", name=name, namespace=namespace)
        try:
            self._client.call(delete, name=name, namespace=namespace)
        except Exception as e:
            error = self._client.translate_api_exception(e, resource_type, name, namespace)
            if isinstance(error, KubernetesNotFoundError):
                self._log.debug("already_deleted", kind=resource_type, name=name)
                return False
            raise error from e
        self._log.info(f"deleted_{resource_type.lower()}", name=name, namespace=namespace)
        return True


def resource_version_guard(obj: dict[str, Any]) -> dict[str, Any]:
    """JSON patch op pinning the write to the ``resourceVersion`` that was read.

    The API server rejects the patch with 409 if the object changed since,
    which is what turns a list-index based patch into a safe one.
    """
    return {
        "op": "replace",
        "path": "/metadata/resourceVersion",
        "value": obj.get("metadata", {}).get("resourceVersion", ""),
    }
