"""Unit tests for Kubernetes exceptions."""

from __future__ import annotations

import pytest

from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)


@pytest.mark.unit
@pytest.mark.kubernetes
class TestKubernetesError:
    """Test KubernetesError base exception."""

    def test_init_minimal(self) -> None:
        """Test initialization with minimal arguments."""
        error = KubernetesError("Something went wrong")
        assert error.message == "Something went wrong"
        assert error.status_code is None
        assert error.resource_type is None

    def test_str_with_status_and_resource(self) -> None:
        """Test string representation with full context."""
        error = KubernetesError(
            "Boom", status_code=500, resource_type="Pod", resource_name="p", namespace="ns"
        )
        assert str(error) == "Boom (status: 500) [Pod/p in ns]"

    def test_str_message_only(self) -> None:
        """Test string representation with message only."""
        assert str(KubernetesError("Test error")) == "Test error"

    @pytest.mark.parametrize(
        ("status", "transient"),
        [(None, True), (409, True), (429, True), (503, True), (400, False), (404, False)],
    )
    def test_is_transient(self, status: int | None, transient: bool) -> None:
        """Only statuses worth retrying are transient."""
        assert KubernetesError("x", status_code=status).is_transient is transient


@pytest.mark.unit
@pytest.mark.kubernetes
class TestSubclasses:
    """Test the specific error types."""

    def test_connection_error_keeps_original(self) -> None:
        """KubernetesConnectionError carries the underlying error."""
        cause = OSError("refused")
        error = KubernetesConnectionError(original_error=cause)
        assert error.original_error is cause
        assert error.is_transient

    def test_auth_error_defaults(self) -> None:
        """KubernetesAuthError defaults to 401."""
        error = KubernetesAuthError()
        assert error.status_code == 401
        assert not error.is_transient

    def test_not_found_message(self) -> None:
        """KubernetesNotFoundError builds its message from the resource."""
        error = KubernetesNotFoundError(resource_type="HTTPRoute", resource_name="site")
        assert error.message == "HTTPRoute 'site' not found"
        assert error.status_code == 404

    def test_validation_errors_default_empty(self) -> None:
        """KubernetesValidationError has an empty error dict by default."""
        assert KubernetesValidationError().validation_errors == {}

    def test_conflict_modified_concurrently(self) -> None:
        """A stale write reads as a concurrent modification."""
        error = KubernetesConflictError(
            resource_type="Ingress", resource_name="web", namespace="default"
        )
        assert error.message == "Ingress 'web' was modified concurrently in namespace 'default'"
        assert error.already_exists is False

    def test_conflict_already_exists(self) -> None:
        """A create collision reads as already existing."""
        error = KubernetesConflictError(
            resource_type="Pod", resource_name="p", already_exists=True
        )
        assert error.message == "Pod 'p' already exists"

    def test_timeout_message(self) -> None:
        """KubernetesTimeoutError mentions the timeout."""
        error = KubernetesTimeoutError(timeout_seconds=30)
        assert str(error) == "Kubernetes operation timed out (after 30s)"

    def test_hierarchy(self) -> None:
        """Every error is a KubernetesError."""
        for cls in (
            KubernetesAuthError,
            KubernetesConflictError,
            KubernetesConnectionError,
            KubernetesNotFoundError,
            KubernetesTimeoutError,
            KubernetesValidationError,
        ):
            assert issubclass(cls, KubernetesError)
