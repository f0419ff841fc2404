"""Errors surfaced by the HTTP-01 solver to its caller.

The reconcile loop treats the two subclasses differently: transient errors are
requeued with backoff, configuration errors are reported on the Challenge as a
user-actionable condition and not retried until its spec changes.
"""

from __future__ import annotations

from http01_solver.integrations.kubernetes.exceptions import KubernetesError


class SolverError(Exception):
    """Base exception for solver operations.

    Attributes:
        message: Human-readable error message.
        challenge: ``namespace/name`` of the challenge being solved, if known.
    """

    def __init__(self, message: str, challenge: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.challenge = challenge

    def __str__(self) -> str:
        if self.challenge:
            return f"{self.message} [challenge {self.challenge}]"
        return self.message


class SolverConfigurationError(SolverError):
    """The challenge's solver configuration cannot be acted on as written."""


class SolverTransientError(SolverError):
    """A cluster operation failed in a way a later retry may fix.

    Attributes:
        cause: The underlying Kubernetes API error, if any.
    """

    def __init__(
        self,
        message: str,
        challenge: str | None = None,
        cause: KubernetesError | None = None,
    ) -> None:
        super().__init__(message, challenge)
        self.cause = cause
