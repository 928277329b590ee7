"""Error taxonomy for the reconciliation engine.

Every error surfaced to a caller carries a short title plus a classified
message, and a kind that tells the Operation Poller and the orchestration
layer what to do with it:

- RETRYABLE: swallowed by the poller and retried until the deadline.
- FATAL: aborts the reconciliation pass immediately.
- NOT_FOUND: the target resource does not exist; the caller decides whether
  to drop it from state or recreate it.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Retry decision attached to every classified failure."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    NOT_FOUND = "not_found"


class ReconcileError(Exception):
    """Base class for all errors raised by the engine."""

    default_title = "Reconciliation failed"
    default_kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        title: str | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        self.title = title or self.default_title
        self.message = message
        self.kind = kind or self.default_kind
        super().__init__(f"{self.title}: {message}")

    @property
    def retryable(self) -> bool:
        """Whether the poller may retry after this error."""
        return self.kind == ErrorKind.RETRYABLE


class ConfigurationError(ReconcileError):
    """Invalid or contradictory desired state, detected before any network call.

    Never retried.
    """

    default_title = "Invalid configuration"


class TransportError(ReconcileError):
    """Network or connection failure talking to the remote API."""

    default_title = "Transport failure"
    default_kind = ErrorKind.RETRYABLE


class ApiError(ReconcileError):
    """The remote service accepted the call but reported an application failure."""

    default_title = "API request failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        title: str | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, title=title, kind=kind)


class NotFoundError(ApiError):
    """The target resource does not exist on the remote service."""

    default_title = "Resource not found"
    default_kind = ErrorKind.NOT_FOUND


class OperationTimeout(ReconcileError):
    """The poller hit its deadline (or was cancelled) before a terminal state.

    Distinct from OperationFailed: the mutation may still complete out-of-band.
    """

    default_title = "Operation timed out"


class OperationFailed(ReconcileError):
    """The remote operation reached a failed terminal state."""

    default_title = "Operation failed"


class UnsupportedOperationError(ReconcileError):
    """The resource kind does not support the requested mutation."""

    default_title = "Unsupported operation"


class LockTimeoutError(ReconcileError):
    """Timed out waiting for the per-resource lock."""

    default_title = "Resource is locked"
