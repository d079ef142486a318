from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for errors surfaced by session lifecycle operations."""

    code = "session_error"
    status_code = 500

    def __init__(self, message: str | None = None, *, tenant_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.tenant_id = tenant_id

    def to_payload(self) -> dict[str, object]:
        return {
            "ok": False,
            "error": self.code,
            "detail": str(self),
            "tenant": self.tenant_id,
        }


class ValidationError(SessionError):
    """Raised for malformed caller input; never retried."""

    code = "validation_error"
    status_code = 400


class NotFoundError(SessionError):
    """Raised when a tenant record is unknown."""

    code = "not_found"
    status_code = 404


class ConflictError(SessionError):
    """A creation sequence is already running for the tenant."""

    code = "creation_in_progress"
    status_code = 409


class NotReadyError(SessionError):
    """Raised when a send is attempted without a ready session."""

    code = "session_not_ready"
    status_code = 409


class DriverTimeoutError(SessionError):
    """Driver construction or start exceeded its deadline."""

    code = "driver_timeout"
    status_code = 504

    def __init__(self, timeout: float, *, tenant_id: Optional[str] = None) -> None:
        super().__init__(f"driver start exceeded {timeout:g}s", tenant_id=tenant_id)
        self.timeout = timeout


class DriverStartError(SessionError):
    """Driver construction or start failed before the deadline."""

    code = "driver_start_failed"
    status_code = 502


class DriverAuthError(SessionError):
    """The remote side rejected the session credentials."""

    code = "driver_auth_failed"
    status_code = 502


class DriverRequestError(SessionError):
    """The bridge answered a request with an error."""

    code = "driver_request_failed"
    status_code = 502


class SendFailedError(SessionError):
    """The session was ready but the message could not be delivered."""

    code = "send_failed"
    status_code = 502


class DriverDisconnectedError(SessionError):
    """Remote-initiated teardown. Converted into a state reset, never surfaced."""

    code = "driver_disconnected"
    status_code = 409


class ResourceCleanupError(SessionError):
    """On-disk session artifacts could not be removed after all retries."""

    code = "cleanup_failed"

    def __init__(self, path: object, attempts: int, *, tenant_id: Optional[str] = None) -> None:
        super().__init__(f"failed to remove {path} after {attempts} attempts", tenant_id=tenant_id)
        self.path = path
        self.attempts = attempts


__all__ = [
    "SessionError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "NotReadyError",
    "DriverTimeoutError",
    "DriverStartError",
    "DriverAuthError",
    "DriverRequestError",
    "SendFailedError",
    "DriverDisconnectedError",
    "ResourceCleanupError",
]
