from __future__ import annotations

from typing import Optional

from leasekeeper.storage.errors import StorageUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients branch on:
    - authentication_required, lease_expired, lease_revoked, lease_not_found (401)
    - forbidden (403)
    - preference_out_of_range, validation_error (400)
    - rate_limited (429)
    - storage_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class LeaseError(ServiceError):
    """A bearer secret did not resolve to a valid lease (401).

    ``reason_tag`` is what the audit trail records for the failure.
    """
    status_code = 401
    error_code = "unauthorized"
    reason_tag = "invalid"


class AuthenticationRequired(LeaseError):
    """No bearer secret was presented, or it is malformed."""
    error_code = "authentication_required"
    reason_tag = "missing-token"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LeaseExpired(LeaseError):
    """The lease lapsed on its idle clock or its hard cap."""
    error_code = "lease_expired"

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs) -> None:
        if reason not in ("idle", "hard"):
            raise ValueError(f"unknown expiry reason: {reason}")
        if message is None:
            message = (
                "session ended after inactivity"
                if reason == "idle"
                else "maximum session length reached"
            )
        detail = {"reason": reason, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason

    @property
    def reason_tag(self) -> str:  # type: ignore[override]
        return f"{self.reason}-expired"


class LeaseRevoked(LeaseError):
    """The lease was explicitly revoked."""
    error_code = "lease_revoked"
    reason_tag = "revoked"

    def __init__(self, message: str = "session was signed out", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LeaseNotFound(LeaseError):
    """No lease matches the presented bearer secret."""
    error_code = "lease_not_found"
    reason_tag = "not-found"

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PreferenceOutOfRange(ServiceError):
    """Idle-timeout preference outside the allowed range (400)."""
    status_code = 400
    error_code = "preference_out_of_range"

    def __init__(self, value, minimum: int, maximum: int) -> None:
        super().__init__(
            f"idle_timeout_minutes must be an integer between {minimum} and {maximum}",
            detail={"value": value, "minimum": minimum, "maximum": maximum},
        )
        self.minimum = minimum
        self.maximum = maximum


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimited(ServiceError):
    """Too many invalid tokens from one source; fatal until the cooldown ends (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "too many invalid session tokens") -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


__all__ = [
    "ServiceError",
    "ValidationError",
    "LeaseError",
    "AuthenticationRequired",
    "LeaseExpired",
    "LeaseRevoked",
    "LeaseNotFound",
    "PreferenceOutOfRange",
    "ForbiddenError",
    "RateLimited",
    "StorageUnavailable",
]
