from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from leasekeeper.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "authentication_required",
    "lease_expired",
    "lease_revoked",
    "lease_not_found",
    "unauthorized",
    "forbidden",
    "not_found",
    "preference_out_of_range",
    "rate_limited",
    "validation_error",
    "conflict",
    "storage_unavailable",
    "server_error",
})


def _normalize_text(value: Optional[str]) -> Optional[str]:
    """Strip zero-width and bidi override characters and apply NFKC."""
    if value is None:
        return None
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class IssueLeaseRequest(BaseModel):
    """Posted by the authentication layer after it has verified credentials."""

    owner_id: str = Field(..., min_length=1, max_length=255)
    tenant_id: str = Field(default="public", max_length=128)
    role: str = Field(default="user", max_length=64)
    device_label: Optional[str] = Field(default=None, max_length=1024)
    user_agent: Optional[str] = Field(default=None, max_length=4096)
    source_address: Optional[str] = Field(default=None, max_length=64)

    @field_validator("owner_id", "tenant_id", "role")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        cleaned = _normalize_text(value).strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator("device_label")
    @classmethod
    def _normalize_label(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class IssuedLeaseResponse(BaseModel):
    lease_id: str
    token: str
    token_type: Literal["bearer"] = "bearer"
    created_at: datetime
    hard_expiry_at: datetime
    idle_timeout_minutes: int
    shared: bool = False


class LeaseStatusResponse(BaseModel):
    """Answer to a session-status poll.

    ``remaining_seconds`` counts down to whichever clock fires first;
    clients decide when to warn. ``reason`` is set when ``valid`` is false.
    """

    valid: bool
    remaining_seconds: int = 0
    idle_timeout_minutes: Optional[int] = None
    hard_expiry_at: Optional[datetime] = None
    expires_by: Optional[Literal["idle", "hard"]] = None
    reason: Optional[Literal["idle", "hard", "revoked", "not-found"]] = None
    lease_id: Optional[str] = None
    owner_id: Optional[str] = None
    tenant_id: Optional[str] = None
    role: Optional[str] = None


class ActivityRequest(BaseModel):
    observed_at: Optional[datetime] = None


class ActivityAckResponse(BaseModel):
    lease_id: str
    persisted: bool
    last_activity_at: datetime
    hard_expiry_at: datetime
    idle_timeout_minutes: int
    remaining_seconds: int


class LeaseItem(BaseModel):
    id: str
    device_label: str
    source_address: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    hard_expiry_at: datetime
    is_current: bool


class LeaseListResponse(BaseModel):
    items: List[LeaseItem]


class LeaseStatsResponse(BaseModel):
    active_leases: int
    last_activity_at: Optional[datetime] = None
    oldest_created_at: Optional[datetime] = None


class RevokeResponse(BaseModel):
    revoked: int
    discard_token: bool = False


class IdleTimeoutRequest(BaseModel):
    idle_timeout_minutes: int


class IdleTimeoutResponse(BaseModel):
    idle_timeout_minutes: int
    minimum: int
    maximum: int
    default: int
    is_default: bool
    options: List[int]
    updated_at: Optional[datetime] = None
