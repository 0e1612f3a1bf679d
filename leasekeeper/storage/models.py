from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

# end_reason values recorded when is_active flips to false
END_REVOKED = "revoked"
END_IDLE = "idle"
END_HARD = "hard"
END_REASONS = (END_REVOKED, END_IDLE, END_HARD)


@dataclass
class Lease:
    id: str
    owner_id: str
    token_hash: str
    created_at: datetime
    last_activity_at: datetime
    hard_expiry_at: datetime
    device_label: str = "Unknown device"
    source_address: Optional[str] = None
    user_agent: Optional[str] = None
    tenant_id: str = "public"
    role: str = "user"
    is_active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        token_hash: str,
        *,
        now: datetime,
        max_duration_minutes: int,
        device_label: str = "Unknown device",
        source_address: str | None = None,
        user_agent: str | None = None,
        tenant_id: str = "public",
        role: str = "user",
    ) -> "Lease":
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            token_hash=token_hash,
            created_at=now,
            last_activity_at=now,
            hard_expiry_at=now + timedelta(minutes=max_duration_minutes),
            device_label=device_label,
            source_address=source_address,
            user_agent=user_agent,
            tenant_id=tenant_id,
            role=role,
        )


@dataclass
class IdlePreference:
    owner_id: str
    idle_timeout_minutes: int
    updated_at: datetime


@dataclass
class AuditEvent:
    """Lifecycle event handed to the audit collaborator.

    Carries identifiers and the failure or expiry reason only; never a
    bearer secret.
    """

    kind: str
    occurred_at: datetime
    lease_id: Optional[str] = None
    owner_id: Optional[str] = None
    reason: Optional[str] = None
    source_address: Optional[str] = None
    detail: Dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


# AuditEvent.kind values
AUDIT_CREATE = "create"
AUDIT_VALIDATE_FAIL = "validate-fail"
AUDIT_REVOKE = "revoke"
AUDIT_EXPIRE = "expire"
