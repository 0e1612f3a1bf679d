"""Row mapping shared by the memory and postgres backends."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from leasekeeper.storage.models import AuditEvent, Lease


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def lease_from_row(row: Mapping[str, Any]) -> Lease:
    return Lease(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        token_hash=row["token_hash"],
        created_at=ensure_utc(row["created_at"]),
        last_activity_at=ensure_utc(row["last_activity_at"]),
        hard_expiry_at=ensure_utc(row["hard_expiry_at"]),
        device_label=row.get("device_label") or "Unknown device",
        source_address=row.get("source_address"),
        user_agent=row.get("user_agent"),
        tenant_id=row.get("tenant_id") or "public",
        role=row.get("role") or "user",
        is_active=bool(row["is_active"]),
        ended_at=ensure_utc(row.get("ended_at")),
        end_reason=row.get("end_reason"),
    )


def audit_event_from_row(row: Mapping[str, Any]) -> AuditEvent:
    detail = row.get("detail") or {}
    if isinstance(detail, str):
        detail = json.loads(detail)
    return AuditEvent(
        id=str(row["id"]),
        kind=row["kind"],
        occurred_at=ensure_utc(row["occurred_at"]),
        lease_id=str(row["lease_id"]) if row.get("lease_id") else None,
        owner_id=row.get("owner_id"),
        reason=row.get("reason"),
        source_address=row.get("source_address"),
        detail=detail,
    )


def clamp_idle_minutes(
    value: Optional[int], *, default: int, minimum: int, maximum: int
) -> int:
    """Effective idle window for a stored preference.

    Missing rows use the default; stale or corrupt values are pulled back
    into ``[minimum, maximum]``.
    """
    if value is None:
        return default
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, minutes))
