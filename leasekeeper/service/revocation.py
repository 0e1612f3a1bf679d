from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.audit import AuditSink, deliver
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.devices import mask_source_address
from leasekeeper.service.preferences import PreferenceService
from leasekeeper.storage.models import AUDIT_REVOKE, END_REVOKED, AuditEvent, Lease

if TYPE_CHECKING:
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)

SCOPE_SINGLE = "single"
SCOPE_OTHERS = "others"
SCOPE_ALL = "all"


@dataclass
class LeaseSummary:
    id: str
    device_label: str
    source_address: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    hard_expiry_at: datetime
    is_current: bool


@dataclass
class LeaseStats:
    active_leases: int
    last_activity_at: Optional[datetime]
    oldest_created_at: Optional[datetime]


class RevocationService:
    """Enumerates a principal's leases and ends them on request.

    Every revocation is a per-lease conditional write scoped to the owner,
    and the returned count covers only leases that actually transitioned,
    so repeating a call is an observable no-op.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        preferences: PreferenceService,
        *,
        audit: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.audit = audit
        self._now = clock

    def _live_leases(self, owner_id: str, now: datetime) -> List[Lease]:
        idle = timedelta(minutes=self.preferences.effective_idle_timeout(owner_id))
        return [
            lease
            for lease in self.store.list_leases(owner_id, active_only=True)
            if now < lease.hard_expiry_at and now - lease.last_activity_at < idle
        ]

    def list_leases(self, owner_id: str, current_lease_id: Optional[str] = None) -> List[LeaseSummary]:
        """Currently valid leases, most recently active first."""
        now = self._now()
        return [
            LeaseSummary(
                id=lease.id,
                device_label=lease.device_label,
                source_address=mask_source_address(lease.source_address),
                created_at=lease.created_at,
                last_activity_at=lease.last_activity_at,
                hard_expiry_at=lease.hard_expiry_at,
                is_current=lease.id == current_lease_id,
            )
            for lease in self._live_leases(owner_id, now)
        ]

    def lease_stats(self, owner_id: str) -> LeaseStats:
        leases = self._live_leases(owner_id, self._now())
        if not leases:
            return LeaseStats(active_leases=0, last_activity_at=None, oldest_created_at=None)
        return LeaseStats(
            active_leases=len(leases),
            last_activity_at=max(lease.last_activity_at for lease in leases),
            oldest_created_at=min(lease.created_at for lease in leases),
        )

    def revoke_lease(self, owner_id: str, lease_id: str) -> int:
        try:
            uuid.UUID(lease_id)
        except (TypeError, ValueError):
            return 0
        now = self._now()
        changed = self._revoke_one(owner_id, lease_id, now, scope=SCOPE_SINGLE)
        logger.info("lease_revoke", owner_id=owner_id, lease_id=lease_id, transitioned=changed)
        return changed

    def revoke_others(self, owner_id: str, current_lease_id: str) -> int:
        return self._revoke_many(owner_id, SCOPE_OTHERS, keep=current_lease_id)

    def revoke_all(self, owner_id: str) -> int:
        return self._revoke_many(owner_id, SCOPE_ALL)

    def _revoke_many(self, owner_id: str, scope: str, keep: Optional[str] = None) -> int:
        now = self._now()
        transitioned = 0
        for lease in self.store.list_leases(owner_id, active_only=True):
            if lease.id == keep:
                continue
            transitioned += self._revoke_one(owner_id, lease.id, now, scope=scope)
        logger.info("lease_revoke_bulk", owner_id=owner_id, scope=scope, transitioned=transitioned)
        return transitioned

    def _revoke_one(self, owner_id: str, lease_id: str, now: datetime, *, scope: str) -> int:
        changed = self.store.deactivate_lease(
            lease_id, reason=END_REVOKED, at=now, owner_id=owner_id
        )
        if changed:
            deliver(
                self.audit,
                AuditEvent(
                    kind=AUDIT_REVOKE,
                    occurred_at=now,
                    lease_id=lease_id,
                    owner_id=owner_id,
                    reason=END_REVOKED,
                    detail={"scope": scope},
                ),
            )
        return changed
