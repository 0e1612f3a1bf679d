from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.errors import LeaseError, LeaseNotFound
from leasekeeper.service.validator import LeaseStatus, LeaseValidator, ended_error
from leasekeeper.storage.common import ensure_utc

if TYPE_CHECKING:
    from leasekeeper.config import Settings
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


@dataclass
class ActivityAck:
    lease_id: str
    persisted: bool
    last_activity_at: datetime
    hard_expiry_at: datetime
    idle_timeout_minutes: int
    remaining_seconds: int


class ActivityRecorder:
    """Moves a lease's idle clock forward; never touches the hard cap.

    Signals closer than ``activity_min_interval_seconds`` to the persisted
    ``last_activity_at`` are acknowledged without a write. Persisted
    signals use a conditional update that refuses inactive leases, leases
    past their hard cap, and timestamps older than the stored one.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: "Settings",
        validator: LeaseValidator,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.validator = validator
        self.min_interval = timedelta(seconds=settings.activity_min_interval_seconds)
        self._now = clock

    async def record(
        self,
        secret: Optional[str],
        *,
        source: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> ActivityAck:
        """Validate ``secret`` and record activity on its lease.

        ``observed_at`` lets a retried signal carry its original time; it is
        capped at the current time and never moves the clock backward.
        """
        status = await self.validator.validate(secret, source=source)
        return self.touch(status, observed_at=observed_at)

    def touch(self, status: LeaseStatus, *, observed_at: Optional[datetime] = None) -> ActivityAck:
        lease = status.lease
        now = self._now()
        signal_at = min(ensure_utc(observed_at) or now, now)

        if signal_at - lease.last_activity_at < self.min_interval:
            return self._ack(status, persisted=False, last_activity_at=lease.last_activity_at, now=now)

        changed = self.store.touch_lease(lease.id, signal_at)
        if changed:
            logger.debug("lease_activity_recorded", lease_id=lease.id)
            return self._ack(status, persisted=True, last_activity_at=signal_at, now=now)

        current = self.store.get_lease(lease.id)
        if current is None:
            raise LeaseNotFound()
        if not current.is_active:
            raise ended_error(current)
        # A newer timestamp is already stored, or the hard cap passed between
        # validation and the write; re-check against the stored row.
        refreshed = self._recheck(current, now)
        return self._ack(
            refreshed, persisted=False, last_activity_at=current.last_activity_at, now=now
        )

    def _recheck(self, lease, now: datetime) -> LeaseStatus:
        try:
            return self.validator.check(lease, now)
        except LeaseError as exc:
            logger.info("lease_activity_rejected", lease_id=lease.id, reason=exc.reason_tag)
            raise

    def _ack(
        self,
        status: LeaseStatus,
        *,
        persisted: bool,
        last_activity_at: datetime,
        now: datetime,
    ) -> ActivityAck:
        lease = status.lease
        idle_deadline = last_activity_at + timedelta(minutes=status.idle_timeout_minutes)
        remaining = min(lease.hard_expiry_at - now, idle_deadline - now)
        return ActivityAck(
            lease_id=lease.id,
            persisted=persisted,
            last_activity_at=last_activity_at,
            hard_expiry_at=lease.hard_expiry_at,
            idle_timeout_minutes=status.idle_timeout_minutes,
            remaining_seconds=max(0, int(remaining.total_seconds())),
        )
