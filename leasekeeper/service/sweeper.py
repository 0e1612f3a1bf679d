"""Background reclamation of lapsed and long-ended leases.

Each pass:
- deactivates active leases whose idle window elapsed before their hard cap,
- deactivates the remaining active leases past their hard cap,
- deletes leases that have been inactive longer than the retention window,
- deletes persisted audit events older than the audit retention window.

Every step is a guarded single-row update or a bounded delete, so passes
may overlap with live traffic and with each other.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.audit import AuditSink, deliver
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.failures import FailureTracker
from leasekeeper.storage.models import AUDIT_EXPIRE, END_HARD, END_IDLE, AuditEvent, Lease

if TYPE_CHECKING:
    from leasekeeper.config import Settings
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)

# Upper bound on batches per step in a single pass
MAX_BATCHES_PER_PASS = 100
MAX_BACKOFF_SECONDS = 1800


@dataclass
class SweepReport:
    expired_hard: int = 0
    expired_idle: int = 0
    purged_leases: int = 0
    purged_audit_events: int = 0

    @property
    def total(self) -> int:
        return self.expired_hard + self.expired_idle + self.purged_leases + self.purged_audit_events


class CleanupSweeper:
    """Periodic reclamation pass, runnable inline or as a background task."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: "Settings",
        *,
        audit: Optional[AuditSink] = None,
        failures: Optional[FailureTracker] = None,
        purge_audit: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.failures = failures
        self.purge_audit = purge_audit
        self.interval = settings.sweeper_interval_seconds
        self.batch_size = settings.sweeper_batch_size
        self.retention = timedelta(days=settings.lease_retention_days)
        self.audit_retention = timedelta(days=settings.audit_retention_days)
        self.idle_default = settings.idle_timeout_default_minutes
        self.idle_min = settings.idle_timeout_min_minutes
        self.idle_max = settings.idle_timeout_max_minutes
        self._now = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self._now()
        report = SweepReport()
        report.expired_idle = self._expire_idle(now)
        report.expired_hard = self._expire_hard(now)
        report.purged_leases = self._drain(
            lambda: self.store.purge_inactive(now - self.retention, limit=self.batch_size)
        )
        if self.purge_audit:
            report.purged_audit_events = self._drain(
                lambda: self.store.purge_audit_events(
                    now - self.audit_retention, limit=self.batch_size
                )
            )
        if self.failures is not None:
            self.failures.prune()
        if report.total:
            logger.info(
                "lease_sweep_completed",
                expired_hard=report.expired_hard,
                expired_idle=report.expired_idle,
                purged_leases=report.purged_leases,
                purged_audit_events=report.purged_audit_events,
            )
        return report

    def _expire_hard(self, now: datetime) -> int:
        transitioned = 0
        for _ in range(MAX_BATCHES_PER_PASS):
            batch = self.store.list_hard_expired(now, limit=self.batch_size)
            flipped = sum(self._expire(lease, END_HARD, now) for lease in batch)
            transitioned += flipped
            if len(batch) < self.batch_size or not flipped:
                break
        return transitioned

    def _expire_idle(self, now: datetime) -> int:
        transitioned = 0
        for _ in range(MAX_BATCHES_PER_PASS):
            batch = self.store.list_idle_expired(
                now,
                default_minutes=self.idle_default,
                min_minutes=self.idle_min,
                max_minutes=self.idle_max,
                limit=self.batch_size,
            )
            # Guard on the observed timestamp: fresh activity wins the race.
            flipped = sum(
                self._expire(lease, END_IDLE, now, observed_activity=lease.last_activity_at)
                for lease in batch
            )
            transitioned += flipped
            if len(batch) < self.batch_size or not flipped:
                break
        return transitioned

    def _drain(self, delete_batch) -> int:
        removed = 0
        for _ in range(MAX_BATCHES_PER_PASS):
            count = delete_batch()
            removed += count
            if count < self.batch_size:
                break
        return removed

    def _expire(
        self,
        lease: Lease,
        reason: str,
        now: datetime,
        *,
        observed_activity: Optional[datetime] = None,
    ) -> int:
        changed = self.store.deactivate_lease(
            lease.id, reason=reason, at=now, observed_activity=observed_activity
        )
        if changed:
            deliver(
                self.audit,
                AuditEvent(
                    kind=AUDIT_EXPIRE,
                    occurred_at=now,
                    lease_id=lease.id,
                    owner_id=lease.owner_id,
                    reason=reason,
                    detail={"observed_by": "sweeper"},
                ),
            )
        return changed

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("lease_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("lease_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("lease_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "lease_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "lease_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
