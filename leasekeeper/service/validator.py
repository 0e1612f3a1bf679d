from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from leasekeeper.logging import get_logger
from leasekeeper.service.audit import AuditSink, deliver
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.service.errors import (
    AuthenticationRequired,
    LeaseError,
    LeaseExpired,
    LeaseNotFound,
    LeaseRevoked,
    RateLimited,
)
from leasekeeper.service.failures import FailureTracker
from leasekeeper.service.preferences import PreferenceService
from leasekeeper.service.tokens import hash_token, is_well_formed
from leasekeeper.storage.models import (
    AUDIT_EXPIRE,
    AUDIT_VALIDATE_FAIL,
    END_HARD,
    END_IDLE,
    END_REVOKED,
    AuditEvent,
    Lease,
)

if TYPE_CHECKING:
    from leasekeeper.config import Settings
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


@dataclass
class LeaseStatus:
    lease: Lease
    idle_timeout_minutes: int
    hard_remaining_seconds: int
    idle_remaining_seconds: int
    valid: bool = True

    @property
    def remaining_seconds(self) -> int:
        """Time until whichever clock fires first."""
        return min(self.hard_remaining_seconds, self.idle_remaining_seconds)

    @property
    def expires_by(self) -> str:
        return END_HARD if self.hard_remaining_seconds <= self.idle_remaining_seconds else END_IDLE


class LeaseValidator:
    """Resolves a bearer secret to a valid lease or a typed failure.

    Validity needs ``is_active``, ``now < hard_expiry_at`` and
    ``now - last_activity_at < idle window``. A lapsed lease ends with the
    reason of whichever deadline came first; when both fall on the same
    instant the hard cap wins. A lease
    first observed lapsed is deactivated on the spot (lazy invalidation)
    with a conditional write, so concurrent observers record the
    transition once.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        settings: "Settings",
        preferences: PreferenceService,
        failures: FailureTracker,
        *,
        audit: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.failures = failures
        self.audit = audit
        self.pepper = settings.token_pepper
        self._now = clock

    async def validate(self, secret: Optional[str], *, source: Optional[str] = None) -> LeaseStatus:
        retry_after = await self.failures.lockout_remaining(source)
        if retry_after:
            self._emit_failure("rate-limited", source=source)
            raise RateLimited(retry_after)

        if not is_well_formed(secret):
            await self._reject_invalid(AuthenticationRequired(), source=source)

        token_hash = hash_token(secret, self.pepper)
        lease = self.store.get_lease_by_token_hash(token_hash)
        if lease is None:
            await self._reject_invalid(
                LeaseNotFound(), source=source, detail={"token_hash": token_hash}
            )

        try:
            status = self.check(lease, self._now())
        except LeaseError as exc:
            self._emit_failure(exc.reason_tag, lease=lease, source=source)
            raise
        await self.failures.clear(source)
        return status

    def check(self, lease: Lease, now: datetime) -> LeaseStatus:
        """Evaluate both clocks for ``lease`` at ``now``, invalidating lapsed leases."""
        if not lease.is_active:
            raise ended_error(lease)

        idle_minutes = self.preferences.effective_idle_timeout(lease.owner_id)
        idle_deadline = lease.last_activity_at + timedelta(minutes=idle_minutes)
        if now >= min(lease.hard_expiry_at, idle_deadline):
            reason = END_IDLE if idle_deadline < lease.hard_expiry_at else END_HARD
            self._invalidate(lease, reason, now)
            raise LeaseExpired(reason)

        return LeaseStatus(
            lease=lease,
            idle_timeout_minutes=idle_minutes,
            hard_remaining_seconds=int((lease.hard_expiry_at - now).total_seconds()),
            idle_remaining_seconds=int((idle_deadline - now).total_seconds()),
        )

    def _invalidate(self, lease: Lease, reason: str, now: datetime) -> None:
        changed = self.store.deactivate_lease(lease.id, reason=reason, at=now)
        if not changed:
            return
        logger.info(
            "lease_expired",
            lease_id=lease.id,
            owner_id=lease.owner_id,
            reason=reason,
            observed_by="validator",
        )
        deliver(
            self.audit,
            AuditEvent(
                kind=AUDIT_EXPIRE,
                occurred_at=now,
                lease_id=lease.id,
                owner_id=lease.owner_id,
                reason=reason,
                detail={"observed_by": "validator"},
            ),
        )

    async def _reject_invalid(
        self, error: LeaseError, *, source: Optional[str], detail: Optional[dict] = None
    ) -> None:
        """Count an invalid token against ``source`` and raise."""
        self._emit_failure(error.reason_tag, source=source, detail=detail)
        retry_after = await self.failures.record_failure(source)
        if retry_after:
            raise RateLimited(retry_after) from error
        raise error

    def _emit_failure(
        self,
        reason: str,
        *,
        lease: Optional[Lease] = None,
        source: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        logger.info(
            "lease_validation_failed",
            reason=reason,
            lease_id=lease.id if lease else None,
            owner_id=lease.owner_id if lease else None,
        )
        deliver(
            self.audit,
            AuditEvent(
                kind=AUDIT_VALIDATE_FAIL,
                occurred_at=self._now(),
                lease_id=lease.id if lease else None,
                owner_id=lease.owner_id if lease else None,
                reason=reason,
                source_address=source,
                detail=detail or {},
            ),
        )


def ended_error(lease: Lease) -> LeaseError:
    """Typed error for a lease that is already inactive."""
    if lease.end_reason in (END_IDLE, END_HARD):
        return LeaseExpired(lease.end_reason)
    if lease.end_reason not in (None, END_REVOKED):
        logger.warning("lease_unknown_end_reason", lease_id=lease.id, end_reason=lease.end_reason)
    return LeaseRevoked()
