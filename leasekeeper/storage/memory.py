from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from leasekeeper.logging import get_logger
from leasekeeper.storage.common import clamp_idle_minutes
from leasekeeper.storage.errors import ConstraintViolation
from leasekeeper.storage.models import END_REASONS, AuditEvent, IdlePreference, Lease


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Mirrors the conditional-write semantics of ``PostgresStore``: every
    mutation checks its guard clause and returns the number of rows it
    actually changed. Leases handed out are copies, so callers cannot
    mutate stored state behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.leases: Dict[str, Lease] = {}
        self._by_token_hash: Dict[str, str] = {}
        self.preferences: Dict[str, IdlePreference] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations; nested acquisition is allowed
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # leases
    def create_lease(self, lease: Lease) -> Lease:
        with self._data_lock:
            if lease.token_hash in self._by_token_hash:
                raise ConstraintViolation(
                    "token hash already exists", {"field": "token_hash"}
                )
            if lease.id in self.leases:
                raise ConstraintViolation("lease id already exists", {"lease_id": lease.id})
            self.leases[lease.id] = replace(lease)
            self._by_token_hash[lease.token_hash] = lease.id
            return replace(lease)

    def get_lease(self, lease_id: str) -> Optional[Lease]:
        with self._data_lock:
            lease = self.leases.get(lease_id)
            return replace(lease) if lease else None

    def get_lease_by_token_hash(self, token_hash: str) -> Optional[Lease]:
        with self._data_lock:
            lease_id = self._by_token_hash.get(token_hash)
            if not lease_id:
                return None
            lease = self.leases.get(lease_id)
            return replace(lease) if lease else None

    def list_leases(self, owner_id: str, *, active_only: bool = True) -> List[Lease]:
        with self._data_lock:
            rows = [
                replace(lease)
                for lease in self.leases.values()
                if lease.owner_id == owner_id and (lease.is_active or not active_only)
            ]
        rows.sort(key=lambda lease: lease.last_activity_at, reverse=True)
        return rows

    def touch_lease(self, lease_id: str, at: datetime) -> int:
        with self._data_lock:
            lease = self.leases.get(lease_id)
            if (
                lease is None
                or not lease.is_active
                or not lease.last_activity_at < at
                or not lease.hard_expiry_at > at
            ):
                return 0
            lease.last_activity_at = at
            return 1

    def deactivate_lease(
        self,
        lease_id: str,
        *,
        reason: str,
        at: datetime,
        owner_id: Optional[str] = None,
        observed_activity: Optional[datetime] = None,
    ) -> int:
        if reason not in END_REASONS:
            raise ValueError(f"unknown end reason: {reason}")
        with self._data_lock:
            lease = self.leases.get(lease_id)
            if lease is None or not lease.is_active:
                return 0
            if owner_id is not None and lease.owner_id != owner_id:
                return 0
            if observed_activity is not None and lease.last_activity_at != observed_activity:
                return 0
            lease.is_active = False
            lease.ended_at = at
            lease.end_reason = reason
            return 1

    def list_hard_expired(self, now: datetime, *, limit: int) -> List[Lease]:
        with self._data_lock:
            rows = [
                replace(lease)
                for lease in self.leases.values()
                if lease.is_active and lease.hard_expiry_at <= now
            ]
        rows.sort(key=lambda lease: lease.hard_expiry_at)
        return rows[:limit]

    def list_idle_expired(
        self,
        now: datetime,
        *,
        default_minutes: int,
        min_minutes: int,
        max_minutes: int,
        limit: int,
    ) -> List[Lease]:
        with self._data_lock:
            rows = []
            for lease in self.leases.values():
                if not lease.is_active:
                    continue
                pref = self.preferences.get(lease.owner_id)
                minutes = clamp_idle_minutes(
                    pref.idle_timeout_minutes if pref else None,
                    default=default_minutes,
                    minimum=min_minutes,
                    maximum=max_minutes,
                )
                idle_deadline = lease.last_activity_at + timedelta(minutes=minutes)
                if idle_deadline <= now and idle_deadline < lease.hard_expiry_at:
                    rows.append(replace(lease))
        rows.sort(key=lambda lease: lease.last_activity_at)
        return rows[:limit]

    def purge_inactive(self, ended_before: datetime, *, limit: int) -> int:
        with self._data_lock:
            doomed = [
                lease
                for lease in self.leases.values()
                if not lease.is_active
                and lease.ended_at is not None
                and lease.ended_at < ended_before
            ][:limit]
            for lease in doomed:
                self.leases.pop(lease.id, None)
                self._by_token_hash.pop(lease.token_hash, None)
            return len(doomed)

    # preferences
    def get_idle_preference(self, owner_id: str) -> Optional[IdlePreference]:
        with self._data_lock:
            pref = self.preferences.get(owner_id)
            return replace(pref) if pref else None

    def set_idle_preference(
        self, owner_id: str, idle_timeout_minutes: int, at: datetime
    ) -> IdlePreference:
        with self._data_lock:
            pref = IdlePreference(
                owner_id=owner_id,
                idle_timeout_minutes=idle_timeout_minutes,
                updated_at=at,
            )
            self.preferences[owner_id] = pref
            return replace(pref)

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event, detail=dict(event.detail)))

    def list_audit_events(
        self,
        *,
        owner_id: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            rows = [
                event
                for event in self.audit_events
                if (owner_id is None or event.owner_id == owner_id)
                and (kind is None or event.kind == kind)
            ]
        rows.sort(key=lambda event: event.occurred_at, reverse=True)
        return rows[:limit]

    def purge_audit_events(self, before: datetime, *, limit: int) -> int:
        with self._data_lock:
            doomed = {
                event.id
                for event in self.audit_events
                if event.occurred_at < before
            }
            if len(doomed) > limit:
                oldest = sorted(
                    (e for e in self.audit_events if e.id in doomed),
                    key=lambda e: e.occurred_at,
                )
                doomed = {e.id for e in oldest[:limit]}
            if doomed:
                self.audit_events = [
                    event for event in self.audit_events if event.id not in doomed
                ]
            return len(doomed)
