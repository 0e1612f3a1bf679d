"""Audit collaborator interface and the sinks shipped with the service.

Audit delivery never decides the outcome of a lease operation: a sink that
fails is logged and the operation proceeds.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

from leasekeeper.logging import get_logger
from leasekeeper.storage.models import AuditEvent

if TYPE_CHECKING:
    from leasekeeper.storage.memory import MemoryStore
    from leasekeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LogAuditSink:
    """Writes each event as a structured ``lease_audit`` log line."""

    def __init__(self) -> None:
        self.logger = get_logger("leasekeeper.audit")

    def emit(self, event: AuditEvent) -> None:
        self.logger.info(
            "lease_audit",
            audit_kind=event.kind,
            lease_id=event.lease_id,
            owner_id=event.owner_id,
            reason=event.reason,
            source_address=event.source_address,
            detail=event.detail or None,
            occurred_at=event.occurred_at.isoformat(),
        )


class StoreAuditSink:
    """Persists events to the store's audit table."""

    def __init__(self, store: "PostgresStore | MemoryStore") -> None:
        self.store = store

    def emit(self, event: AuditEvent) -> None:
        self.store.record_audit_event(event)


class MemoryAuditSink:
    """Keeps events in a list; useful for tests and local inspection."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self) -> List[str]:
        with self._lock:
            return [event.kind for event in self.events]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class FanOutAuditSink:
    def __init__(self, sinks: Sequence[AuditSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            deliver(sink, event)


def deliver(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Hand ``event`` to ``sink``, logging instead of raising on failure."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as exc:
        logger.warning(
            "audit_delivery_failed",
            sink=type(sink).__name__,
            audit_kind=event.kind,
            lease_id=event.lease_id,
            error_type=type(exc).__name__,
        )
