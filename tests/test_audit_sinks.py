from conftest import make_settings
from leasekeeper.service.audit import (
    FanOutAuditSink,
    LogAuditSink,
    MemoryAuditSink,
    StoreAuditSink,
    deliver,
)
from leasekeeper.service.runtime import Runtime
from leasekeeper.storage.memory import MemoryStore
from leasekeeper.storage.models import AuditEvent


class ExplodingSink:
    def emit(self, event):
        raise RuntimeError("audit backend down")


def _event(clock, kind="revoke"):
    return AuditEvent(kind=kind, occurred_at=clock.now, lease_id="l-1", owner_id="alice")


def test_fan_out_continues_past_failing_sink(clock):
    memory = MemoryAuditSink()
    sink = FanOutAuditSink([ExplodingSink(), LogAuditSink(), memory])

    deliver(sink, _event(clock))

    assert memory.kinds() == ["revoke"]


def test_deliver_without_sink_is_a_no_op(clock):
    deliver(None, _event(clock))


def test_store_sink_persists(clock):
    store = MemoryStore()
    StoreAuditSink(store).emit(_event(clock, kind="expire"))

    events = store.list_audit_events(owner_id="alice")
    assert [event.kind for event in events] == ["expire"]


async def test_failing_audit_never_fails_lease_operations(clock):
    runtime = Runtime(make_settings(), clock=clock, store=MemoryStore(), audit=ExplodingSink())

    issued = await runtime.issuer.issue("alice")
    await runtime.validator.validate(issued.token)
    assert runtime.revocation.revoke_all("alice") == 1
