from datetime import timedelta

import pytest

from conftest import ManualClock, make_settings
from leasekeeper.service.audit import MemoryAuditSink
from leasekeeper.service.errors import LeaseExpired, LeaseRevoked
from leasekeeper.service.runtime import Runtime
from leasekeeper.storage.memory import MemoryStore
from leasekeeper.storage.models import Lease


def _runtime(clock, **overrides):
    return Runtime(
        make_settings(**overrides), clock=clock, store=MemoryStore(), audit=MemoryAuditSink()
    )


async def test_signals_inside_interval_are_coalesced(runtime, clock, store):
    issued = await runtime.issuer.issue("alice")
    created = clock.now

    clock.advance(seconds=10)
    ack = await runtime.activity.record(issued.token)
    assert ack.persisted is False
    assert ack.last_activity_at == created
    assert store.get_lease(issued.lease_id).last_activity_at == created

    clock.advance(seconds=21)
    ack = await runtime.activity.record(issued.token)
    assert ack.persisted is True
    assert store.get_lease(issued.lease_id).last_activity_at == clock.now


async def test_activity_never_changes_hard_expiry(runtime, clock, store):
    issued = await runtime.issuer.issue("alice")

    clock.advance(minutes=5)
    ack = await runtime.activity.record(issued.token)

    assert ack.hard_expiry_at == issued.hard_expiry_at
    assert store.get_lease(issued.lease_id).hard_expiry_at == issued.hard_expiry_at
    assert ack.remaining_seconds == 30 * 60


async def test_out_of_order_signals_never_move_clock_backward():
    clock = ManualClock()
    runtime = _runtime(clock, activity_min_interval_seconds=0)
    issued = await runtime.issuer.issue("alice")
    start = clock.now

    clock.advance(minutes=6)
    await runtime.activity.record(issued.token, observed_at=start + timedelta(minutes=5))
    ack = await runtime.activity.record(issued.token, observed_at=start + timedelta(minutes=3))

    assert ack.persisted is False
    assert ack.last_activity_at == start + timedelta(minutes=5)
    lease = runtime.store.get_lease(issued.lease_id)
    assert lease.last_activity_at == start + timedelta(minutes=5)


async def test_future_observation_capped_at_now(runtime, clock, store):
    issued = await runtime.issuer.issue("alice")
    clock.advance(minutes=1)

    ack = await runtime.activity.record(issued.token, observed_at=clock.now + timedelta(hours=1))

    assert ack.persisted is True
    assert store.get_lease(issued.lease_id).last_activity_at == clock.now


async def test_activity_cannot_revive_idle_lease(runtime, clock):
    issued = await runtime.issuer.issue("alice")
    clock.advance(minutes=30)

    with pytest.raises(LeaseExpired) as exc_info:
        await runtime.activity.record(issued.token)
    assert exc_info.value.reason == "idle"


async def test_activity_cannot_extend_past_hard_cap():
    # idle window 10 minutes, hard cap 60: steady traffic still ends at 60
    clock = ManualClock()
    runtime = _runtime(clock)
    runtime.preferences.set("alice", 10)
    issued = await runtime.issuer.issue("alice")

    for _ in range(11):
        clock.advance(minutes=5)
        ack = await runtime.activity.record(issued.token)
        assert ack.persisted

    assert ack.remaining_seconds == 5 * 60
    clock.advance(minutes=5)
    with pytest.raises(LeaseExpired) as exc_info:
        await runtime.activity.record(issued.token)
    assert exc_info.value.reason == "hard"


async def test_revocation_between_validate_and_write(runtime, clock):
    issued = await runtime.issuer.issue("alice")
    clock.advance(minutes=1)
    status = await runtime.validator.validate(issued.token)

    runtime.revocation.revoke_lease("alice", issued.lease_id)

    with pytest.raises(LeaseRevoked):
        runtime.activity.touch(status)


async def test_hard_cap_passing_between_validate_and_write(runtime, clock, store):
    issued = await runtime.issuer.issue("alice")
    for _ in range(5):
        clock.advance(minutes=10)
        await runtime.activity.record(issued.token)
    clock.advance(minutes=9)
    status = await runtime.validator.validate(issued.token)

    clock.advance(minutes=1)
    with pytest.raises(LeaseExpired) as exc_info:
        runtime.activity.touch(status)

    assert exc_info.value.reason == "hard"
    assert store.get_lease(issued.lease_id).end_reason == "hard"


def test_conditional_touch_guards(store, clock):
    lease = Lease.new("alice", "hash-1", now=clock.now, max_duration_minutes=60)
    store.create_lease(lease)

    assert store.touch_lease(lease.id, clock.now) == 0
    assert store.touch_lease(lease.id, clock.now - timedelta(minutes=1)) == 0
    assert store.touch_lease(lease.id, clock.now + timedelta(minutes=1)) == 1
    assert store.touch_lease(lease.id, clock.now + timedelta(minutes=60)) == 0

    store.deactivate_lease(lease.id, reason="revoked", at=clock.now)
    assert store.touch_lease(lease.id, clock.now + timedelta(minutes=2)) == 0


async def test_minute_by_minute_activity_ends_at_hard_cap():
    clock = ManualClock()
    runtime = _runtime(clock)
    runtime.preferences.set("alice", 10)
    issued = await runtime.issuer.issue("alice")

    clock.advance(minutes=9)
    ack = await runtime.activity.record(issued.token)
    assert ack.remaining_seconds == 600

    for _ in range(50):
        clock.advance(minutes=1)
        status = await runtime.validator.validate(issued.token)
        assert clock.now < status.lease.hard_expiry_at
        await runtime.activity.record(issued.token)

    clock.advance(minutes=1)
    with pytest.raises(LeaseExpired) as exc_info:
        await runtime.validator.validate(issued.token)
    assert exc_info.value.reason == "hard"
