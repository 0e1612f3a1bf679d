"""Unit tests for lease validation.

Tests for:
- Hard cap and idle window evaluation
- Idle window clamping for stale preferences
- Lazy invalidation and end reasons
- Failed-validation lockout per source
"""

import pytest

from conftest import ManualClock, make_settings
from leasekeeper.service.audit import MemoryAuditSink
from leasekeeper.service.errors import (
    AuthenticationRequired,
    LeaseExpired,
    LeaseNotFound,
    LeaseRevoked,
    RateLimited,
)
from leasekeeper.service.runtime import Runtime
from leasekeeper.storage.memory import MemoryStore

SOURCE = "203.0.113.7"
UNKNOWN_TOKEN = "Z" * 43


class TestValidLease:
    async def test_fresh_lease_is_valid(self, runtime):
        issued = await runtime.issuer.issue("alice")

        status = await runtime.validator.validate(issued.token, source=SOURCE)

        assert status.valid
        assert status.lease.id == issued.lease_id
        assert status.idle_timeout_minutes == 30
        assert status.remaining_seconds == 30 * 60
        assert status.expires_by == "idle"

    async def test_remaining_time_reports_hard_cap_when_closer(self, runtime, clock):
        issued = await runtime.issuer.issue("alice")
        for _ in range(5):
            clock.advance(minutes=10)
            await runtime.activity.record(issued.token)

        status = await runtime.validator.validate(issued.token)
        assert status.hard_remaining_seconds == 10 * 60
        assert status.remaining_seconds == 10 * 60
        assert status.expires_by == "hard"


class TestHardCap:
    async def test_activity_never_extends_past_hard_cap(self, runtime, clock, store):
        issued = await runtime.issuer.issue("alice")
        hard_expiry = store.get_lease(issued.lease_id).hard_expiry_at

        for _ in range(5):
            clock.advance(minutes=10)
            await runtime.activity.record(issued.token)
        clock.advance(minutes=9, seconds=59)
        await runtime.validator.validate(issued.token)

        clock.advance(seconds=1)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)

        assert exc_info.value.reason == "hard"
        lease = store.get_lease(issued.lease_id)
        assert lease.hard_expiry_at == hard_expiry
        assert not lease.is_active
        assert lease.end_reason == "hard"

    async def test_hard_cap_wins_at_shared_boundary(self, clock):
        settings = make_settings(
            lease_max_duration_minutes=30, idle_timeout_default_minutes=30
        )
        runtime = Runtime(settings, clock=clock, store=MemoryStore(), audit=MemoryAuditSink())
        issued = await runtime.issuer.issue("alice")

        clock.advance(minutes=30)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)
        assert exc_info.value.reason == "hard"


class TestBothClocksLapsed:
    async def test_idle_reported_when_idle_window_closed_first(self, runtime, clock, store, audit):
        issued = await runtime.issuer.issue("alice")

        clock.advance(minutes=75)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)

        assert exc_info.value.reason == "idle"
        assert store.get_lease(issued.lease_id).end_reason == "idle"
        expires = [event for event in audit.events if event.kind == "expire"]
        assert [event.reason for event in expires] == ["idle"]

    async def test_hard_reported_when_cap_came_first(self, runtime, clock):
        issued = await runtime.issuer.issue("alice")
        for _ in range(5):
            clock.advance(minutes=10)
            await runtime.activity.record(issued.token)

        clock.advance(minutes=25)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)

        assert exc_info.value.reason == "hard"


class TestIdleWindow:
    async def test_idle_window_boundary(self, runtime, clock):
        runtime.preferences.set("alice", 10)
        issued = await runtime.issuer.issue("alice")

        clock.advance(minutes=9, seconds=59)
        await runtime.validator.validate(issued.token)

        clock.advance(seconds=1)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)
        assert exc_info.value.reason == "idle"
        assert exc_info.value.reason_tag == "idle-expired"

    async def test_preference_change_applies_to_existing_lease(self, runtime, clock):
        issued = await runtime.issuer.issue("alice")
        runtime.preferences.set("alice", 5)

        clock.advance(minutes=5)
        with pytest.raises(LeaseExpired):
            await runtime.validator.validate(issued.token)

    async def test_stale_large_preference_clamped_to_maximum(self, clock):
        store = MemoryStore()
        settings = make_settings(lease_max_duration_minutes=180)
        runtime = Runtime(settings, clock=clock, store=store, audit=MemoryAuditSink())
        store.set_idle_preference("alice", 600, clock.now)
        issued = await runtime.issuer.issue("alice")

        clock.advance(minutes=59)
        status = await runtime.validator.validate(issued.token)
        assert status.idle_timeout_minutes == 60

        clock.advance(minutes=60)
        with pytest.raises(LeaseExpired) as exc_info:
            await runtime.validator.validate(issued.token)
        assert exc_info.value.reason == "idle"

    async def test_stale_small_preference_clamped_to_minimum(self, runtime, clock, store):
        store.set_idle_preference("alice", 1, clock.now)
        issued = await runtime.issuer.issue("alice")

        clock.advance(minutes=4)
        status = await runtime.validator.validate(issued.token)
        assert status.idle_timeout_minutes == 5


class TestLazyInvalidation:
    async def test_expiry_recorded_once(self, runtime, clock, audit, store):
        issued = await runtime.issuer.issue("alice")
        clock.advance(minutes=31)

        for _ in range(3):
            with pytest.raises(LeaseExpired) as exc_info:
                await runtime.validator.validate(issued.token)
            assert exc_info.value.reason == "idle"

        assert audit.kinds().count("expire") == 1
        assert audit.kinds().count("validate-fail") == 3
        lease = store.get_lease(issued.lease_id)
        assert lease.end_reason == "idle"
        assert lease.ended_at == clock.now

    async def test_revoked_lease_rejected(self, runtime):
        issued = await runtime.issuer.issue("alice")
        runtime.revocation.revoke_lease("alice", issued.lease_id)

        with pytest.raises(LeaseRevoked):
            await runtime.validator.validate(issued.token)

    async def test_missing_and_malformed_tokens(self, runtime):
        with pytest.raises(AuthenticationRequired):
            await runtime.validator.validate(None)
        with pytest.raises(AuthenticationRequired):
            await runtime.validator.validate("not a token")

    async def test_unknown_token(self, runtime, audit):
        with pytest.raises(LeaseNotFound):
            await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)

        event = audit.events[-1]
        assert event.kind == "validate-fail"
        assert event.reason == "not-found"
        assert event.source_address == SOURCE
        assert UNKNOWN_TOKEN not in repr(event)


class TestFailedValidationLockout:
    async def test_fifth_invalid_token_locks_source(self, runtime, clock):
        issued = await runtime.issuer.issue("alice")

        for _ in range(4):
            with pytest.raises(LeaseNotFound):
                await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        with pytest.raises(RateLimited) as exc_info:
            await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        assert exc_info.value.retry_after == 900

        # even a valid token is refused during the cooldown
        with pytest.raises(RateLimited):
            await runtime.validator.validate(issued.token, source=SOURCE)
        # other sources are unaffected
        await runtime.validator.validate(issued.token, source="198.51.100.1")

        clock.advance(seconds=900)
        status = await runtime.validator.validate(issued.token, source=SOURCE)
        assert status.valid

    async def test_success_resets_count(self, runtime):
        issued = await runtime.issuer.issue("alice")

        for _ in range(4):
            with pytest.raises(LeaseNotFound):
                await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        await runtime.validator.validate(issued.token, source=SOURCE)
        for _ in range(4):
            with pytest.raises(LeaseNotFound):
                await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)

    async def test_window_expiry_resets_count(self, runtime, clock):
        for _ in range(4):
            with pytest.raises(LeaseNotFound):
                await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        clock.advance(seconds=300)
        for _ in range(4):
            with pytest.raises(LeaseNotFound):
                await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)

    async def test_expired_tokens_do_not_count(self, runtime, clock):
        issued = await runtime.issuer.issue("alice")
        clock.advance(minutes=31)

        for _ in range(6):
            with pytest.raises(LeaseExpired):
                await runtime.validator.validate(issued.token, source=SOURCE)

    async def test_limit_is_configurable(self):
        clock = ManualClock()
        settings = make_settings(failed_validation_limit=2, failed_validation_cooldown_seconds=60)
        runtime = Runtime(settings, clock=clock, store=MemoryStore(), audit=MemoryAuditSink())

        with pytest.raises(LeaseNotFound):
            await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        with pytest.raises(RateLimited) as exc_info:
            await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        assert exc_info.value.retry_after == 60

        clock.advance(seconds=30)
        with pytest.raises(RateLimited) as exc_info:
            await runtime.validator.validate(UNKNOWN_TOKEN, source=SOURCE)
        assert exc_info.value.retry_after == 30

