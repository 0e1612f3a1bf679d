from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from leasekeeper.logging import get_logger
from leasekeeper.storage.errors import StorageUnavailable
from leasekeeper.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingResult:
    def __init__(self, rowcount=1, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class RecordingConnection:
    def __init__(self, result):
        self.result = result
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.result


class RecordingPool:
    def __init__(self, result=None, error=None):
        self.conn = RecordingConnection(result or RecordingResult())
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    return store


def test_touch_carries_every_guard():
    pool = RecordingPool(RecordingResult(rowcount=0))
    store = _store(pool)

    assert store.touch_lease("lease-1", NOW) == 0

    sql, params = pool.conn.statements[0]
    assert "is_active = TRUE" in sql
    assert "last_activity_at < %s" in sql
    assert "hard_expiry_at > %s" in sql
    assert params == (NOW, "lease-1", NOW, NOW)


def test_deactivate_scopes_to_owner_and_observed_activity():
    pool = RecordingPool(RecordingResult(rowcount=1))
    store = _store(pool)

    changed = store.deactivate_lease(
        "lease-1", reason="idle", at=NOW, owner_id="alice", observed_activity=NOW
    )

    assert changed == 1
    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE lease SET is_active = FALSE")
    assert "AND owner_id = %s" in sql
    assert "AND last_activity_at = %s" in sql
    assert params == (NOW, "idle", "lease-1", "alice", NOW)


def test_deactivate_rejects_unknown_reason():
    store = _store(RecordingPool())
    with pytest.raises(ValueError):
        store.deactivate_lease("lease-1", reason="expired", at=NOW)


def test_idle_query_clamps_preference_and_defers_to_hard_cap():
    pool = RecordingPool(RecordingResult(rows=[]))
    store = _store(pool)

    assert store.list_idle_expired(
        NOW, default_minutes=30, min_minutes=5, max_minutes=60, limit=10
    ) == []

    sql, params = pool.conn.statements[0]
    assert "LEFT JOIN lease_preference" in sql
    assert "LEAST(GREATEST(COALESCE(p.idle_timeout_minutes, %s), %s), %s)" in sql
    assert "idle_deadline < hard_expiry_at" in sql
    assert params == (30, 5, 60, NOW, 5, NOW, 10)


def test_purge_is_bounded():
    pool = RecordingPool(RecordingResult(rowcount=3))
    store = _store(pool)

    assert store.purge_inactive(NOW, limit=500) == 3
    sql, params = pool.conn.statements[0]
    assert "LIMIT %s" in sql
    assert "SKIP LOCKED" in sql
    assert params == (NOW, 500)


def test_lease_rows_are_mapped():
    row = {
        "id": "6f1c2a44-1b0e-4d8e-9a57-3a1f0c2b9d10",
        "owner_id": "alice",
        "token_hash": "abc",
        "tenant_id": "public",
        "role": "user",
        "device_label": "Firefox on Linux",
        "source_address": "203.0.113.4",
        "user_agent": None,
        "created_at": datetime(2026, 3, 2, 9, 0),
        "last_activity_at": NOW,
        "hard_expiry_at": NOW,
        "is_active": True,
        "ended_at": None,
        "end_reason": None,
    }
    store = _store(RecordingPool(RecordingResult(rows=[row])))

    lease = store.get_lease_by_token_hash("abc")

    assert lease.owner_id == "alice"
    assert lease.created_at.tzinfo is not None
    assert lease.is_active


@pytest.mark.parametrize(
    "error", [PoolTimeout("pool exhausted"), psycopg.OperationalError("server closed")]
)
def test_connection_failures_become_storage_unavailable(error):
    store = _store(RecordingPool(error=error))

    with pytest.raises(StorageUnavailable) as exc_info:
        store.get_lease("lease-1")
    assert exc_info.value.retryable
