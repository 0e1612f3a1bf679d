from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from leasekeeper.logging import get_logger
from leasekeeper.storage.common import audit_event_from_row, ensure_utc, lease_from_row
from leasekeeper.storage.errors import ConstraintViolation, StorageUnavailable
from leasekeeper.storage.models import END_REASONS, AuditEvent, IdlePreference, Lease

_LEASE_COLUMNS = (
    "id, owner_id, token_hash, tenant_id, role, device_label, source_address, "
    "user_agent, created_at, last_activity_at, hard_expiry_at, is_active, "
    "ended_at, end_reason"
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS lease (
        id UUID PRIMARY KEY,
        owner_id TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        tenant_id TEXT NOT NULL DEFAULT 'public',
        role TEXT NOT NULL DEFAULT 'user',
        device_label VARCHAR(255) NOT NULL,
        source_address VARCHAR(45),
        user_agent VARCHAR(512),
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        hard_expiry_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        ended_at TIMESTAMPTZ,
        end_reason TEXT CHECK (end_reason IN ('revoked', 'idle', 'hard'))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS lease_token_hash_idx ON lease (token_hash)",
    "CREATE INDEX IF NOT EXISTS lease_owner_idx ON lease (owner_id)",
    "CREATE INDEX IF NOT EXISTS lease_active_hard_expiry_idx ON lease (hard_expiry_at) WHERE is_active",
    "CREATE INDEX IF NOT EXISTS lease_active_last_activity_idx ON lease (last_activity_at) WHERE is_active",
    "CREATE INDEX IF NOT EXISTS lease_ended_idx ON lease (ended_at) WHERE NOT is_active",
    """
    CREATE TABLE IF NOT EXISTS lease_preference (
        owner_id TEXT PRIMARY KEY,
        idle_timeout_minutes INTEGER NOT NULL CHECK (idle_timeout_minutes > 0),
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lease_audit_event (
        id UUID PRIMARY KEY,
        kind TEXT NOT NULL,
        lease_id UUID,
        owner_id TEXT,
        reason TEXT,
        source_address VARCHAR(45),
        detail JSONB NOT NULL DEFAULT '{}'::jsonb,
        occurred_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS lease_audit_owner_idx ON lease_audit_event (owner_id, occurred_at)",
    "CREATE INDEX IF NOT EXISTS lease_audit_occurred_idx ON lease_audit_event (occurred_at)",
)

REQUIRED_TABLES = ("lease", "lease_preference", "lease_audit_event")


class PostgresStore:
    """Postgres-backed lease, preference and audit tables.

    Every mutation is a single statement whose WHERE clause carries its own
    guard, so concurrent request workers and sweepers never need a table
    lock. Mutations report ``rowcount`` so callers count real transitions.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable("database connection pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create lease tables and indexes when they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # leases
    def create_lease(self, lease: Lease) -> Lease:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO lease ({_LEASE_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        lease.id,
                        lease.owner_id,
                        lease.token_hash,
                        lease.tenant_id,
                        lease.role,
                        lease.device_label,
                        lease.source_address,
                        lease.user_agent,
                        lease.created_at,
                        lease.last_activity_at,
                        lease.hard_expiry_at,
                        lease.is_active,
                        lease.ended_at,
                        lease.end_reason,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return lease

    def get_lease(self, lease_id: str) -> Optional[Lease]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_LEASE_COLUMNS} FROM lease WHERE id = %s", (lease_id,)
            ).fetchone()
        return lease_from_row(row) if row else None

    def get_lease_by_token_hash(self, token_hash: str) -> Optional[Lease]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_LEASE_COLUMNS} FROM lease WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return lease_from_row(row) if row else None

    def list_leases(self, owner_id: str, *, active_only: bool = True) -> List[Lease]:
        sql = f"SELECT {_LEASE_COLUMNS} FROM lease WHERE owner_id = %s"
        if active_only:
            sql += " AND is_active"
        sql += " ORDER BY last_activity_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, (owner_id,)).fetchall()
        return [lease_from_row(row) for row in rows]

    def touch_lease(self, lease_id: str, at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE lease SET last_activity_at = %s
                WHERE id = %s
                  AND is_active = TRUE
                  AND last_activity_at < %s
                  AND hard_expiry_at > %s
                """,
                (at, lease_id, at, at),
            )
            return result.rowcount

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
        sql = (
            "UPDATE lease SET is_active = FALSE, ended_at = %s, end_reason = %s "
            "WHERE id = %s AND is_active = TRUE"
        )
        params: list = [at, reason, lease_id]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)
        if observed_activity is not None:
            sql += " AND last_activity_at = %s"
            params.append(observed_activity)
        with self._connect() as conn:
            result = conn.execute(sql, tuple(params))
            return result.rowcount

    def list_hard_expired(self, now: datetime, *, limit: int) -> List[Lease]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_LEASE_COLUMNS} FROM lease
                WHERE is_active AND hard_expiry_at <= %s
                ORDER BY hard_expiry_at
                LIMIT %s
                """,
                (now, limit),
            ).fetchall()
        return [lease_from_row(row) for row in rows]

    def list_idle_expired(
        self,
        now: datetime,
        *,
        default_minutes: int,
        min_minutes: int,
        max_minutes: int,
        limit: int,
    ) -> List[Lease]:
        columns = "l." + _LEASE_COLUMNS.replace(", ", ", l.")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM (
                    SELECT {columns}, l.last_activity_at + make_interval(
                        mins => LEAST(GREATEST(COALESCE(p.idle_timeout_minutes, %s), %s), %s)
                    ) AS idle_deadline
                    FROM lease l
                    LEFT JOIN lease_preference p ON p.owner_id = l.owner_id
                    WHERE l.is_active
                      -- nothing is idle-expired before the shortest allowed window
                      AND l.last_activity_at <= %s - make_interval(mins => %s)
                ) candidate
                WHERE idle_deadline <= %s
                  -- leases whose hard cap came first belong to the hard step
                  AND idle_deadline < hard_expiry_at
                ORDER BY last_activity_at
                LIMIT %s
                """,
                (default_minutes, min_minutes, max_minutes, now, min_minutes, now, limit),
            ).fetchall()
        return [lease_from_row(row) for row in rows]

    def purge_inactive(self, ended_before: datetime, *, limit: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM lease WHERE id IN (
                    SELECT id FROM lease
                    WHERE NOT is_active AND ended_at < %s
                    ORDER BY ended_at
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                """,
                (ended_before, limit),
            )
            return result.rowcount

    # preferences
    def get_idle_preference(self, owner_id: str) -> Optional[IdlePreference]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner_id, idle_timeout_minutes, updated_at FROM lease_preference WHERE owner_id = %s",
                (owner_id,),
            ).fetchone()
        if not row:
            return None
        return IdlePreference(
            owner_id=row["owner_id"],
            idle_timeout_minutes=row["idle_timeout_minutes"],
            updated_at=ensure_utc(row["updated_at"]),
        )

    def set_idle_preference(
        self, owner_id: str, idle_timeout_minutes: int, at: datetime
    ) -> IdlePreference:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lease_preference (owner_id, idle_timeout_minutes, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (owner_id) DO UPDATE
                SET idle_timeout_minutes = EXCLUDED.idle_timeout_minutes,
                    updated_at = EXCLUDED.updated_at
                """,
                (owner_id, idle_timeout_minutes, at),
            )
        return IdlePreference(
            owner_id=owner_id, idle_timeout_minutes=idle_timeout_minutes, updated_at=at
        )

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lease_audit_event (id, kind, lease_id, owner_id, reason, source_address, detail, occurred_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.kind,
                    event.lease_id,
                    event.owner_id,
                    event.reason,
                    event.source_address,
                    json.dumps(event.detail or {}),
                    event.occurred_at,
                ),
            )

    def list_audit_events(
        self,
        *,
        owner_id: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: list = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if kind is not None:
            clauses.append("kind = %s")
            params.append(kind)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, kind, lease_id, owner_id, reason, source_address, detail, occurred_at
                FROM lease_audit_event {where}
                ORDER BY occurred_at DESC
                LIMIT %s
                """,
                tuple(params),
            ).fetchall()
        return [audit_event_from_row(row) for row in rows]

    def purge_audit_events(self, before: datetime, *, limit: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM lease_audit_event WHERE id IN (
                    SELECT id FROM lease_audit_event
                    WHERE occurred_at < %s
                    ORDER BY occurred_at
                    LIMIT %s
                )
                """,
                (before, limit),
            )
            return result.rowcount
