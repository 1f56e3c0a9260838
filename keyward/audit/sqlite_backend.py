"""LocalSQLiteBackend: aiosqlite-based async audit backend.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1, RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Idempotent writes: INSERT OR IGNORE on event_id UNIQUE constraint
  - Partitioned layout: partition_key = <category>#<day>, sort_key = <day>#<event_id>,
    indexed (partition_key, sort_key); per-account index (account_id, sort_key)
  - prune_old_events(): DELETE WHERE timestamp < cutoff (90-day retention)
  - run_retention_pruner(): background asyncio task, daily 3am UTC
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiosqlite

from keyward.audit.models import AuditCategory, AuditEvent, AuditQuery, partition_key_for
from keyward.audit.protocol import AuditBackend
from keyward.utils.clock import isoformat, parse_timestamp, utc_now
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS audit_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT NOT NULL UNIQUE,
    partition_key   TEXT NOT NULL,
    sort_key        TEXT NOT NULL,
    category        TEXT NOT NULL CHECK(category IN
                        ('authentication', 'key_issued', 'key_revoked', 'account_created')),
    timestamp       TEXT NOT NULL,
    account_id      TEXT,
    key_id          TEXT,
    key_name        TEXT,
    source_ip       TEXT,
    user_agent      TEXT,
    success         INTEGER NOT NULL DEFAULT 1,
    detail          TEXT NOT NULL DEFAULT '{}',
    schema_version  INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_audit_partition_sort
    ON audit_events(partition_key, sort_key);

CREATE INDEX IF NOT EXISTS idx_audit_account_sort
    ON audit_events(account_id, sort_key);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp
    ON audit_events(timestamp);
"""

_SCHEMA_VERSION = 1

# Hard cap on day partitions a single category query may touch.
MAX_PARTITION_DAYS = 366


# ─── Row deserialiser ─────────────────────────────────────────────────────────


def _row_to_audit_event(row: aiosqlite.Row) -> AuditEvent:
    """Convert an aiosqlite Row (dict-like) to an AuditEvent dataclass.

    Field mapping:
      timestamp : ISO 8601 string → datetime
      success   : int (0/1)       → bool
      detail    : JSON string     → dict[str, str]
    """
    return AuditEvent(
        event_id=row["event_id"],
        category=AuditCategory(row["category"]),
        timestamp=parse_timestamp(row["timestamp"]),
        account_id=row["account_id"],
        key_id=row["key_id"],
        key_name=row["key_name"],
        source_ip=row["source_ip"],
        user_agent=row["user_agent"],
        success=bool(row["success"]),
        detail=json.loads(row["detail"]) if row["detail"] else {},
        schema_version=row["schema_version"],
    )


def day_partitions(category: AuditCategory, since: datetime, until: datetime) -> list[str]:
    """Partition keys for every UTC day in [since, until]."""
    start = since.astimezone(timezone.utc).date()
    end = until.astimezone(timezone.utc).date()
    keys: list[str] = []
    day = start
    while day <= end:
        keys.append(partition_key_for(category, day.isoformat()))
        day += timedelta(days=1)
    return keys


# ─── LocalSQLiteBackend ───────────────────────────────────────────────────────


class LocalSQLiteBackend:
    """Async SQLite audit backend using aiosqlite exclusively.

    Default path: ~/.keyward/audit.db (audit.path / KEYWARD_AUDIT_DB_PATH).

    Usage:
        backend = LocalSQLiteBackend(db_path)
        await backend.initialize()   # raises RuntimeError on schema version mismatch
        ok = await backend.log_event(event)
        events = await backend.query_events(AuditQuery(account_id=..., since=..., until=...))
        await backend.close()
    """

    def __init__(self, db_path: str = "~/.keyward/audit.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        PRAGMA user_version:
          - 0: fresh DB → create schema, set user_version=1
          - 1: compatible schema → no-op (idempotent)
          - other: RuntimeError; the FastAPI lifespan refuses startup
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds;
            # set user_version separately after the script.
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "audit_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "audit_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported audit database schema version: {current_version}. "
                f"Move {self._db_path} aside to start with a fresh audit trail."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("audit_db_closed", db_path=self._db_path)

    # ── AuditBackend Protocol Methods ─────────────────────────────────────────

    async def log_event(self, event: AuditEvent) -> bool:
        """Persist an audit event to SQLite.

        INSERT OR IGNORE: idempotent on event_id.
        Catches ALL exceptions and reports failure as False.
        """
        try:
            if self._db is None:
                raise RuntimeError("Database not initialized; call initialize() first")
            await self._db.execute(
                """INSERT OR IGNORE INTO audit_events
                   (event_id, partition_key, sort_key, category, timestamp,
                    account_id, key_id, key_name, source_ip, user_agent,
                    success, detail, schema_version)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    event.event_id,
                    event.partition_key,
                    event.sort_key,
                    event.category.value,
                    isoformat(event.timestamp),
                    event.account_id,
                    event.key_id,
                    event.key_name,
                    event.source_ip,
                    event.user_agent,
                    int(event.success),
                    json.dumps(event.detail, sort_keys=True),
                    event.schema_version,
                ),
            )
            await self._db.commit()
            return True
        except Exception as exc:
            # never re-raised to the request path
            logger.error(
                "audit_write_failed",
                event_id=event.event_id,
                category=event.category.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    async def query_events(self, query: AuditQuery) -> list[AuditEvent]:
        """Query events by category partitions and/or account index.

        Results are chronological (timestamp ASC, event_id ASC).
        All filter conditions use parameterized placeholders.
        """
        if self._db is None:
            raise RuntimeError("Database not initialized")
        sql, params = _build_select_sql(query)
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_audit_event(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            if self._db is None:
                return False
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    async def prune_old_events(
        self, retention_days: int = 90, now: Optional[datetime] = None
    ) -> int:
        """Delete events older than retention_days. Returns count of deleted rows.

        Boundary: events WHERE timestamp < cutoff are deleted; an event exactly
        at the cutoff is kept.
        """
        if self._db is None:
            raise RuntimeError("Database not initialized")
        cutoff = (now or utc_now()) - timedelta(days=retention_days)

        cursor = await self._db.execute(
            "DELETE FROM audit_events WHERE timestamp < ?",
            (isoformat(cutoff),),
        )
        await self._db.commit()
        count: int = cursor.rowcount

        if count > 0:
            logger.info(
                "retention_prune_complete",
                deleted_count=count,
                retention_days=retention_days,
                cutoff=cutoff.isoformat(),
            )
        return count


# ─── SQL Builder Helper ───────────────────────────────────────────────────────


def _build_select_sql(query: AuditQuery) -> tuple[str, list[Any]]:
    """Build a parameterized SELECT from a resolved AuditQuery.

    With a category, the WHERE clause names the day partitions explicitly so
    the (partition_key, sort_key) index is used; with an account id the
    (account_id, sort_key) index is used.
    """
    assert query.since is not None and query.until is not None, "query range not resolved"

    conditions: list[str] = []
    params: list[Any] = []

    if query.category is not None:
        partitions = day_partitions(query.category, query.since, query.until)
        placeholders = ",".join("?" for _ in partitions)
        conditions.append(f"partition_key IN ({placeholders})")
        params.extend(partitions)

    if query.account_id is not None:
        conditions.append("account_id = ?")
        params.append(query.account_id)

    conditions.append("timestamp >= ?")
    params.append(isoformat(query.since))
    conditions.append("timestamp <= ?")
    params.append(isoformat(query.until))

    sql = "SELECT * FROM audit_events WHERE " + " AND ".join(conditions)
    sql += " ORDER BY timestamp ASC, event_id ASC LIMIT ?"
    params.append(query.limit)
    return sql, params


# ─── Background Retention Pruner ──────────────────────────────────────────────


async def run_retention_pruner(
    backend: AuditBackend,
    retention_days: int = 90,
) -> None:
    """Background asyncio task: run prune_old_events() daily at 3:00 AM UTC.

    Registered with asyncio.create_task() during FastAPI lifespan startup and
    cancelled on shutdown.

    Retry policy:
      - asyncio.CancelledError → re-raised (expected on shutdown)
      - Any other exception    → log ERROR, retry after 1 hour
    """
    while True:
        try:
            now = utc_now()
            next_run = now.replace(hour=3, minute=0, second=0, microsecond=0)
            if next_run <= now:
                next_run += timedelta(days=1)
            sleep_seconds = (next_run - now).total_seconds()

            logger.info(
                "retention_pruner_scheduled",
                next_run_utc=next_run.isoformat(),
                sleep_seconds=sleep_seconds,
            )
            await asyncio.sleep(sleep_seconds)

            count = await backend.prune_old_events(retention_days=retention_days)
            logger.info(
                "retention_prune_complete",
                deleted_count=count,
                retention_days=retention_days,
            )

        except asyncio.CancelledError:
            logger.info("retention_pruner_cancelled")
            raise

        except Exception as exc:
            logger.error(
                "retention_prune_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=3600,
            )
            await asyncio.sleep(3600)
