"""aiosqlite persistence for idempotency records.

``UNIQUE(fingerprint)`` is what makes ``begin`` exclusive: the claim is a
single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE expires_at <= now``, so of
two concurrent claims for a live fingerprint exactly one changes a row.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from keyward.idempotency.models import IdempotencyRecord, IdempotencyStatus
from keyward.store.sqlite import SQLiteStore
from keyward.utils.clock import isoformat, parse_timestamp

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS idempotency_records (
    id          TEXT PRIMARY KEY,
    account_id  TEXT NOT NULL,
    fingerprint TEXT NOT NULL UNIQUE,
    status      TEXT NOT NULL CHECK(status IN ('pending', 'completed')),
    response    TEXT,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_idempotency_expires
    ON idempotency_records(expires_at);
"""


def _row_to_record(row: aiosqlite.Row) -> IdempotencyRecord:
    response_raw: Optional[str] = row["response"]
    return IdempotencyRecord(
        id=row["id"],
        account_id=row["account_id"],
        fingerprint=row["fingerprint"],
        status=IdempotencyStatus(row["status"]),
        response=json.loads(response_raw) if response_raw else None,
        created_at=parse_timestamp(row["created_at"]),
        expires_at=parse_timestamp(row["expires_at"]),
    )


class IdempotencyStore(SQLiteStore):
    schema_sql = _CREATE_SCHEMA_SQL
    store_name = "idempotency"

    async def get_by_fingerprint(self, fingerprint: str) -> Optional[IdempotencyRecord]:
        async def _op(db: aiosqlite.Connection) -> Optional[IdempotencyRecord]:
            async with db.execute(
                "SELECT * FROM idempotency_records WHERE fingerprint = ?", (fingerprint,)
            ) as cursor:
                row = await cursor.fetchone()
            return _row_to_record(row) if row is not None else None

        return await self._call("get_by_fingerprint", _op)

    async def get(self, record_id: str) -> Optional[IdempotencyRecord]:
        async def _op(db: aiosqlite.Connection) -> Optional[IdempotencyRecord]:
            async with db.execute(
                "SELECT * FROM idempotency_records WHERE id = ?", (record_id,)
            ) as cursor:
                row = await cursor.fetchone()
            return _row_to_record(row) if row is not None else None

        return await self._call("get", _op)

    async def claim(self, record: IdempotencyRecord, now: datetime) -> bool:
        """Insert a pending record, or replace an expired one. Atomic.

        Returns False when a live record already holds the fingerprint.
        """

        async def _op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                """INSERT INTO idempotency_records
                   (id, account_id, fingerprint, status, response, created_at, expires_at)
                   VALUES (?, ?, ?, 'pending', NULL, ?, ?)
                   ON CONFLICT(fingerprint) DO UPDATE SET
                       id = excluded.id,
                       account_id = excluded.account_id,
                       status = 'pending',
                       response = NULL,
                       created_at = excluded.created_at,
                       expires_at = excluded.expires_at
                   WHERE idempotency_records.expires_at <= ?""",
                (
                    record.id,
                    record.account_id,
                    record.fingerprint,
                    isoformat(record.created_at),
                    isoformat(record.expires_at),
                    isoformat(now),
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

        return await self._call("claim", _op)

    async def mark_completed(self, record_id: str, response: dict[str, Any]) -> bool:
        """``pending -> completed`` in one conditional UPDATE."""

        async def _op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "UPDATE idempotency_records SET status = 'completed', response = ? "
                "WHERE id = ? AND status = 'pending'",
                (json.dumps(response), record_id),
            )
            await db.commit()
            return cursor.rowcount > 0

        return await self._call("mark_completed", _op)

    async def delete_pending(self, record_id: str) -> bool:
        async def _op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "DELETE FROM idempotency_records WHERE id = ? AND status = 'pending'",
                (record_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

        return await self._call("delete_pending", _op)

    async def delete_expired(self, now: datetime) -> int:
        async def _op(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= ?", (isoformat(now),)
            )
            await db.commit()
            return cursor.rowcount

        return await self._call("delete_expired", _op)
