"""aiosqlite persistence for API keys.

The raw secret is never written here: rows carry the bcrypt ``storage_hash``
and the SHA-256 ``lookup_hash``. Validation looks keys up through the unique
``lookup_hash`` index; there is no query path that scans all keys.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

import aiosqlite

from keyward.keys.models import ApiKeyRecord, ApiKeyStatus, Permission, serialize_permissions
from keyward.store.sqlite import SQLiteStore
from keyward.utils.clock import isoformat, parse_timestamp

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id              TEXT PRIMARY KEY,
    account_id      TEXT NOT NULL,
    name            TEXT NOT NULL,
    storage_hash    TEXT NOT NULL,
    lookup_hash     TEXT NOT NULL,
    permissions     TEXT NOT NULL,
    status          TEXT NOT NULL CHECK(status IN ('active', 'inactive')),
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    last_used_at    TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_api_keys_lookup_hash
    ON api_keys(lookup_hash);

CREATE INDEX IF NOT EXISTS idx_api_keys_account_created
    ON api_keys(account_id, created_at DESC);
"""


def _row_to_record(row: aiosqlite.Row) -> ApiKeyRecord:
    last_used_raw: Optional[str] = row["last_used_at"]
    return ApiKeyRecord(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        storage_hash=row["storage_hash"],
        lookup_hash=row["lookup_hash"],
        permissions=frozenset(Permission(p) for p in json.loads(row["permissions"])),
        status=ApiKeyStatus(row["status"]),
        expires_at=parse_timestamp(row["expires_at"]),
        created_at=parse_timestamp(row["created_at"]),
        last_used_at=parse_timestamp(last_used_raw) if last_used_raw else None,
    )


class ApiKeyStore(SQLiteStore):
    schema_sql = _CREATE_SCHEMA_SQL
    store_name = "api_keys"

    async def insert(self, record: ApiKeyRecord) -> None:
        async def _op(db: aiosqlite.Connection) -> None:
            await db.execute(
                """INSERT INTO api_keys
                   (id, account_id, name, storage_hash, lookup_hash, permissions,
                    status, expires_at, created_at, last_used_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (
                    record.id,
                    record.account_id,
                    record.name,
                    record.storage_hash,
                    record.lookup_hash,
                    json.dumps(serialize_permissions(record.permissions)),
                    record.status.value,
                    isoformat(record.expires_at),
                    isoformat(record.created_at),
                    isoformat(record.last_used_at) if record.last_used_at else None,
                ),
            )
            await db.commit()

        await self._call("insert", _op)

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        async def _op(db: aiosqlite.Connection) -> Optional[ApiKeyRecord]:
            async with db.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)) as cursor:
                row = await cursor.fetchone()
            return _row_to_record(row) if row is not None else None

        return await self._call("get", _op)

    async def get_by_lookup_hash(self, lookup_hash: str) -> Optional[ApiKeyRecord]:
        async def _op(db: aiosqlite.Connection) -> Optional[ApiKeyRecord]:
            async with db.execute(
                "SELECT * FROM api_keys WHERE lookup_hash = ?", (lookup_hash,)
            ) as cursor:
                row = await cursor.fetchone()
            return _row_to_record(row) if row is not None else None

        return await self._call("get_by_lookup_hash", _op)

    async def list_by_account(
        self, account_id: str, limit: int, offset: int
    ) -> tuple[list[ApiKeyRecord], int]:
        """One page of an account's keys, newest first, plus the total count."""

        async def _op(db: aiosqlite.Connection) -> tuple[list[ApiKeyRecord], int]:
            async with db.execute(
                "SELECT * FROM api_keys WHERE account_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (account_id, limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
            async with db.execute(
                "SELECT COUNT(*) FROM api_keys WHERE account_id = ?", (account_id,)
            ) as cursor:
                count_row = await cursor.fetchone()
            return [_row_to_record(r) for r in rows], (count_row[0] if count_row else 0)

        return await self._call("list_by_account", _op)

    async def deactivate(self, key_id: str) -> bool:
        """Set status ``inactive``. Returns True if the key was active before."""

        async def _op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "UPDATE api_keys SET status = 'inactive' WHERE id = ? AND status = 'active'",
                (key_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

        return await self._call("deactivate", _op)

    async def touch_last_used(self, key_id: str, at: datetime) -> None:
        async def _op(db: aiosqlite.Connection) -> None:
            await db.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (isoformat(at), key_id),
            )
            await db.commit()

        await self._call("touch_last_used", _op)

    async def delete_expired_before(self, cutoff: datetime) -> int:
        async def _op(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "DELETE FROM api_keys WHERE expires_at < ?", (isoformat(cutoff),)
            )
            await db.commit()
            return cursor.rowcount

        return await self._call("delete_expired_before", _op)
