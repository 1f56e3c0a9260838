"""aiosqlite persistence for accounts."""

from __future__ import annotations

from typing import Optional

import aiosqlite

from keyward.accounts.models import Account, AccountStatus
from keyward.store.sqlite import SQLiteStore
from keyward.utils.clock import isoformat, parse_timestamp

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    status      TEXT NOT NULL CHECK(status IN ('active', 'suspended', 'deleted')),
    webhook_url TEXT,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


def _row_to_account(row: aiosqlite.Row) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        status=AccountStatus(row["status"]),
        webhook_url=row["webhook_url"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


class AccountStore(SQLiteStore):
    schema_sql = _CREATE_SCHEMA_SQL
    store_name = "accounts"

    async def insert(self, account: Account) -> None:
        async def _op(db: aiosqlite.Connection) -> None:
            await db.execute(
                "INSERT INTO accounts (id, name, status, webhook_url, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    account.id,
                    account.name,
                    account.status.value,
                    account.webhook_url,
                    isoformat(account.created_at),
                    isoformat(account.updated_at),
                ),
            )
            await db.commit()

        await self._call("insert", _op)

    async def get(self, account_id: str) -> Optional[Account]:
        async def _op(db: aiosqlite.Connection) -> Optional[Account]:
            async with db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)) as cursor:
                row = await cursor.fetchone()
            return _row_to_account(row) if row is not None else None

        return await self._call("get", _op)

    async def update_status(
        self, account: Account, expected: AccountStatus
    ) -> bool:
        """Persist ``account.status`` only if the row is still in ``expected``.

        Returns False when another writer changed the status first.
        """

        async def _op(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "UPDATE accounts SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (
                    account.status.value,
                    isoformat(account.updated_at),
                    account.id,
                    expected.value,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

        return await self._call("update_status", _op)
