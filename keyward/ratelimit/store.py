"""Fixed-window counter stores.

Two implementations of the same contract:

  SQLiteCounterStore  one atomic ``INSERT ... ON CONFLICT DO UPDATE ...
                      RETURNING`` per increment, in the core aiosqlite database
  LimitsCounterStore  the ``limits`` library's async storage
                      (``async+memory://``, ``async+redis://host:6379`` ...)

``increment`` returns the post-increment count and the window's reset time.
Both raise ``StoreUnavailableError`` when the backing store fails.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import aiosqlite
from limits.storage import storage_from_string

from keyward.errors import StoreUnavailableError
from keyward.store.sqlite import SQLiteStore
from keyward.utils.clock import isoformat, parse_timestamp
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class CounterStore(Protocol):
    async def initialize(self) -> None:
        ...

    async def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> tuple[int, datetime]:
        """Count one hit against ``key`` in its current window.

        A missing or lapsed window starts over at 1 with
        ``reset_at = now + window_seconds``.
        """
        ...

    async def reset(self, key: str) -> None:
        ...

    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        ...


_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limit_counters (
    key      TEXT PRIMARY KEY,
    count    INTEGER NOT NULL,
    reset_at TEXT NOT NULL
);
"""


class SQLiteCounterStore(SQLiteStore):
    schema_sql = _CREATE_SCHEMA_SQL
    store_name = "rate_limit"

    async def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> tuple[int, datetime]:
        now_text = isoformat(now)
        new_reset = isoformat(now + timedelta(seconds=window_seconds))

        async def _op(db: aiosqlite.Connection) -> tuple[int, datetime]:
            async with db.execute(
                """INSERT INTO rate_limit_counters (key, count, reset_at)
                   VALUES (?, 1, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       count = CASE WHEN rate_limit_counters.reset_at <= ?
                                    THEN 1 ELSE rate_limit_counters.count + 1 END,
                       reset_at = CASE WHEN rate_limit_counters.reset_at <= ?
                                       THEN excluded.reset_at
                                       ELSE rate_limit_counters.reset_at END
                   RETURNING count, reset_at""",
                (key, new_reset, now_text, now_text),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()
            return int(row["count"]), parse_timestamp(row["reset_at"])

        return await self._call("increment", _op)

    async def reset(self, key: str) -> None:
        async def _op(db: aiosqlite.Connection) -> None:
            await db.execute("DELETE FROM rate_limit_counters WHERE key = ?", (key,))
            await db.commit()

        await self._call("reset", _op)


class LimitsCounterStore:
    """Counter store backed by ``limits`` async storage.

    Window expiry is tracked by the storage itself (its own wall clock), so
    ``now`` is only used as a fallback when the storage cannot report one.
    """

    def __init__(self, storage_uri: str) -> None:
        self._storage_uri = storage_uri
        self._storage = storage_from_string(storage_uri)

    async def initialize(self) -> None:
        logger.info("rate_limit_store_ready", storage_uri=self._storage_uri)

    async def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> tuple[int, datetime]:
        try:
            count = await self._storage.incr(key, window_seconds)
            expiry = await self._storage.get_expiry(key)
        except Exception as exc:
            logger.error(
                "rate_limit_store_failed",
                operation="increment",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError() from exc
        if expiry:
            reset_at = datetime.fromtimestamp(expiry, tz=timezone.utc)
        else:
            reset_at = now + timedelta(seconds=window_seconds)
        return int(count), reset_at

    async def reset(self, key: str) -> None:
        try:
            await self._storage.clear(key)
        except Exception as exc:
            logger.error(
                "rate_limit_store_failed",
                operation="reset",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError() from exc

    async def health_check(self) -> bool:
        try:
            return bool(await self._storage.check())
        except Exception:
            return False

    async def close(self) -> None:
        pass

