"""Shared aiosqlite plumbing for Keyward stores.

Each store owns one long-lived aiosqlite connection (opened in initialize(),
closed in close()), runs in WAL mode and creates its own tables with
``CREATE TABLE IF NOT EXISTS``. Several stores may point at the same database
file; ``busy_timeout`` lets their connections wait for each other's write
locks instead of failing immediately.

Every query goes through ``_call()``, which bounds it with
``storage.timeout_seconds`` and turns driver errors and timeouts into
``StoreUnavailableError``. A store that was never initialised (or was closed)
reports unavailable as well, so callers fail closed.
"""

from __future__ import annotations

import asyncio
import os
from typing import Awaitable, Callable, ClassVar, Optional, TypeVar

import aiosqlite

from keyward.errors import StoreUnavailableError
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 5.0


class SQLiteStore:
    """Base class: connection lifecycle, schema bootstrap, bounded calls.

    Subclasses set ``schema_sql`` (executed once on initialize) and
    ``store_name`` (used in log events).
    """

    schema_sql: ClassVar[str] = ""
    store_name: ClassVar[str] = "store"

    def __init__(self, db_path: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._timeout = timeout_seconds
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode and create the schema."""
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(f"PRAGMA busy_timeout = {int(self._timeout * 1000)};")
        if self.schema_sql:
            await self._db.executescript(self.schema_sql)
        await self._db.commit()

        logger.info(f"{self.store_name}_store_ready", db_path=self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug(f"{self.store_name}_store_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the connection is alive and queryable. Never raises."""
        if self._db is None:
            return False
        try:
            await asyncio.wait_for(self._db.execute("SELECT 1"), timeout=self._timeout)
            return True
        except (aiosqlite.Error, asyncio.TimeoutError, ValueError):
            return False

    # ── Bounded call helper ───────────────────────────────────────────────────

    async def _call(
        self,
        operation: str,
        fn: Callable[[aiosqlite.Connection], Awaitable[T]],
    ) -> T:
        """Run ``fn(connection)`` under the store timeout.

        Raises:
            StoreUnavailableError: store not open, driver error, or timeout.
        """
        db = self._db
        if db is None:
            logger.error(
                "store_not_open",
                store=self.store_name,
                operation=operation,
            )
            raise StoreUnavailableError()
        try:
            return await asyncio.wait_for(fn(db), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "store_call_timeout",
                store=self.store_name,
                operation=operation,
                timeout_seconds=self._timeout,
            )
            raise StoreUnavailableError() from exc
        except (aiosqlite.Error, ValueError) as exc:
            # ValueError: aiosqlite raises it for a connection closed mid-call
            logger.error(
                "store_call_failed",
                store=self.store_name,
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError() from exc
