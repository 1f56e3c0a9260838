"""Fixed-window rate limiter.

Each counter key owns a window of ``window_seconds``. The first hit opens the
window with count 1; further hits inside it increment the count and are
allowed while ``count <= ceiling``. The first hit at or after ``reset_at``
opens a fresh window. Denied hits are counted too, so a client hammering a
closed window does not extend it but does keep ``remaining`` at 0.
"""

from __future__ import annotations

from keyward.config import RateLimitConfig, StorageConfig, SQLITE_COUNTER_STORAGE
from keyward.errors import RateLimitCheckError, StoreUnavailableError
from keyward.ratelimit.models import RateLimitDecision
from keyward.ratelimit.store import CounterStore, LimitsCounterStore, SQLiteCounterStore
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


class RateLimiter:
    def __init__(self, store: CounterStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store

    async def check_and_increment(
        self, key: str, ceiling: int, window_seconds: int
    ) -> RateLimitDecision:
        """Count one request against ``key`` and decide whether it may proceed.

        Raises:
            RateLimitCheckError: the counter store is unavailable (503).
        """
        if ceiling <= 0 or window_seconds <= 0:
            raise ValueError("ceiling and window_seconds must be positive")
        try:
            count, reset_at = await self._store.increment(key, window_seconds, self._clock())
        except StoreUnavailableError as exc:
            logger.error("rate_limit_check_failed", counter_key=key)
            raise RateLimitCheckError() from exc

        allowed = count <= ceiling
        decision = RateLimitDecision(
            allowed=allowed,
            limit=ceiling,
            remaining=max(0, ceiling - count),
            reset_at=reset_at,
            retry_after=0 if allowed else window_seconds,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                counter_key=key,
                limit=ceiling,
                window_seconds=window_seconds,
            )
        return decision

    async def reset(self, key: str) -> None:
        """Administrative reset: the next hit on ``key`` opens a new window."""
        try:
            await self._store.reset(key)
        except StoreUnavailableError as exc:
            raise RateLimitCheckError() from exc
        logger.info("rate_limit_reset", counter_key=key)


def create_counter_store(config: RateLimitConfig, storage: StorageConfig) -> CounterStore:
    """``rate_limit.storage_uri`` "sqlite" shares the core database; anything
    else is handed to ``limits.storage.storage_from_string``."""
    if config.storage_uri == SQLITE_COUNTER_STORAGE:
        return SQLiteCounterStore(storage.db_path, storage.timeout_seconds)
    return LimitsCounterStore(config.storage_uri)
