"""Fixed-window rate limiting over pluggable counter stores."""

from keyward.ratelimit.limiter import RateLimiter, create_counter_store
from keyward.ratelimit.models import Dimension, RateLimitDecision, counter_key
from keyward.ratelimit.store import CounterStore, LimitsCounterStore, SQLiteCounterStore

__all__ = [
    "CounterStore",
    "Dimension",
    "LimitsCounterStore",
    "RateLimitDecision",
    "RateLimiter",
    "SQLiteCounterStore",
    "counter_key",
    "create_counter_store",
]
