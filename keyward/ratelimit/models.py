"""Rate limit dimensions and decisions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Dimension(str, Enum):
    """What a counter is keyed on. Each has its own ceiling and window."""

    IP = "ip"
    ACCOUNT = "account"
    ENDPOINT = "endpoint"


def counter_key(dimension: Dimension, identity: str) -> str:
    """``<dimension>:<identity>``; endpoint identities are ``<ip>:<path>``."""
    return f"{dimension.value}:{identity}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0
    """Seconds the client should wait; 0 when allowed."""

    @property
    def reset_epoch(self) -> int:
        return int(self.reset_at.timestamp())

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers
