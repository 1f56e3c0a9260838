"""Per-request rate limiting for the /v1 routes.

``RateLimitGuard.check_request`` runs as a router-level dependency and counts
the request against the ``ip`` and ``endpoint`` dimensions;
``authenticate_request`` calls ``check_account`` once the caller is known.
The headers of the tightest decision so far are kept on
``request.state.rate_limit_headers`` and copied onto the response by the
middleware in ``keyward.main``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from keyward.auth.dependencies import client_ip
from keyward.config import RateLimitConfig, RateLimitRule
from keyward.errors import RateLimitExceededError
from keyward.ratelimit import Dimension, RateLimitDecision, RateLimiter, counter_key


class RateLimitGuard:
    def __init__(self, limiter: RateLimiter, config: RateLimitConfig) -> None:
        self._limiter = limiter
        self._config = config

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    async def check_request(self, request: Request) -> None:
        if not self._config.enabled:
            return
        ip = client_ip(request)
        await self._check(request, Dimension.IP, ip, self._config.ip)
        await self._check(
            request, Dimension.ENDPOINT, f"{ip}:{request.url.path}", self._config.endpoint
        )

    async def check_account(self, request: Request, account_id: str) -> None:
        if not self._config.enabled:
            return
        await self._check(request, Dimension.ACCOUNT, account_id, self._config.account)

    async def _check(
        self, request: Request, dimension: Dimension, identity: str, rule: RateLimitRule
    ) -> None:
        """Raises:
            RateLimitExceededError: 429 with Retry-After.
            RateLimitCheckError: 503, counter store unavailable.
        """
        decision = await self._limiter.check_and_increment(
            counter_key(dimension, identity), rule.ceiling, rule.window_seconds
        )
        _remember(request, decision)
        if not decision.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded for {dimension.value}",
                details={
                    "limit": decision.limit,
                    "window_seconds": rule.window_seconds,
                    "reset_time": decision.reset_epoch,
                    "retry_after": decision.retry_after,
                },
                headers=decision.headers(),
            )


def _remember(request: Request, decision: RateLimitDecision) -> None:
    current: Optional[RateLimitDecision] = getattr(request.state, "rate_limit_decision", None)
    if current is None or not decision.allowed or decision.remaining < current.remaining:
        request.state.rate_limit_decision = decision
        request.state.rate_limit_headers = decision.headers()


async def enforce_rate_limits(request: Request) -> None:
    """Router-level dependency for the ``ip`` and ``endpoint`` dimensions."""
    guard: Optional[RateLimitGuard] = getattr(request.app.state, "rate_guard", None)
    if guard is not None:
        await guard.check_request(request)
