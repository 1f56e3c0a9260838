"""Unit tests for run_idempotent: the request-side wrapper around the ledger.

A record that never reaches ``completed`` must not block retries, and cached
bodies must not hold raw secrets.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from starlette.requests import Request

from keyward.api.idempotency import redact_secrets, run_idempotent
from keyward.constants import IDEMPOTENT_REPLAY_HEADER
from keyward.container import Services
from keyward.errors import InputValidationError, StoreUnavailableError
from keyward.idempotency import IdempotencyLedger

ACCOUNT = "01HACCOUNT0000000000000000"
BODY = b'{"name":"payouts","permissions":["read:keys"]}'


def _request(key: str = "tok-1", body: bytes = BODY) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("test", 80),
        "path": "/v1/keys",
        "raw_path": b"/v1/keys",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"content-type", b"application/json"),
            (b"idempotency-key", key.encode()),
        ],
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


class CountingHandler:
    def __init__(self, body: Any = None) -> None:
        self.calls = 0
        self.body = body if body is not None else {"id": "key-1", "api_key": "kw_secret"}

    async def __call__(self) -> tuple[int, Any]:
        self.calls += 1
        return 201, self.body


@pytest.fixture
def ledger(services: Services) -> IdempotencyLedger:
    return services.ledger


# ─── Secrets in the cache ─────────────────────────────────────────────────────


class TestRedaction:
    def test_api_key_dropped(self) -> None:
        body = {"id": "k", "api_key": "kw_secret", "masked_key": "kw_secr...cret"}
        assert redact_secrets(body) == {"id": "k", "masked_key": "kw_secr...cret"}

    def test_non_dict_untouched(self) -> None:
        assert redact_secrets(["a"]) == ["a"]

    async def test_first_response_keeps_secret_replay_does_not(
        self, ledger: IdempotencyLedger
    ) -> None:
        handler = CountingHandler()

        first = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert b"kw_secret" in first.body

        replay = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert replay.headers[IDEMPOTENT_REPLAY_HEADER] == "true"
        assert b"kw_secret" not in replay.body
        assert handler.calls == 1


# ─── Release on every non-completed exit ──────────────────────────────────────


class TestRelease:
    async def test_cancelled_handler_releases(self, ledger: IdempotencyLedger) -> None:
        async def cancelled() -> tuple[int, Any]:
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await run_idempotent(_request(), ledger, ACCOUNT, cancelled)

        handler = CountingHandler()
        resp = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert resp.status_code == 201
        assert handler.calls == 1
        assert IDEMPOTENT_REPLAY_HEADER not in resp.headers

    async def test_task_cancelled_mid_handler_releases(self, ledger: IdempotencyLedger) -> None:
        entered = asyncio.Event()

        async def slow() -> tuple[int, Any]:
            entered.set()
            await asyncio.sleep(3600)
            return 201, {}

        task = asyncio.create_task(run_idempotent(_request(), ledger, ACCOUNT, slow))
        await asyncio.wait_for(entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        handler = CountingHandler()
        resp = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert resp.status_code == 201
        assert handler.calls == 1

    async def test_failed_complete_releases(
        self, ledger: IdempotencyLedger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_complete(*args: Any, **kwargs: Any) -> None:
            raise StoreUnavailableError()

        handler = CountingHandler()
        with monkeypatch.context() as m:
            m.setattr(ledger, "complete", broken_complete)
            resp = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert resp.status_code == 201

        retry = await run_idempotent(_request(), ledger, ACCOUNT, handler)
        assert IDEMPOTENT_REPLAY_HEADER not in retry.headers
        assert handler.calls == 2

    async def test_failed_release_keeps_original_error(
        self, ledger: IdempotencyLedger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def rejected() -> tuple[int, Any]:
            raise InputValidationError("name too short")

        async def broken_release(record_id: str) -> bool:
            raise StoreUnavailableError()

        monkeypatch.setattr(ledger, "release", broken_release)
        with pytest.raises(InputValidationError):
            await run_idempotent(_request(), ledger, ACCOUNT, rejected)
