"""HTTP side of the idempotency ledger.

Mutating routes wrap their work in ``run_idempotent``:

  no Idempotency-Key header  -> run the handler, no deduplication
  completed record           -> replay the cached JSON, ``Idempotent-Replayed: true``
  pending record             -> 409 idempotency_key_pending
  absent / expired record    -> begin, run, complete

A record that does not reach ``completed`` (handler raised, request
cancelled, complete failed) is released so the client can retry.

Cached bodies never hold a raw secret: ``SECRET_FIELDS`` are dropped before
the response is stored, so a replayed issuance carries the key metadata and
``masked_key`` only.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from keyward.constants import IDEMPOTENT_REPLAY_HEADER
from keyward.errors import IdempotencyCompletedError, IdempotencyPendingError, KeywardError
from keyward.idempotency import (
    IdempotencyLedger,
    IdempotencyRecord,
    IdempotencyState,
    compute_fingerprint,
    extract_idempotency_key,
)
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[], Awaitable[tuple[int, Any]]]
"""Returns ``(status_code, JSON-serialisable body)``."""

SECRET_FIELDS: frozenset[str] = frozenset({"api_key"})


def redact_secrets(body: Any) -> Any:
    if isinstance(body, dict):
        return {k: v for k, v in body.items() if k not in SECRET_FIELDS}
    return body


def _replay(record: IdempotencyRecord) -> JSONResponse:
    cached = record.response or {}
    logger.info("idempotent_replay", record_id=record.id, account_id=record.account_id)
    return JSONResponse(
        status_code=int(cached.get("status_code", 200)),
        content=cached.get("body"),
        headers={IDEMPOTENT_REPLAY_HEADER: "true"},
    )


async def _release(ledger: IdempotencyLedger, record_id: str) -> None:
    try:
        await ledger.release(record_id)
    except KeywardError as exc:
        # the original failure stays the one the client sees
        logger.error("idempotency_release_failed", record_id=record_id, error=exc.code.value)


async def run_idempotent(
    request: Request,
    ledger: IdempotencyLedger,
    account_id: str,
    handler: Handler,
) -> JSONResponse:
    idempotency_key = extract_idempotency_key(request.headers)
    if idempotency_key is None:
        status_code, body = await handler()
        return JSONResponse(status_code=status_code, content=body)

    fingerprint = compute_fingerprint(
        request.method,
        request.url.path,
        await request.body(),
        account_id,
        request.headers.get("Content-Type", ""),
        idempotency_key,
    )

    check = await ledger.check(fingerprint)
    if check.state is IdempotencyState.COMPLETED and check.record is not None:
        return _replay(check.record)
    if check.state is IdempotencyState.PENDING:
        raise IdempotencyPendingError()

    try:
        record = await ledger.begin(account_id, fingerprint)
    except IdempotencyCompletedError:
        # completed between check and begin
        check = await ledger.check(fingerprint)
        if check.state is IdempotencyState.COMPLETED and check.record is not None:
            return _replay(check.record)
        raise

    completed = False
    try:
        status_code, body = await handler()
        try:
            await ledger.complete(
                record.id, {"status_code": status_code, "body": redact_secrets(body)}
            )
            completed = True
        except KeywardError as exc:
            # the operation itself succeeded; the client still gets its result
            logger.error(
                "idempotency_complete_failed",
                record_id=record.id,
                error=exc.code.value,
            )
    finally:
        if not completed:
            await _release(ledger, record.id)
    return JSONResponse(status_code=status_code, content=body)
