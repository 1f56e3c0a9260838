"""Idempotency ledger: at most one in-flight execution per fingerprint.

Lifecycle of a fingerprint:

    absent ──begin──▶ pending ──complete──▶ completed ──(24h)──▶ expired
                         │                                         │
                         └──release (handler failed)──▶ absent     └──begin──▶ pending

A live ``pending`` or ``completed`` record makes ``begin`` fail with a 409;
an expired one is replaced.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from keyward.errors import (
    IdempotencyCompletedError,
    IdempotencyPendingError,
    IdempotencyStateError,
)
from keyward.idempotency.models import (
    IdempotencyCheck,
    IdempotencyRecord,
    IdempotencyState,
    IdempotencyStatus,
)
from keyward.idempotency.store import IdempotencyStore
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import get_logger
from keyward.utils.ulid import generate_ulid

logger = get_logger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)


class IdempotencyLedger:
    def __init__(
        self,
        store: IdempotencyStore,
        clock: Clock = utc_now,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self._store = store
        self._clock = clock
        self._retention = retention

    async def check(self, fingerprint: str) -> IdempotencyCheck:
        record = await self._store.get_by_fingerprint(fingerprint)
        if record is None:
            return IdempotencyCheck(state=IdempotencyState.ABSENT)
        if record.is_expired(self._clock()):
            return IdempotencyCheck(
                state=IdempotencyState.EXPIRED,
                record=_with_status(record, IdempotencyStatus.EXPIRED),
            )
        if record.status is IdempotencyStatus.COMPLETED:
            return IdempotencyCheck(state=IdempotencyState.COMPLETED, record=record)
        return IdempotencyCheck(state=IdempotencyState.PENDING, record=record)

    async def begin(self, account_id: str, fingerprint: str) -> IdempotencyRecord:
        """Claim ``fingerprint`` for one execution.

        Raises:
            IdempotencyPendingError: a live pending record exists.
            IdempotencyCompletedError: a live completed record exists.
        """
        now = self._clock()
        record = IdempotencyRecord(
            id=generate_ulid(),
            account_id=account_id,
            fingerprint=fingerprint,
            status=IdempotencyStatus.PENDING,
            created_at=now,
            expires_at=now + self._retention,
        )
        if await self._store.claim(record, now):
            logger.debug("idempotency_begun", record_id=record.id, account_id=account_id)
            return record

        existing = await self._store.get_by_fingerprint(fingerprint)
        if existing is not None and existing.status is IdempotencyStatus.COMPLETED:
            raise IdempotencyCompletedError()
        logger.info("idempotency_conflict", account_id=account_id)
        raise IdempotencyPendingError()

    async def complete(self, record_id: str, response: dict[str, Any]) -> IdempotencyRecord:
        """Store the response and mark the record completed.

        Raises:
            IdempotencyStateError: record missing or not pending.
        """
        if not await self._store.mark_completed(record_id, response):
            raise IdempotencyStateError()
        record = await self._store.get(record_id)
        if record is None:
            raise IdempotencyStateError()
        return record

    async def release(self, record_id: str) -> bool:
        """Drop a pending record so the client can retry after a failure."""
        released = await self._store.delete_pending(record_id)
        if released:
            logger.info("idempotency_released", record_id=record_id)
        return released

    async def purge_expired(self) -> int:
        deleted = await self._store.delete_expired(self._clock())
        if deleted:
            logger.info("idempotency_records_purged", deleted_count=deleted)
        return deleted


def _with_status(record: IdempotencyRecord, status: IdempotencyStatus) -> IdempotencyRecord:
    return IdempotencyRecord(
        id=record.id,
        account_id=record.account_id,
        fingerprint=record.fingerprint,
        status=status,
        created_at=record.created_at,
        expires_at=record.expires_at,
        response=record.response,
    )
