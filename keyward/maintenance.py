"""Periodic background cleanup.

Started by the FastAPI lifespan next to the audit retention pruner and
cancelled on shutdown:

  expired key purge        keys whose ``expires_at`` is older than
                           ``keys.purge_retention_days``
  idempotency purge        records past their 24h ``expires_at``
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable

from keyward.idempotency import IdempotencyLedger
from keyward.keys.registry import ApiKeyRegistry
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

# Wait after a failed run before trying again.
RETRY_AFTER_ERROR_SECONDS: float = 300.0


async def run_periodic(
    name: str,
    job: Callable[[], Awaitable[int]],
    interval_seconds: float,
) -> None:
    """Run ``job`` every ``interval_seconds`` until cancelled.

    Retry policy:
      - asyncio.CancelledError → re-raised (expected on shutdown)
      - Any other exception    → log ERROR, retry after RETRY_AFTER_ERROR_SECONDS
    """
    logger.info("periodic_job_started", job=name, interval_seconds=interval_seconds)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            count = await job()
            logger.debug("periodic_job_complete", job=name, deleted_count=count)

        except asyncio.CancelledError:
            logger.info("periodic_job_cancelled", job=name)
            raise

        except Exception as exc:
            logger.error(
                "periodic_job_error",
                job=name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RETRY_AFTER_ERROR_SECONDS,
            )
            await asyncio.sleep(RETRY_AFTER_ERROR_SECONDS)


def start_maintenance_tasks(
    registry: ApiKeyRegistry,
    ledger: IdempotencyLedger,
    *,
    key_retention: timedelta,
    key_interval_seconds: float,
    idempotency_interval_seconds: float,
) -> list["asyncio.Task[None]"]:
    """Schedule the purge loops on the running loop."""
    return [
        asyncio.create_task(
            run_periodic(
                "expired_key_purge",
                lambda: registry.purge_expired(key_retention),
                key_interval_seconds,
            ),
            name="expired_key_purge",
        ),
        asyncio.create_task(
            run_periodic(
                "idempotency_purge",
                ledger.purge_expired,
                idempotency_interval_seconds,
            ),
            name="idempotency_purge",
        ),
    ]


async def cancel_tasks(tasks: list["asyncio.Task[None]"]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
