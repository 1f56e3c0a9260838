"""Wiring: stores, services and the request-path facades built from a Config.

``build_services()`` is the startup half of the FastAPI lifespan and is also
what integration tests call to get a fully wired app against temporary
databases and a fake clock. ``Services.close()`` is the shutdown half.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI

from keyward.accounts.service import AccountService
from keyward.accounts.store import AccountStore
from keyward.api.ratelimit import RateLimitGuard
from keyward.audit.factory import create_audit_backend
from keyward.audit.recorder import AuditRecorder
from keyward.auth.authenticator import RequestAuthenticator
from keyward.config import Config
from keyward.idempotency import IdempotencyLedger, IdempotencyStore
from keyward.keys.material import KeyMaterialManager
from keyward.keys.registry import ApiKeyRegistry
from keyward.keys.store import ApiKeyStore
from keyward.ratelimit import CounterStore, RateLimiter, create_counter_store
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import get_logger
from keyward.utils.tasks import TaskTracker

logger = get_logger(__name__)


@dataclass
class Services:
    config: Config
    clock: Clock
    tasks: TaskTracker
    account_store: AccountStore
    key_store: ApiKeyStore
    idempotency_store: IdempotencyStore
    counter_store: CounterStore
    audit: AuditRecorder
    accounts: AccountService
    registry: ApiKeyRegistry
    ledger: IdempotencyLedger
    limiter: RateLimiter
    rate_guard: RateLimitGuard
    authenticator: RequestAuthenticator

    def attach(self, app: FastAPI) -> None:
        """Expose every component on ``app.state`` for routes and dependencies."""
        for name in self.__dataclass_fields__:
            setattr(app.state, name, getattr(self, name))

    async def close(self) -> None:
        """Flush background writes, then close stores (reverse of startup)."""
        await self.tasks.drain()
        await self.counter_store.close()
        await self.idempotency_store.close()
        await self.key_store.close()
        await self.account_store.close()
        await self.audit.backend.close()
        logger.info("services_closed")


async def build_services(config: Config, clock: Clock = utc_now) -> Services:
    """Open every store and assemble the services.

    Raises:
        RuntimeError: the audit database has an incompatible schema version.
        aiosqlite.Error / OSError: a database could not be opened.
    """
    storage = config.storage
    tasks = TaskTracker()

    backend = await create_audit_backend(config.audit)
    audit = AuditRecorder(
        backend,
        clock,
        retention_days=config.audit.retention_days,
        alarm_threshold=config.audit.alarm_threshold,
        tasks=tasks,
    )

    account_store = AccountStore(storage.db_path, storage.timeout_seconds)
    key_store = ApiKeyStore(storage.db_path, storage.timeout_seconds)
    idempotency_store = IdempotencyStore(storage.db_path, storage.timeout_seconds)
    counter_store = create_counter_store(config.rate_limit, storage)
    for store in (account_store, key_store, idempotency_store, counter_store):
        await store.initialize()

    accounts = AccountService(account_store, audit, clock)
    registry = ApiKeyRegistry(
        key_store,
        accounts,
        KeyMaterialManager(config.keys.bcrypt_rounds),
        audit,
        clock,
        default_ttl=timedelta(hours=config.keys.default_ttl_hours),
        max_ttl=timedelta(hours=config.keys.max_ttl_hours),
        tasks=tasks,
    )
    ledger = IdempotencyLedger(
        idempotency_store, clock, retention=timedelta(hours=config.idempotency.retention_hours)
    )
    limiter = RateLimiter(counter_store, clock)

    logger.info(
        "services_ready",
        db_path=account_store.db_path,
        bcrypt_rounds=config.keys.bcrypt_rounds,
        rate_limit_enabled=config.rate_limit.enabled,
    )
    return Services(
        config=config,
        clock=clock,
        tasks=tasks,
        account_store=account_store,
        key_store=key_store,
        idempotency_store=idempotency_store,
        counter_store=counter_store,
        audit=audit,
        accounts=accounts,
        registry=registry,
        ledger=ledger,
        limiter=limiter,
        rate_guard=RateLimitGuard(limiter, config.rate_limit),
        authenticator=RequestAuthenticator(registry, audit),
    )
