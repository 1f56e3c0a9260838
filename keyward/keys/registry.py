"""API key lifecycle: issue, validate, revoke, list, purge.

Validation flow for a presented secret:
  1. Length pre-check: outside 32..256 chars -> ``malformed`` (no lookup).
  2. SHA-256 lookup hash -> unique-index query (never a scan).
  3. Constant-time re-check of the lookup hash, then bcrypt verify.
  4. ``status == active`` and ``now < expires_at``.
  5. Owning account is ``active``.
  6. On success, schedule a best-effort ``last_used_at`` update.

Not-found / expired / inactive outcomes are return values. A store failure
raises StoreUnavailableError so the caller denies the request (fail closed).
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Iterable, Optional, Union

from keyward.accounts.service import AccountService
from keyward.audit.recorder import AuditRecorder
from keyward.constants import DEFAULT_KEY_TTL_HOURS, LIST_DEFAULT_LIMIT, MAX_KEY_TTL_HOURS
from keyward.errors import InputValidationError, KeyNotFoundError, KeywardError
from keyward.keys.material import KeyMaterialManager, is_plausible_secret
from keyward.keys.models import (
    ApiKeyRecord,
    ApiKeyStatus,
    IssuedKey,
    KeyPage,
    KeyValidation,
    Permission,
    ValidationReason,
    parse_permissions,
)
from keyward.keys.store import ApiKeyStore
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import PerformanceLogger, get_logger
from keyward.utils.tasks import BestEffort, TaskTracker
from keyward.utils.ulid import generate_ulid
from keyward.validation import validate_name, validate_paging

logger = get_logger(__name__)

# bcrypt alone costs a few hundred ms at production rounds.
_VALIDATION_SLOW_MS = 1000.0


class ApiKeyRegistry:
    def __init__(
        self,
        store: ApiKeyStore,
        accounts: AccountService,
        material: KeyMaterialManager,
        audit: AuditRecorder,
        clock: Clock = utc_now,
        default_ttl: timedelta = timedelta(hours=DEFAULT_KEY_TTL_HOURS),
        max_ttl: timedelta = timedelta(hours=MAX_KEY_TTL_HOURS),
        tasks: Optional[TaskTracker] = None,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._material = material
        self._audit = audit
        self._clock = clock
        self._default_ttl = default_ttl
        self._max_ttl = max_ttl
        self._tasks = tasks or TaskTracker()

    # ── Issue ─────────────────────────────────────────────────────────────────

    async def issue(
        self,
        account_id: str,
        name: str,
        permissions: Iterable[Union[str, Permission]],
        ttl: Optional[timedelta] = None,
        *,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedKey:
        """Mint a key for an active account. The raw secret is returned once.

        Raises:
            InputValidationError: bad name, permissions or ttl.
            AccountNotActiveError: account missing or not active.
            KeyGenerationError: randomness unavailable.
            StoreUnavailableError: store failure.
        """
        name = validate_name(name)
        perms = parse_permissions(
            p.value if isinstance(p, Permission) else p for p in permissions
        )
        ttl = self._resolve_ttl(ttl)

        try:
            await self._accounts.get_active(account_id)

            material = await asyncio.to_thread(self._material.generate)
            now = self._clock()
            record = ApiKeyRecord(
                id=generate_ulid(),
                account_id=account_id,
                name=name,
                storage_hash=material.storage_hash,
                lookup_hash=material.lookup_hash,
                permissions=perms,
                status=ApiKeyStatus.ACTIVE,
                expires_at=now + ttl,
                created_at=now,
            )
            await self._store.insert(record)
        except KeywardError as exc:
            self._audit.key_issued(
                success=False,
                account_id=account_id,
                key_name=name,
                source_ip=source_ip,
                user_agent=user_agent,
                detail={"reason": exc.code.value},
            )
            raise

        logger.info(
            "api_key_issued",
            account_id=account_id,
            key_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        self._audit.key_issued(
            success=True,
            account_id=account_id,
            key_id=record.id,
            key_name=record.name,
            source_ip=source_ip,
            user_agent=user_agent,
            detail={"expires_at": record.expires_at.isoformat()},
        )
        return IssuedKey(raw_secret=material.raw_secret, record=record)

    def _resolve_ttl(self, ttl: Optional[timedelta]) -> timedelta:
        if ttl is None:
            return self._default_ttl
        if ttl <= timedelta(0):
            raise InputValidationError("ttl must be positive")
        if ttl > self._max_ttl:
            hours = int(self._max_ttl.total_seconds() // 3600)
            raise InputValidationError(f"ttl must be at most {hours} hours")
        return ttl

    # ── Validate ──────────────────────────────────────────────────────────────

    async def validate_by_raw_secret(self, raw: str) -> KeyValidation:
        """Resolve a presented secret to a usable key, or say why not.

        Raises:
            StoreUnavailableError: store failure (caller must deny).
        """
        if not raw or not is_plausible_secret(raw):
            return KeyValidation(valid=False, reason=ValidationReason.MALFORMED)

        with PerformanceLogger("key_validation", logger, threshold_ms=_VALIDATION_SLOW_MS):
            lookup = self._material.lookup_hash(raw)
            record = await self._store.get_by_lookup_hash(lookup)
            if record is None:
                return KeyValidation(valid=False, reason=ValidationReason.NOT_FOUND)

            if not self._material.secrets_match(lookup, record.lookup_hash):
                return KeyValidation(valid=False, reason=ValidationReason.NOT_FOUND)
            verified = await asyncio.to_thread(self._material.verify, raw, record.storage_hash)
            if not verified:
                return KeyValidation(valid=False, reason=ValidationReason.HASH_MISMATCH)

            now = self._clock()
            if record.status is not ApiKeyStatus.ACTIVE:
                return KeyValidation(valid=False, reason=ValidationReason.INACTIVE, record=record)
            if record.is_expired(now):
                return KeyValidation(valid=False, reason=ValidationReason.EXPIRED, record=record)

            account = await self._accounts.get(record.account_id)
            if account is None or not account.is_active:
                return KeyValidation(
                    valid=False,
                    reason=ValidationReason.ACCOUNT_INACTIVE,
                    record=record,
                    account=account,
                )

        touch = self._schedule_last_used(record.id)
        return KeyValidation(
            valid=True,
            reason=ValidationReason.VALID,
            record=record,
            account=account,
            last_used_update=touch,
        )

    def _schedule_last_used(self, key_id: str) -> BestEffort:
        return self._tasks.spawn(self._touch_last_used(key_id), name="touch_last_used")

    async def _touch_last_used(self, key_id: str) -> None:
        try:
            await self._store.touch_last_used(key_id, self._clock())
        except KeywardError as exc:
            logger.debug("last_used_update_failed", key_id=key_id, error=str(exc))

    # ── Revoke ────────────────────────────────────────────────────────────────

    async def revoke(
        self,
        key_id: str,
        *,
        account_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ApiKeyRecord:
        """Deactivate a key. Revoking an already-inactive key is a no-op success.

        When ``account_id`` is given, a key owned by another account is
        reported as not found.

        Raises:
            KeyNotFoundError: unknown key id (or foreign key).
        """
        record = await self._store.get(key_id)
        if record is None or (account_id is not None and record.account_id != account_id):
            raise KeyNotFoundError(f"API key '{key_id}' not found")

        changed = await self._store.deactivate(key_id)
        if changed:
            logger.info("api_key_revoked", account_id=record.account_id, key_id=key_id)

        self._audit.key_revoked(
            account_id=record.account_id,
            key_id=record.id,
            key_name=record.name,
            source_ip=source_ip,
            user_agent=user_agent,
            detail={"already_inactive": str(not changed).lower()},
        )
        return replace(record, status=ApiKeyStatus.INACTIVE)

    # ── Read ──────────────────────────────────────────────────────────────────

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        return await self._store.get(key_id)

    async def list(
        self, account_id: str, limit: int = LIST_DEFAULT_LIMIT, offset: int = 0
    ) -> KeyPage:
        """Newest-first page of an account's keys (active and inactive)."""
        validate_paging(limit, offset)
        items, total = await self._store.list_by_account(account_id, limit, offset)
        return KeyPage(items=items, total=total, limit=limit, offset=offset)

    # ── Purge ─────────────────────────────────────────────────────────────────

    async def purge_expired(self, retention: timedelta) -> int:
        """Delete keys whose ``expires_at`` is older than ``now - retention``."""
        cutoff = self._clock() - retention
        deleted = await self._store.delete_expired_before(cutoff)
        if deleted:
            logger.info("expired_keys_purged", deleted_count=deleted, cutoff=cutoff.isoformat())
        return deleted
