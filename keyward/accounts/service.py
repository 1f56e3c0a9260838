"""Account registration and status changes."""

from __future__ import annotations

from typing import Optional

from keyward.accounts.models import Account, AccountStatus
from keyward.accounts.store import AccountStore
from keyward.audit.recorder import AuditRecorder
from keyward.errors import AccountNotActiveError, ConflictError
from keyward.utils.clock import Clock, utc_now
from keyward.utils.logger import get_logger
from keyward.utils.ulid import generate_ulid
from keyward.validation import validate_name, validate_webhook_url

logger = get_logger(__name__)


class AccountService:
    def __init__(
        self,
        store: AccountStore,
        audit: AuditRecorder,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    async def register(
        self,
        name: str,
        webhook_url: Optional[str] = None,
        *,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        """Create a new ``active`` account and emit ``account_created``."""
        name = validate_name(name)
        webhook_url = validate_webhook_url(webhook_url)

        now = self._clock()
        account = Account(
            id=generate_ulid(),
            name=name,
            status=AccountStatus.ACTIVE,
            webhook_url=webhook_url,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(account)

        logger.info("account_registered", account_id=account.id)
        self._audit.account_created(
            account_id=account.id,
            source_ip=source_ip,
            user_agent=user_agent,
            detail={"name": account.name},
        )
        return account

    async def get(self, account_id: str) -> Optional[Account]:
        return await self._store.get(account_id)

    async def get_active(self, account_id: str) -> Account:
        """Raises AccountNotActiveError if missing or not ``active``."""
        account = await self._store.get(account_id)
        if account is None or not account.is_active:
            raise AccountNotActiveError()
        return account

    async def change_status(self, account_id: str, new_status: AccountStatus) -> Account:
        """Apply a lifecycle transition (suspend, reinstate, delete).

        Raises:
            AccountNotActiveError: unknown account id.
            InvalidStatusTransitionError: transition not allowed.
            ConflictError: status changed concurrently.
        """
        current = await self._store.get(account_id)
        if current is None:
            raise AccountNotActiveError("Account not found")
        if current.status is new_status:
            return current

        updated = current.transition_to(new_status, self._clock())
        if not await self._store.update_status(updated, expected=current.status):
            raise ConflictError("Account status changed concurrently; retry")

        logger.info(
            "account_status_changed",
            account_id=account_id,
            from_status=current.status.value,
            to_status=new_status.value,
        )
        return updated
