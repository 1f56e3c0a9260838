"""Unit tests for account registration and the status lifecycle."""

from __future__ import annotations

import pytest

from keyward.accounts import AccountStatus
from keyward.audit.models import AuditCategory, AuditQuery
from keyward.container import Services
from keyward.errors import AccountNotActiveError, InputValidationError, InvalidStatusTransitionError


class TestRegister:
    async def test_new_account_is_active(self, services: Services, clock) -> None:
        account = await services.accounts.register(
            "  Acme Payments  ", webhook_url="https://hooks.acme.test/keyward"
        )

        assert account.name == "Acme Payments"
        assert account.status is AccountStatus.ACTIVE
        assert account.is_active
        assert account.created_at == clock()
        assert await services.accounts.get(account.id) == account

    async def test_registration_audited(self, services: Services) -> None:
        account = await services.accounts.register("Acme Payments")
        await services.audit.drain()

        (event,) = await services.audit.query(AuditQuery(account_id=account.id))
        assert event.category is AuditCategory.ACCOUNT_CREATED
        assert event.detail == {"name": "Acme Payments"}

    @pytest.mark.parametrize("name", ["", "ab", "x" * 101])
    async def test_bad_name(self, services: Services, name: str) -> None:
        with pytest.raises(InputValidationError):
            await services.accounts.register(name)

    async def test_bad_webhook_url(self, services: Services) -> None:
        with pytest.raises(InputValidationError):
            await services.accounts.register("Acme Payments", webhook_url="ftp://acme.test")


class TestStatusLifecycle:
    async def test_suspend_and_reinstate(self, services: Services, clock) -> None:
        account = await services.accounts.register("Acme Payments")
        clock.advance(minutes=5)

        suspended = await services.accounts.change_status(account.id, AccountStatus.SUSPENDED)
        assert suspended.status is AccountStatus.SUSPENDED
        assert suspended.updated_at == clock()
        with pytest.raises(AccountNotActiveError):
            await services.accounts.get_active(account.id)

        active = await services.accounts.change_status(account.id, AccountStatus.ACTIVE)
        assert active.is_active
        assert (await services.accounts.get_active(account.id)).id == account.id

    async def test_same_status_is_noop(self, services: Services) -> None:
        account = await services.accounts.register("Acme Payments")
        unchanged = await services.accounts.change_status(account.id, AccountStatus.ACTIVE)
        assert unchanged == account

    async def test_deleted_is_terminal(self, services: Services) -> None:
        account = await services.accounts.register("Acme Payments")
        await services.accounts.change_status(account.id, AccountStatus.DELETED)

        with pytest.raises(InvalidStatusTransitionError):
            await services.accounts.change_status(account.id, AccountStatus.ACTIVE)

    async def test_unknown_account(self, services: Services) -> None:
        with pytest.raises(AccountNotActiveError):
            await services.accounts.change_status("01NOPE", AccountStatus.SUSPENDED)
        assert await services.accounts.get("01NOPE") is None
