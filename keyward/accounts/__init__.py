"""Accounts: the tenants that own API keys.

    from keyward.accounts import Account, AccountService, AccountStatus
"""

from keyward.accounts.models import Account, AccountStatus
from keyward.accounts.service import AccountService
from keyward.accounts.store import AccountStore

__all__ = ["Account", "AccountService", "AccountStatus", "AccountStore"]
