"""Account model and status lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from keyward.errors import InvalidStatusTransitionError


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


# deleted is terminal; suspended accounts may be reinstated.
ALLOWED_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.ACTIVE: frozenset({AccountStatus.SUSPENDED, AccountStatus.DELETED}),
    AccountStatus.SUSPENDED: frozenset({AccountStatus.ACTIVE, AccountStatus.DELETED}),
    AccountStatus.DELETED: frozenset(),
}


@dataclass(frozen=True)
class Account:
    """A tenant of the platform. Only ``active`` accounts authenticate."""

    id: str
    name: str
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    webhook_url: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE

    def transition_to(self, new_status: AccountStatus, at: datetime) -> "Account":
        """Return a copy in ``new_status``.

        Raises:
            InvalidStatusTransitionError: transition not in ALLOWED_TRANSITIONS.
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransitionError(
                f"Cannot change account status from {self.status.value} to {new_status.value}"
            )
        return replace(self, status=new_status, updated_at=at)
