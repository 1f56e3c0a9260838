"""Idempotency records and check results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class IdempotencyState(str, Enum):
    """What ``IdempotencyLedger.check`` found for a fingerprint."""

    ABSENT = "absent"
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class IdempotencyRecord:
    """One deduplicated operation.

    ``response`` is set only once the record is ``completed``; for the HTTP
    layer it holds ``{"status_code": int, "body": <JSON>}``.
    """

    id: str
    account_id: str
    fingerprint: str
    status: IdempotencyStatus
    created_at: datetime
    expires_at: datetime
    response: Optional[dict[str, Any]] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class IdempotencyCheck:
    state: IdempotencyState
    record: Optional[IdempotencyRecord] = None
