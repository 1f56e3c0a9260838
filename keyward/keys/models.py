"""API key records, permissions and validation results.

IMPORTANT: nothing in this module ever holds a raw secret except
``IssuedKey.raw_secret``, which exists only for the single issuance response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from keyward.errors import InputValidationError, InvalidPermissionError

if TYPE_CHECKING:
    from keyward.accounts.models import Account
    from keyward.utils.tasks import BestEffort


# ─── Permissions ──────────────────────────────────────────────────────────────


class Permission(str, Enum):
    READ_ACCOUNTS = "read:accounts"
    WRITE_ACCOUNTS = "write:accounts"
    READ_KEYS = "read:keys"
    WRITE_KEYS = "write:keys"
    MANAGE_WEBHOOKS = "manage:webhooks"


def parse_permissions(values: Iterable[str]) -> frozenset[Permission]:
    """Parse free-form strings into a non-empty permission set.

    Raises:
        InvalidPermissionError: a value is not an allow-listed permission.
        InputValidationError: the set is empty.
    """
    parsed: set[Permission] = set()
    for value in values:
        try:
            parsed.add(Permission(value))
        except ValueError:
            raise InvalidPermissionError(f"Unknown permission: {value!r}") from None
    if not parsed:
        raise InputValidationError("At least one permission is required")
    return frozenset(parsed)


def serialize_permissions(permissions: Iterable[Permission]) -> list[str]:
    """Stable, sorted wire form."""
    return sorted(p.value for p in permissions)


# ─── Records ──────────────────────────────────────────────────────────────────


class ApiKeyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class ApiKeyRecord:
    """Persisted API key. Only hashes of the secret are stored."""

    id: str
    account_id: str
    name: str
    storage_hash: str = field(repr=False)
    """bcrypt hash, verified on every authentication."""
    lookup_hash: str = field(repr=False)
    """SHA-256 hex of the raw secret; unique index for O(log n) lookup."""
    permissions: frozenset[Permission]
    status: ApiKeyStatus
    expires_at: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        """Key-level checks only; the owning account is checked separately."""
        return self.status is ApiKeyStatus.ACTIVE and not self.is_expired(now)


@dataclass(frozen=True)
class IssuedKey:
    """Issuance result. ``raw_secret`` is shown to the caller exactly once."""

    raw_secret: str = field(repr=False)
    record: ApiKeyRecord


class ValidationReason(str, Enum):
    VALID = "valid"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    HASH_MISMATCH = "hash_mismatch"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    ACCOUNT_INACTIVE = "account_inactive"


@dataclass(frozen=True)
class KeyValidation:
    """Outcome of ``ApiKeyRegistry.validate_by_raw_secret``.

    ``record`` is set whenever the secret resolved to a stored key (even an
    invalid one); ``account`` once the owning account was loaded.
    """

    valid: bool
    reason: ValidationReason
    record: Optional[ApiKeyRecord] = None
    account: Optional["Account"] = None
    last_used_update: Optional["BestEffort"] = None


@dataclass(frozen=True)
class KeyPage:
    items: list[ApiKeyRecord]
    total: int
    limit: int
    offset: int
