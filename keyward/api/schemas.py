"""Request and response bodies for the /v1 API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_core import PydanticCustomError

from keyward.accounts.models import Account, AccountStatus
from keyward.audit.models import AuditEvent
from keyward.constants import MAX_KEY_TTL_HOURS
from keyward.errors import InputValidationError, InvalidPermissionError
from keyward.keys.material import mask_secret
from keyward.keys.models import (
    ApiKeyRecord,
    IssuedKey,
    KeyValidation,
    Permission,
    parse_permissions,
    serialize_permissions,
)

INVALID_PERMISSION_ERROR = "invalid_permission"
"""pydantic error type the validation handler maps to ``invalid_permission``."""


# ─── Requests ─────────────────────────────────────────────────────────────────


class CreateAccountRequest(BaseModel):
    name: str
    webhook_url: Optional[str] = None


class AccountStatusRequest(BaseModel):
    status: AccountStatus


class CreateKeyRequest(BaseModel):
    """Body for POST /v1/keys and POST /v1/accounts/{id}/keys.

    The owning account always comes from the authenticated caller (or the
    path, for admin issuance), never from the body. Permission strings are
    parsed into ``Permission`` here; an unknown one is reported as
    ``invalid_permission``.
    """

    name: str
    permissions: frozenset[Permission]
    ttl_hours: Optional[int] = Field(None, gt=0, le=MAX_KEY_TTL_HOURS)
    """Key lifetime in hours. Omitted means the configured default."""

    @field_validator("permissions", mode="before")
    @classmethod
    def _parse_permissions(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple, set, frozenset)):
            return value
        try:
            return parse_permissions(value)
        except InvalidPermissionError:
            raise PydanticCustomError(INVALID_PERMISSION_ERROR, "Unknown permission") from None
        except InputValidationError as exc:
            raise ValueError(exc.message) from None


class ValidateKeyRequest(BaseModel):
    api_key: str = Field(repr=False)


# ─── Responses ────────────────────────────────────────────────────────────────


class AccountResponse(BaseModel):
    id: str
    name: str
    status: AccountStatus
    webhook_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            name=account.name,
            status=account.status,
            webhook_url=account.webhook_url,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ApiKeyResponse(BaseModel):
    """Public view of a key. Hashes and the raw secret are never included."""

    id: str
    account_id: str
    name: str
    permissions: list[str]
    status: str
    expires_at: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> "ApiKeyResponse":
        return cls(
            id=record.id,
            account_id=record.account_id,
            name=record.name,
            permissions=serialize_permissions(record.permissions),
            status=record.status.value,
            expires_at=record.expires_at,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
        )


class IssuedKeyResponse(ApiKeyResponse):
    """Issuance response: the only place the raw secret ever appears."""

    api_key: str
    masked_key: str

    @classmethod
    def from_issued(cls, issued: IssuedKey) -> "IssuedKeyResponse":
        base = ApiKeyResponse.from_record(issued.record)
        return cls(
            **base.model_dump(),
            api_key=issued.raw_secret,
            masked_key=mask_secret(issued.raw_secret),
        )


class KeyListResponse(BaseModel):
    items: list[ApiKeyResponse]
    total: int
    limit: int
    offset: int


class ValidationResponse(BaseModel):
    """Validation contract consumed by other services.

    Identity fields are filled whenever the secret resolved to a stored key,
    including revoked and expired ones.
    """

    valid: bool
    reason: Optional[str] = None
    account_id: Optional[str] = None
    api_key_id: Optional[str] = None
    name: Optional[str] = None
    permissions: Optional[list[str]] = None
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_validation(cls, validation: KeyValidation) -> "ValidationResponse":
        record = validation.record
        if record is None:
            return cls(valid=False, reason=validation.reason.value)
        return cls(
            valid=validation.valid,
            reason=None if validation.valid else validation.reason.value,
            account_id=record.account_id,
            api_key_id=record.id,
            name=record.name,
            permissions=serialize_permissions(record.permissions),
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
        )


class RevokeKeyResponse(BaseModel):
    id: str
    status: str
    message: str = "API key revoked."


class AuditEventResponse(BaseModel):
    event_id: str
    category: str
    timestamp: datetime
    account_id: Optional[str] = None
    key_id: Optional[str] = None
    key_name: Optional[str] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    detail: dict[str, Any]

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            event_id=event.event_id,
            category=event.category.value,
            timestamp=event.timestamp,
            account_id=event.account_id,
            key_id=event.key_id,
            key_name=event.key_name,
            source_ip=event.source_ip,
            user_agent=event.user_agent,
            success=event.success,
            detail=dict(event.detail),
        )


class AuditEventsResponse(BaseModel):
    events: list[AuditEventResponse]
    count: int
