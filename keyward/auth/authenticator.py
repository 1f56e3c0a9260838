"""Request authenticator: headers in, ``AuthOutcome`` out.

Every attempt is audited under the ``authentication`` category, successful or
not, with the failure reason in ``detail.reason``. Denials are return values;
only a store failure raises (``StoreUnavailableError``), so callers that
forget to check the outcome still cannot let a request through on an outage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from keyward.audit.recorder import AuditRecorder
from keyward.auth.headers import extract_api_key
from keyward.errors import (
    AuthenticationError,
    ErrorCode,
    InactiveAccountError,
    KeywardError,
    StoreUnavailableError,
)
from keyward.keys.material import mask_secret
from keyward.keys.models import KeyValidation, Permission, ValidationReason
from keyward.keys.registry import ApiKeyRegistry
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

MISSING = "missing"
STORE_UNAVAILABLE = "store_unavailable"

_FAILURE_CODES: dict[str, ErrorCode] = {
    MISSING: ErrorCode.MISSING_API_KEY,
    ValidationReason.MALFORMED.value: ErrorCode.INVALID_API_KEY,
    ValidationReason.NOT_FOUND.value: ErrorCode.INVALID_API_KEY,
    ValidationReason.HASH_MISMATCH.value: ErrorCode.INVALID_API_KEY,
    ValidationReason.EXPIRED.value: ErrorCode.EXPIRED_API_KEY,
    ValidationReason.INACTIVE.value: ErrorCode.INACTIVE_API_KEY,
    ValidationReason.ACCOUNT_INACTIVE.value: ErrorCode.INACTIVE_ACCOUNT,
}

_FAILURE_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.MISSING_API_KEY: "API key is required",
    ErrorCode.INVALID_API_KEY: "API key is invalid",
    ErrorCode.EXPIRED_API_KEY: "API key has expired",
    ErrorCode.INACTIVE_API_KEY: "API key has been revoked",
    ErrorCode.INACTIVE_ACCOUNT: "Account is not active",
}


@dataclass(frozen=True)
class AuthContext:
    """Validated identity handed to downstream handlers."""

    account_id: str
    key_id: str
    key_name: str
    permissions: frozenset[Permission]

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class AuthOutcome:
    authenticated: bool
    reason: str
    context: Optional[AuthContext] = None
    validation: Optional[KeyValidation] = None

    @property
    def error_code(self) -> Optional[ErrorCode]:
        if self.authenticated:
            return None
        return _FAILURE_CODES.get(self.reason, ErrorCode.INVALID_API_KEY)

    def to_error(self) -> KeywardError:
        """The client-facing error for a denied outcome (401, or 403 for a
        suspended account)."""
        code = self.error_code or ErrorCode.INVALID_API_KEY
        message = _FAILURE_MESSAGES.get(code)
        if code is ErrorCode.INACTIVE_ACCOUNT:
            return InactiveAccountError(message)
        return AuthenticationError(message, code=code)


class RequestAuthenticator:
    def __init__(self, registry: ApiKeyRegistry, audit: AuditRecorder) -> None:
        self._registry = registry
        self._audit = audit

    async def authenticate(
        self,
        headers: Mapping[str, str],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        """Raises:
            StoreUnavailableError: key or account store failed (deny with 503).
        """
        raw = extract_api_key(headers)
        if raw is None:
            self._audit.authentication(
                success=False, source_ip=source_ip, user_agent=user_agent, reason=MISSING
            )
            return AuthOutcome(authenticated=False, reason=MISSING)
        return await self.verify(raw, source_ip, user_agent)

    async def verify(
        self,
        raw: str,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        """Validate an already-extracted secret and audit the attempt."""
        try:
            validation = await self._registry.validate_by_raw_secret(raw)
        except StoreUnavailableError:
            logger.error("authentication_store_unavailable", source_ip=source_ip)
            self._audit.authentication(
                success=False,
                source_ip=source_ip,
                user_agent=user_agent,
                reason=STORE_UNAVAILABLE,
            )
            raise

        record = validation.record
        if not validation.valid:
            logger.warning(
                "authentication_failed",
                reason=validation.reason.value,
                key=mask_secret(raw),
                source_ip=source_ip,
            )
            self._audit.authentication(
                success=False,
                account_id=record.account_id if record else None,
                key_id=record.id if record else None,
                key_name=record.name if record else None,
                source_ip=source_ip,
                user_agent=user_agent,
                reason=validation.reason.value,
            )
            return AuthOutcome(
                authenticated=False, reason=validation.reason.value, validation=validation
            )

        assert record is not None
        self._audit.authentication(
            success=True,
            account_id=record.account_id,
            key_id=record.id,
            key_name=record.name,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        context = AuthContext(
            account_id=record.account_id,
            key_id=record.id,
            key_name=record.name,
            permissions=record.permissions,
        )
        return AuthOutcome(
            authenticated=True,
            reason=ValidationReason.VALID.value,
            context=context,
            validation=validation,
        )
