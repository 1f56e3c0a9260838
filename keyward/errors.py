"""Keyward error taxonomy.

Every failure that can reach a client is a ``KeywardError`` subclass carrying a
stable ``code`` (an ``ErrorCode`` value), a human-readable ``message`` and the
HTTP ``status_code`` it maps to. The FastAPI exception handler in
``keyward.main`` renders these as ``{"error": code, "message": message}``;
driver errors and tracebacks are logged server side and never returned.

Classes:
    input validation  -> 400 (bad name, ttl, permission, paging, audit query)
    not found         -> 404 (account missing or inactive at issuance, key id)
    conflict          -> 409 (idempotency pending / completed / not pending)
    infrastructure    -> 500 / 503 (randomness unavailable, store unreachable)

Authentication outcomes are return values of the authenticator, not
exceptions. ``AuthenticationError`` exists only for the HTTP dependency that
turns a denied outcome into a 401/403.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable machine-readable error codes returned in the ``error`` field."""

    # ── Authentication ────────────────────────────────────────────────────────
    MISSING_API_KEY = "missing_api_key"
    INVALID_API_KEY = "invalid_api_key"
    EXPIRED_API_KEY = "expired_api_key"
    INACTIVE_API_KEY = "inactive_api_key"
    INACTIVE_ACCOUNT = "inactive_account"
    NOT_AUTHENTICATED = "not_authenticated"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    ADMIN_DISABLED = "admin_disabled"
    INVALID_ADMIN_TOKEN = "invalid_admin_token"

    # ── Input validation ──────────────────────────────────────────────────────
    VALIDATION_FAILED = "validation_failed"
    INVALID_PERMISSION = "invalid_permission"
    INVALID_STATUS_TRANSITION = "invalid_status_transition"

    # ── Not found ─────────────────────────────────────────────────────────────
    ACCOUNT_NOT_FOUND = "account_not_found"
    KEY_NOT_FOUND = "key_not_found"

    # ── Rate limiting ─────────────────────────────────────────────────────────
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMIT_CHECK_FAILED = "rate_limit_check_failed"

    # ── Idempotency ───────────────────────────────────────────────────────────
    IDEMPOTENCY_KEY_PENDING = "idempotency_key_pending"
    IDEMPOTENCY_KEY_COMPLETED = "idempotency_key_completed"
    IDEMPOTENCY_NOT_PENDING = "idempotency_not_pending"

    # ── System ────────────────────────────────────────────────────────────────
    KEY_GENERATION_FAILED = "key_generation_failed"
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


class KeywardError(Exception):
    """Base class for all client-visible Keyward errors.

    Subclasses set ``code``, ``status_code`` and a default ``message``; call
    sites may override the message and the code (e.g. ``AuthenticationError``
    carries one of several 401 codes).
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}
        self.headers: dict[str, str] = headers or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# ─── 400 ──────────────────────────────────────────────────────────────────────


class InputValidationError(KeywardError):
    """Request input is malformed or out of range."""

    code = ErrorCode.VALIDATION_FAILED
    status_code = 400
    default_message = "Request validation failed"


class InvalidPermissionError(InputValidationError):
    code = ErrorCode.INVALID_PERMISSION
    default_message = "Unknown permission"


class InvalidStatusTransitionError(InputValidationError):
    code = ErrorCode.INVALID_STATUS_TRANSITION
    default_message = "Account status transition is not allowed"


class AuditQueryError(InputValidationError):
    default_message = "Audit query requires an event category or an account id"


# ─── 401 / 403 ────────────────────────────────────────────────────────────────


class AuthenticationError(KeywardError):
    code = ErrorCode.INVALID_API_KEY
    status_code = 401
    default_message = "API key is invalid or expired"


class PermissionDeniedError(KeywardError):
    code = ErrorCode.INSUFFICIENT_PERMISSIONS
    status_code = 403
    default_message = "Insufficient permissions"


class InactiveAccountError(PermissionDeniedError):
    """Key is valid but its owning account is suspended or closed."""

    code = ErrorCode.INACTIVE_ACCOUNT
    default_message = "Account is not active"


class AdminDisabledError(PermissionDeniedError):
    code = ErrorCode.ADMIN_DISABLED
    default_message = "Admin API is disabled"


# ─── 404 ──────────────────────────────────────────────────────────────────────


class AccountNotActiveError(KeywardError):
    """Account does not exist or is not ``active``.

    Both cases share one code so callers cannot probe for suspended accounts.
    """

    code = ErrorCode.ACCOUNT_NOT_FOUND
    status_code = 404
    default_message = "Account not found or not active"


class KeyNotFoundError(KeywardError):
    code = ErrorCode.KEY_NOT_FOUND
    status_code = 404
    default_message = "API key not found"


# ─── 409 ──────────────────────────────────────────────────────────────────────


class ConflictError(KeywardError):
    status_code = 409
    default_message = "Request conflicts with current state"


class IdempotencyPendingError(ConflictError):
    code = ErrorCode.IDEMPOTENCY_KEY_PENDING
    default_message = "A request with this idempotency key is already in progress"


class IdempotencyCompletedError(ConflictError):
    code = ErrorCode.IDEMPOTENCY_KEY_COMPLETED
    default_message = "A request with this idempotency key has already completed"


class IdempotencyStateError(ConflictError):
    code = ErrorCode.IDEMPOTENCY_NOT_PENDING
    default_message = "Idempotency record is not pending"


# ─── 429 ──────────────────────────────────────────────────────────────────────


class RateLimitExceededError(KeywardError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429
    default_message = "Rate limit exceeded"


# ─── 5xx ──────────────────────────────────────────────────────────────────────


class KeyGenerationError(KeywardError):
    """The OS random source could not produce key material."""

    code = ErrorCode.KEY_GENERATION_FAILED
    status_code = 500
    default_message = "Key generation failed"


class StoreUnavailableError(KeywardError):
    """A store call failed or timed out. Authentication fails closed on this."""

    code = ErrorCode.SERVICE_UNAVAILABLE
    status_code = 503
    default_message = "Service temporarily unavailable"


class RateLimitCheckError(StoreUnavailableError):
    """The counter store could not be consulted. The request is refused."""

    code = ErrorCode.RATE_LIMIT_CHECK_FAILED
    default_message = "Rate limit check failed"
