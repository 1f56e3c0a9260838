"""FastAPI dependencies for API key and admin-token authentication.

``authenticate_request`` MUST run before any handler logic: FastAPI's
dependency injection short-circuits the handler when it raises. On success
the ``AuthContext`` is also stored on ``request.state.auth`` and the request
is counted against the account rate-limit dimension.
"""

from __future__ import annotations

import hmac
from typing import Awaitable, Callable, Optional

from fastapi import Depends, Request

from keyward.auth.authenticator import AuthContext, RequestAuthenticator
from keyward.constants import ADMIN_TOKEN_HEADER
from keyward.errors import (
    AdminDisabledError,
    AuthenticationError,
    ErrorCode,
    PermissionDeniedError,
)
from keyward.keys.models import Permission
from keyward.utils.logger import get_logger

logger = get_logger(__name__)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


async def authenticate_request(request: Request) -> AuthContext:
    """Resolve the caller's API key to an ``AuthContext``.

    Raises:
        AuthenticationError: 401 missing / invalid / expired / revoked key.
        InactiveAccountError: 403, key owner suspended or closed.
        StoreUnavailableError: 503, key store unreachable.
        RateLimitExceededError: 429 on the account dimension.
    """
    authenticator: RequestAuthenticator = request.app.state.authenticator
    outcome = await authenticator.authenticate(
        request.headers, client_ip(request), user_agent(request)
    )
    if not outcome.authenticated or outcome.context is None:
        raise outcome.to_error()

    request.state.auth = outcome.context
    guard = getattr(request.app.state, "rate_guard", None)
    if guard is not None:
        await guard.check_account(request, outcome.context.account_id)
    return outcome.context


def require_permission(permission: Permission) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency factory: authenticated caller holding ``permission``."""

    async def _dependency(context: AuthContext = Depends(authenticate_request)) -> AuthContext:
        if not context.has_permission(permission):
            logger.warning(
                "permission_denied",
                account_id=context.account_id,
                key_id=context.key_id,
                required=permission.value,
            )
            raise PermissionDeniedError(
                f"Permission '{permission.value}' is required",
                details={"required": [permission.value]},
            )
        return context

    return _dependency


def require_any_permission(*permissions: Permission) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency factory: authenticated caller holding at least one of ``permissions``."""

    required = [p.value for p in permissions]

    async def _dependency(context: AuthContext = Depends(authenticate_request)) -> AuthContext:
        if not any(context.has_permission(p) for p in permissions):
            logger.warning(
                "permission_denied",
                account_id=context.account_id,
                key_id=context.key_id,
                required=required,
            )
            raise PermissionDeniedError(
                f"One of {', '.join(required)} is required",
                details={"required": required},
            )
        return context

    return _dependency


async def require_admin(request: Request) -> None:
    """Admin routes: ``X-Admin-Token`` must equal the configured admin token.

    With no admin token configured every admin route answers 403.
    """
    expected: Optional[str] = request.app.state.config.admin_token
    if not expected:
        raise AdminDisabledError()

    presented = request.headers.get(ADMIN_TOKEN_HEADER, "")
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("admin_token_rejected", source_ip=client_ip(request))
        raise AuthenticationError("Admin token is invalid", code=ErrorCode.INVALID_ADMIN_TOKEN)
