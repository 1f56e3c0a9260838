"""Keyward /v1 API.

Provides:
  POST   /v1/accounts                    admin: register an account
  POST   /v1/accounts/{id}/status        admin: suspend / reinstate / delete
  POST   /v1/accounts/{id}/keys          admin: issue a bootstrap key (idempotent)
  POST   /v1/keys                        issue a key for the caller's account (idempotent)
  GET    /v1/keys                        list the caller's keys
  POST   /v1/keys/{key_id}/revoke        revoke one of the caller's keys
  POST   /v1/keys/validate               validation contract for other services
  GET    /v1/audit/events                the caller's audit trail
  DELETE /v1/rate-limits/{key}           admin: reset a rate-limit counter

Every route counts against the ip and endpoint rate-limit dimensions;
authenticated routes also against the account dimension. The raw secret is
returned only in issuance responses.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from keyward.api.idempotency import run_idempotent
from keyward.api.ratelimit import enforce_rate_limits
from keyward.api.schemas import (
    AccountResponse,
    AccountStatusRequest,
    ApiKeyResponse,
    AuditEventResponse,
    AuditEventsResponse,
    CreateAccountRequest,
    CreateKeyRequest,
    IssuedKeyResponse,
    KeyListResponse,
    RevokeKeyResponse,
    ValidateKeyRequest,
    ValidationResponse,
)
from keyward.audit.models import AuditCategory, AuditQuery
from keyward.auth.authenticator import AuthContext
from keyward.auth.dependencies import (
    client_ip,
    require_admin,
    require_any_permission,
    require_permission,
    user_agent,
)
from keyward.constants import AUDIT_QUERY_DEFAULT_LIMIT, LIST_DEFAULT_LIMIT
from keyward.keys.models import Permission
from keyward.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", dependencies=[Depends(enforce_rate_limits)])


def _ttl(hours: Optional[int]) -> Optional[timedelta]:
    return timedelta(hours=hours) if hours is not None else None


async def _issue_key(
    request: Request, account_id: str, body: CreateKeyRequest
) -> JSONResponse:
    registry = request.app.state.registry

    async def _handler() -> tuple[int, dict]:
        issued = await registry.issue(
            account_id,
            body.name,
            body.permissions,
            _ttl(body.ttl_hours),
            source_ip=client_ip(request),
            user_agent=user_agent(request),
        )
        return status.HTTP_201_CREATED, jsonable_encoder(IssuedKeyResponse.from_issued(issued))

    return await run_idempotent(request, request.app.state.ledger, account_id, _handler)


# ─── Accounts (admin) ─────────────────────────────────────────────────────────


@router.post(
    "/accounts",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_account(body: CreateAccountRequest, request: Request) -> AccountResponse:
    account = await request.app.state.accounts.register(
        body.name,
        body.webhook_url,
        source_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/status", dependencies=[Depends(require_admin)])
async def change_account_status(
    account_id: str, body: AccountStatusRequest, request: Request
) -> AccountResponse:
    account = await request.app.state.accounts.change_status(account_id, body.status)
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/keys", dependencies=[Depends(require_admin)])
async def issue_account_key(
    account_id: str, body: CreateKeyRequest, request: Request
) -> JSONResponse:
    """Bootstrap issuance: the first key of an account has no caller key to
    authenticate with, so an operator issues it."""
    return await _issue_key(request, account_id, body)


# ─── Keys ─────────────────────────────────────────────────────────────────────


@router.post("/keys")
async def create_key(
    body: CreateKeyRequest,
    request: Request,
    context: AuthContext = Depends(require_permission(Permission.WRITE_KEYS)),
) -> JSONResponse:
    """Issue a key for the caller's own account. Returns the secret once."""
    return await _issue_key(request, context.account_id, body)


@router.get("/keys")
async def list_keys(
    request: Request,
    limit: int = Query(LIST_DEFAULT_LIMIT),
    offset: int = Query(0),
    context: AuthContext = Depends(
        require_any_permission(Permission.READ_KEYS, Permission.WRITE_KEYS)
    ),
) -> KeyListResponse:
    page = await request.app.state.registry.list(context.account_id, limit, offset)
    return KeyListResponse(
        items=[ApiKeyResponse.from_record(r) for r in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.post("/keys/validate")
async def validate_key(body: ValidateKeyRequest, request: Request) -> ValidationResponse:
    """Resolve a presented secret for another service.

    Answers 200 with ``valid: false`` for unknown, revoked or expired keys;
    only a store outage is an error (503).
    """
    outcome = await request.app.state.authenticator.verify(
        body.api_key, client_ip(request), user_agent(request)
    )
    assert outcome.validation is not None
    return ValidationResponse.from_validation(outcome.validation)


@router.post("/keys/{key_id}/revoke")
async def revoke_key(
    key_id: str,
    request: Request,
    context: AuthContext = Depends(require_permission(Permission.WRITE_KEYS)),
) -> RevokeKeyResponse:
    record = await request.app.state.registry.revoke(
        key_id,
        account_id=context.account_id,
        source_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return RevokeKeyResponse(id=record.id, status=record.status.value)


# ─── Audit ────────────────────────────────────────────────────────────────────


@router.get("/audit/events")
async def list_audit_events(
    request: Request,
    category: Optional[AuditCategory] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(AUDIT_QUERY_DEFAULT_LIMIT),
    context: AuthContext = Depends(
        require_any_permission(Permission.READ_ACCOUNTS, Permission.READ_KEYS)
    ),
) -> AuditEventsResponse:
    """Chronological audit events for the caller's account only."""
    events = await request.app.state.audit.query(
        AuditQuery(
            category=category,
            account_id=context.account_id,
            since=since,
            until=until,
            limit=limit,
        )
    )
    return AuditEventsResponse(
        events=[AuditEventResponse.from_event(e) for e in events],
        count=len(events),
    )


# ─── Rate limits (admin) ──────────────────────────────────────────────────────


@router.delete("/rate-limits/{key:path}", dependencies=[Depends(require_admin)])
async def reset_rate_limit(key: str, request: Request) -> dict:
    await request.app.state.rate_guard.limiter.reset(key)
    logger.info("rate_limit_reset_by_admin", counter_key=key, source_ip=client_ip(request))
    return {"key": key, "reset": True}
