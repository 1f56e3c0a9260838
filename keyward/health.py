"""Health endpoint for Keyward.

  GET /health - 503 before ``app.state.ready``; afterwards 200 when every store
                answers, 503 ``degraded`` when one does not.

Polled by container health probes and load balancers.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> Any:
    """Response body (200):
        {"status": "ok", "stores": {"accounts": true, "keys": true,
         "idempotency": true, "rate_limit": true, "audit": true},
         "audit_alarm": false}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "Keyward is starting up."},
        )

    state = request.app.state
    stores = {
        "accounts": await state.account_store.health_check(),
        "keys": await state.key_store.health_check(),
        "idempotency": await state.idempotency_store.health_check(),
        "rate_limit": await state.counter_store.health_check(),
        "audit": await state.audit.backend.health_check(),
    }
    healthy = all(stores.values())
    body = {
        "status": "ok" if healthy else "degraded",
        "stores": stores,
        "audit_alarm": state.audit.alarm_active,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
