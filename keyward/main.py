"""Keyward FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() - testable application factory
  - lifespan - @asynccontextmanager startup/shutdown sequence
  - error rendering - every failure leaves as {"error": code, "message": ...}
  - app = create_app() - module-level instance for uvicorn

Startup sequence:
  1. load_config()             → app.state.config
  2. build_services()          → stores, audit recorder, registry, ledger,
                                 rate limiter, authenticator on app.state
  3. Background tasks          → audit retention pruner (daily 03:00 UTC),
                                 expired-key and idempotency purges
  4. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel background tasks → drain audit writes →
  close stores → close audit backend
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from http import HTTPStatus
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keyward.api.router import router as v1_router
from keyward.api.schemas import INVALID_PERMISSION_ERROR
from keyward.audit.sqlite_backend import run_retention_pruner
from keyward.config import Config, load_config
from keyward.constants import REQUEST_ID_HEADER
from keyward.container import build_services
from keyward.errors import ErrorCode, KeywardError
from keyward.health import router as health_router
from keyward.maintenance import cancel_tasks, start_maintenance_tasks
from keyward.utils.logger import clear_request_id, configure_logging, get_logger, set_request_id
from keyward.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Keyward starting up...")

    # load_config() raises SystemExit on an invalid file, before ready is set.
    config: Config = load_config()
    services = await build_services(config)
    services.attach(app)

    background: list[asyncio.Task[None]] = start_maintenance_tasks(
        services.registry,
        services.ledger,
        key_retention=timedelta(days=config.keys.purge_retention_days),
        key_interval_seconds=config.keys.purge_interval_seconds,
        idempotency_interval_seconds=config.idempotency.purge_interval_seconds,
    )
    background.append(
        asyncio.create_task(
            run_retention_pruner(services.audit.backend, config.audit.retention_days),
            name="audit_retention_pruner",
        )
    )

    app.state.ready = True
    logger.info("Keyward ready", host=config.server.host, port=config.server.port)

    yield

    logger.info("Keyward shutting down...")
    app.state.ready = False
    await cancel_tasks(background)
    await services.close()
    logger.info("Keyward shutdown complete")


# ─── Error rendering ──────────────────────────────────────────────────────────


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    body = {"error": code, "message": message}
    if details:
        body.update(details)
    return body


async def keyward_error_handler(request: Request, exc: KeywardError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        error=exc.code.value,
        status_code=exc.status_code,
        path=str(request.url.path),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code.value, exc.message, exc.details),
        headers=exc.headers or None,
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field locations only: pydantic error entries echo the rejected input.
    errors = exc.errors()
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in errors]
    if any(err.get("type") == INVALID_PERMISSION_ERROR for err in errors):
        code, message = ErrorCode.INVALID_PERMISSION, "Unknown permission"
    else:
        code, message = ErrorCode.VALIDATION_FAILED, "Request validation failed"
    logger.warning(
        "request_validation_failed", error=code.value, fields=fields, path=str(request.url.path)
    )
    return JSONResponse(
        status_code=400,
        content=_error_body(code.value, message, {"fields": fields}),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code = HTTPStatus(exc.status_code).phrase.lower().replace(" ", "_")
    if isinstance(exc.detail, dict):
        content = _error_body(code, str(exc.detail.get("message", code)), exc.detail)
    else:
        content = _error_body(code, str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url.path),
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(ErrorCode.INTERNAL_ERROR.value, "Internal server error"),
    )


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the Keyward FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    The module-level `app` is created at import time for uvicorn:
        uvicorn keyward.main:app --host 127.0.0.1 --port 8420
    """
    # Swagger UI and ReDoc only with DEBUG=true.
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Keyward",
        description="API key issuance and request authentication",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health answers 503 until the lifespan finishes startup.
    application.state.ready = False

    @application.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_ulid()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        for name, value in getattr(request.state, "rate_limit_headers", {}).items():
            response.headers.setdefault(name, value)
        return response

    application.include_router(health_router)
    application.include_router(v1_router)

    application.add_exception_handler(KeywardError, keyward_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    application.add_exception_handler(Exception, unhandled_exception_handler)

    return application


app = create_app()
