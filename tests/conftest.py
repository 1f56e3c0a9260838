"""Root test configuration for Keyward.

Provides a controllable clock, a Config pointing at per-test SQLite files
(bcrypt at the minimum cost so issuance stays fast), a fully wired
``Services`` container and an app + httpx client on top of it.

Every fixture builds real stores under ``tmp_path``; nothing touches
``~/.keyward``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from keyward.config import Config
from keyward.container import Services, build_services
from keyward.main import create_app

ADMIN_TOKEN = "test-admin-token-0123456789"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip KEYWARD_* overrides so a developer's shell cannot leak into tests."""
    for name in (
        "KEYWARD_CONFIG",
        "KEYWARD_PORT",
        "KEYWARD_DB_PATH",
        "KEYWARD_AUDIT_DB_PATH",
        "KEYWARD_ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(tmp_path: Path) -> Config:
    cfg = Config.defaults()
    cfg.storage.db_path = str(tmp_path / "keyward.db")
    cfg.audit.path = str(tmp_path / "audit.db")
    cfg.keys.bcrypt_rounds = 4
    cfg.admin_token = ADMIN_TOKEN
    return cfg


@pytest.fixture
async def services(config: Config, clock: FakeClock) -> AsyncIterator[Services]:
    svc = await build_services(config, clock)
    yield svc
    await svc.close()


@pytest.fixture
async def app(services: Services) -> FastAPI:
    application = create_app()
    services.attach(application)
    application.state.ready = True
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
