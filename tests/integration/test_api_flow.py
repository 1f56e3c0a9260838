"""Integration tests for the /v1 API over a fully wired app.

Admin bootstrap → caller-issued keys → list → validate → revoke → audit
trail, plus the error contract: every failure is
``{"error": <code>, "message": ...}`` with the status the code implies.
"""

from __future__ import annotations

from typing import Any

import pytest
from httpx import AsyncClient

from keyward.accounts.models import AccountStatus
from keyward.container import Services

ALL_PERMISSIONS = ["read:accounts", "read:keys", "write:keys"]


# ─── Helpers ──────────────────────────────────────────────────────────────────


async def _create_account(
    client: AsyncClient, admin_headers: dict[str, str], name: str = "Acme Payments"
) -> dict[str, Any]:
    resp = await client.post("/v1/accounts", json={"name": name}, headers=admin_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _bootstrap_key(
    client: AsyncClient,
    admin_headers: dict[str, str],
    account_id: str,
    permissions: list[str] = ALL_PERMISSIONS,
) -> dict[str, Any]:
    resp = await client.post(
        f"/v1/accounts/{account_id}/keys",
        json={"name": "bootstrap", "permissions": permissions},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
async def bootstrapped(client: AsyncClient, admin_headers: dict[str, str]) -> dict[str, Any]:
    """An account plus a key holding every key/audit permission."""
    account = await _create_account(client, admin_headers)
    key = await _bootstrap_key(client, admin_headers, account["id"])
    return {"account": account, "key": key, "headers": {"X-API-Key": key["api_key"]}}


# ─── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    async def test_ok_when_ready(self, client: AsyncClient) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert set(body["stores"]) == {"accounts", "keys", "idempotency", "rate_limit", "audit"}
        assert body["audit_alarm"] is False

    async def test_starting_before_ready(self, client: AsyncClient, app) -> None:
        app.state.ready = False
        resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "starting"

    async def test_degraded_when_store_down(self, client: AsyncClient, services: Services) -> None:
        await services.idempotency_store.close()
        resp = await client.get("/health")
        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "degraded"
        assert body["stores"]["idempotency"] is False


# ─── Admin routes ─────────────────────────────────────────────────────────────


class TestAdminRoutes:
    async def test_wrong_admin_token(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/v1/accounts", json={"name": "Acme"}, headers={"X-Admin-Token": "nope"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_admin_token"

    async def test_admin_disabled_without_token(
        self, client: AsyncClient, services: Services, admin_headers: dict[str, str]
    ) -> None:
        services.config.admin_token = None
        resp = await client.post("/v1/accounts", json={"name": "Acme"}, headers=admin_headers)
        assert resp.status_code == 403
        assert resp.json()["error"] == "admin_disabled"

    async def test_create_account(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        account = await _create_account(client, admin_headers)
        assert account["status"] == "active"
        assert account["name"] == "Acme Payments"

    async def test_body_validation(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        resp = await client.post("/v1/accounts", json={}, headers=admin_headers)
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "validation_failed"
        assert "body.name" in body["fields"]

    async def test_name_too_short(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        resp = await client.post("/v1/accounts", json={"name": "ab"}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_failed"

    async def test_bootstrap_key_for_suspended_account(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        account = await _create_account(client, admin_headers)
        resp = await client.post(
            f"/v1/accounts/{account['id']}/status",
            json={"status": "suspended"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"

        resp = await client.post(
            f"/v1/accounts/{account['id']}/keys",
            json={"name": "bootstrap", "permissions": ["read:keys"]},
            headers=admin_headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "account_not_found"

    async def test_invalid_status_transition(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        account = await _create_account(client, admin_headers)
        for status, expected in (("deleted", 200), ("active", 400)):
            resp = await client.post(
                f"/v1/accounts/{account['id']}/status",
                json={"status": status},
                headers=admin_headers,
            )
            assert resp.status_code == expected
        assert resp.json()["error"] == "invalid_status_transition"


# ─── Key lifecycle ────────────────────────────────────────────────────────────


class TestKeyLifecycle:
    async def test_bootstrap_response_carries_secret_once(self, bootstrapped) -> None:
        key = bootstrapped["key"]
        assert key["api_key"].startswith("kw_")
        assert key["masked_key"].endswith(key["api_key"][-4:])
        assert key["api_key"] not in key["masked_key"]
        assert key["status"] == "active"
        assert sorted(key["permissions"]) == sorted(ALL_PERMISSIONS)

    async def test_create_list_validate_revoke(
        self, client: AsyncClient, bootstrapped, clock
    ) -> None:
        headers = bootstrapped["headers"]

        clock.advance(seconds=1)
        resp = await client.post(
            "/v1/keys",
            json={"name": "reporting", "permissions": ["read:keys"], "ttl_hours": 24},
            headers=headers,
        )
        assert resp.status_code == 201, resp.text
        created = resp.json()
        assert created["account_id"] == bootstrapped["account"]["id"]

        resp = await client.get("/v1/keys", headers=headers)
        assert resp.status_code == 200
        listing = resp.json()
        assert listing["total"] == 2
        assert listing["items"][0]["id"] == created["id"]
        assert all("api_key" not in item for item in listing["items"])

        resp = await client.post("/v1/keys/validate", json={"api_key": created["api_key"]})
        assert resp.status_code == 200
        validation = resp.json()
        assert validation["valid"] is True
        assert validation["api_key_id"] == created["id"]
        assert validation["permissions"] == ["read:keys"]

        resp = await client.post(f"/v1/keys/{created['id']}/revoke", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "inactive"

        resp = await client.post("/v1/keys/validate", json={"api_key": created["api_key"]})
        revoked = resp.json()
        assert revoked["valid"] is False
        assert revoked["reason"] == "inactive"
        assert revoked["api_key_id"] == created["id"]

        resp = await client.get("/v1/keys", headers={"X-API-Key": created["api_key"]})
        assert resp.status_code == 401
        assert resp.json()["error"] == "inactive_api_key"

    async def test_validate_unknown_secret(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/keys/validate", json={"api_key": "kw_" + "f" * 64})
        assert resp.status_code == 200
        assert resp.json()["valid"] is False
        assert resp.json()["reason"] == "not_found"
        assert resp.json()["account_id"] is None

    async def test_ttl_above_maximum_rejected(self, client: AsyncClient, bootstrapped) -> None:
        resp = await client.post(
            "/v1/keys",
            json={"name": "forever", "permissions": ["read:keys"], "ttl_hours": 100000},
            headers=bootstrapped["headers"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_failed"

    @pytest.mark.parametrize("ttl_hours", [0, -1, 10**11])
    async def test_out_of_range_ttl_is_validation_error(
        self, client: AsyncClient, bootstrapped, ttl_hours: int
    ) -> None:
        resp = await client.post(
            "/v1/keys",
            json={"name": "odd-ttl", "permissions": ["read:keys"], "ttl_hours": ttl_hours},
            headers=bootstrapped["headers"],
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "validation_failed"
        assert "body.ttl_hours" in body["fields"]

    async def test_unknown_permission_rejected(self, client: AsyncClient, bootstrapped) -> None:
        resp = await client.post(
            "/v1/keys",
            json={"name": "weird", "permissions": ["delete:everything"]},
            headers=bootstrapped["headers"],
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "invalid_permission"
        assert body["fields"] == ["body.permissions"]
        assert "delete:everything" not in resp.text

    async def test_empty_permissions_rejected(self, client: AsyncClient, bootstrapped) -> None:
        resp = await client.post(
            "/v1/keys",
            json={"name": "nothing", "permissions": []},
            headers=bootstrapped["headers"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_failed"

    async def test_cannot_revoke_foreign_key(
        self, client: AsyncClient, admin_headers: dict[str, str], bootstrapped
    ) -> None:
        other = await _create_account(client, admin_headers, name="Globex Ledger")
        other_key = await _bootstrap_key(client, admin_headers, other["id"])

        resp = await client.post(
            f"/v1/keys/{other_key['id']}/revoke", headers=bootstrapped["headers"]
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "key_not_found"

    async def test_expired_key(self, client: AsyncClient, bootstrapped, clock) -> None:
        resp = await client.post(
            "/v1/keys",
            json={"name": "short-lived", "permissions": ["read:keys"], "ttl_hours": 1},
            headers=bootstrapped["headers"],
        )
        short = resp.json()

        clock.advance(hours=2)
        resp = await client.get("/v1/keys", headers={"Authorization": f"Bearer {short['api_key']}"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "expired_api_key"


# ─── Authentication and permissions ───────────────────────────────────────────


class TestAuthErrors:
    async def test_missing_key(self, client: AsyncClient) -> None:
        resp = await client.get("/v1/keys")
        assert resp.status_code == 401
        assert resp.json()["error"] == "missing_api_key"

    async def test_invalid_key(self, client: AsyncClient) -> None:
        resp = await client.get("/v1/keys", headers={"X-API-Key": "short"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_api_key"

    async def test_insufficient_permissions(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        account = await _create_account(client, admin_headers)
        key = await _bootstrap_key(client, admin_headers, account["id"], ["read:keys"])

        resp = await client.post(
            "/v1/keys",
            json={"name": "escalate", "permissions": ["write:keys"]},
            headers={"X-API-Key": key["api_key"]},
        )
        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "insufficient_permissions"
        assert body["required"] == ["write:keys"]

    async def test_suspended_account(
        self, client: AsyncClient, services: Services, bootstrapped
    ) -> None:
        await services.accounts.change_status(
            bootstrapped["account"]["id"], AccountStatus.SUSPENDED
        )
        resp = await client.get("/v1/keys", headers=bootstrapped["headers"])
        assert resp.status_code == 403
        assert resp.json()["error"] == "inactive_account"

    async def test_key_store_outage_is_503(
        self, client: AsyncClient, services: Services, bootstrapped
    ) -> None:
        await services.key_store.close()
        resp = await client.get("/v1/keys", headers=bootstrapped["headers"])
        assert resp.status_code == 503
        assert resp.json()["error"] == "service_unavailable"


# ─── Audit trail ──────────────────────────────────────────────────────────────


class TestAuditEvents:
    async def test_caller_sees_own_events_only(
        self, client: AsyncClient, services: Services, admin_headers: dict[str, str], bootstrapped
    ) -> None:
        other = await _create_account(client, admin_headers, name="Globex Ledger")
        await _bootstrap_key(client, admin_headers, other["id"])
        await client.get("/v1/keys", headers=bootstrapped["headers"])
        await services.audit.drain()

        resp = await client.get("/v1/audit/events", headers=bootstrapped["headers"])
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == len(body["events"]) > 0
        account_id = bootstrapped["account"]["id"]
        assert {e["account_id"] for e in body["events"]} == {account_id}
        categories = {e["category"] for e in body["events"]}
        assert {"account_created", "key_issued", "authentication"} <= categories
        assert all(bootstrapped["key"]["api_key"] not in str(e) for e in body["events"])

    async def test_filter_by_category(
        self, client: AsyncClient, services: Services, bootstrapped
    ) -> None:
        await services.audit.drain()
        resp = await client.get(
            "/v1/audit/events",
            params={"category": "key_issued"},
            headers=bootstrapped["headers"],
        )
        assert resp.status_code == 200
        events = resp.json()["events"]
        assert [e["key_id"] for e in events] == [bootstrapped["key"]["id"]]

    async def test_limit_out_of_range(self, client: AsyncClient, bootstrapped) -> None:
        resp = await client.get(
            "/v1/audit/events", params={"limit": 5000}, headers=bootstrapped["headers"]
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_failed"


# ─── Request id ───────────────────────────────────────────────────────────────


class TestRequestId:
    async def test_echoed(self, client: AsyncClient) -> None:
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    async def test_generated(self, client: AsyncClient) -> None:
        resp = await client.get("/health")
        assert len(resp.headers["X-Request-ID"]) == 26
