"""
API tests: the FastAPI app over ``httpx.ASGITransport`` with the fake
provider behind the services.
"""

import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from auth.jwt import create_token
from main import create_app
from tests.fakes import GOOGLE_TOKEN_URL


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services, run_schedulers=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _auth(user_id: str = "user-1", tenant_id: str = "tenant-1") -> dict:
    return {"Authorization": f"Bearer {create_token(user_id, tenant_id)}"}


class TestAuth:
    @pytest.mark.asyncio
    async def test_platforms_are_public(self, client):
        resp = await client.get("/api/v1/connectors/platforms")

        assert resp.status_code == 200
        assert {p["slug"] for p in resp.json()} == {"google_sheets", "youcan", "shopify"}
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_connections_require_bearer(self, client):
        resp = await client.get("/api/v1/connectors/connections")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_tampered_token_rejected(self, client):
        token = create_token("user-1", "tenant-1")
        resp = await client.get(
            "/api/v1/connectors/connections",
            headers={"Authorization": f"Bearer {token[:-2]}xx"},
        )
        assert resp.status_code == 401


class TestOAuthFlow:
    @pytest.mark.asyncio
    async def test_connect_google_sheets(self, client):
        resp = await client.get("/api/v1/connectors/google_sheets/auth-url", headers=_auth())
        assert resp.status_code == 200
        body = resp.json()
        query = parse_qs(urlparse(body["authorization_url"]).query)
        assert query["state"] == [body["state"]]

        callback = await client.get(
            "/api/v1/connectors/google_sheets/callback",
            params={"code": "auth-code", "state": body["state"]},
        )
        assert callback.status_code == 200
        assert "Connected!" in callback.text

        listed = (await client.get("/api/v1/connectors/connections", headers=_auth())).json()
        assert len(listed) == 1
        assert listed[0]["status"] == "ACTIVE"
        assert "access_token" not in listed[0]

        replay = await client.get(
            "/api/v1/connectors/google_sheets/callback",
            params={"code": "auth-code", "state": body["state"]},
        )
        assert replay.status_code == 400

    @pytest.mark.asyncio
    async def test_denied_consent(self, client):
        resp = await client.get("/api/v1/connectors/google_sheets/auth-url", headers=_auth())

        callback = await client.get(
            "/api/v1/connectors/google_sheets/callback",
            params={"error": "access_denied", "state": resp.json()["state"]},
        )

        assert callback.status_code == 400
        assert "Failed" in callback.text

    @pytest.mark.asyncio
    async def test_shopify_needs_shop(self, client):
        resp = await client.get("/api/v1/connectors/shopify/auth-url", headers=_auth())
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_platform(self, client):
        resp = await client.get("/api/v1/connectors/dropbox/auth-url", headers=_auth())
        assert resp.status_code == 404


class TestConnectionRoutes:
    @pytest.mark.asyncio
    async def test_other_users_connection_is_hidden(self, client, make_connection):
        connection_id = await make_connection(user_id="user-2")

        resp = await client.post(f"/api/v1/connectors/connections/{connection_id}/test", headers=_auth())
        assert resp.status_code == 404

        resp = await client.post("/api/v1/connectors/connections/not-a-uuid/test", headers=_auth())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_refresh_route(self, client, make_connection):
        connection_id = await make_connection()

        resp = await client.post(f"/api/v1/connectors/connections/{connection_id}/refresh", headers=_auth())

        assert resp.status_code == 200
        assert resp.json()["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_refresh_route_reports_recorded_status(self, client, provider, make_connection):
        expired_id = await make_connection(expires_in=30, refresh_token=None)
        rejected_id = await make_connection(expires_in=30)
        provider.route(
            "POST",
            GOOGLE_TOKEN_URL,
            lambda request: httpx.Response(400, json={"error": "invalid_grant"}),
        )

        expired = await client.post(f"/api/v1/connectors/connections/{expired_id}/refresh", headers=_auth())
        rejected = await client.post(f"/api/v1/connectors/connections/{rejected_id}/refresh", headers=_auth())

        assert expired.status_code == 409
        assert expired.json()["detail"]["status"] == "EXPIRED"
        assert rejected.status_code == 409
        assert rejected.json()["detail"]["status"] == "ERROR"

    @pytest.mark.asyncio
    async def test_delete_revokes_and_unsubscribes(self, client, services, make_connection):
        connection_id = await make_connection()
        await services.webhooks.enable_resource_sync(connection_id, "sheet-1")

        first = await client.delete(f"/api/v1/connectors/connections/{connection_id}", headers=_auth())
        second = await client.delete(f"/api/v1/connectors/connections/{connection_id}", headers=_auth())

        assert first.json()["subscriptions_removed"] == 1
        assert first.json()["already_revoked"] is False
        assert second.json()["already_revoked"] is True

        refresh = await client.post(f"/api/v1/connectors/connections/{connection_id}/refresh", headers=_auth())
        assert refresh.status_code == 409
        assert refresh.json()["detail"]["status"] == "REVOKED"


class TestWebhookRoutes:
    @pytest.mark.asyncio
    async def test_drive_push_triggers_sync(self, client, services, make_connection):
        connection_id = await make_connection()
        subscription = await services.webhooks.enable_resource_sync(connection_id, "sheet-1")
        headers = {
            "X-Goog-Channel-ID": subscription.external_subscription_id,
            "X-Goog-Resource-ID": subscription.external_resource_id,
            "X-Goog-Resource-State": "update",
            "X-Goog-Message-Number": "7",
            "X-Goog-Channel-Token": services.webhooks.channel_token(connection_id, "sheet-1"),
        }

        first = await client.post("/api/v1/webhooks/google-drive", headers=headers)
        second = await client.post("/api/v1/webhooks/google-drive", headers=headers)

        assert first.json() == {"status": "triggered"}
        assert second.json() == {"status": "coalesced"}

        ops = (await client.get(f"/api/v1/connections/{connection_id}/sync-operations", headers=_auth())).json()
        assert len(ops) == 1
        one = await client.get(f"/api/v1/sync-operations/{ops[0]['id']}", headers=_auth())
        assert one.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_drive_push_without_headers_is_acknowledged(self, client):
        resp = await client.post("/api/v1/webhooks/google-drive")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_signed_notification(self, client, services, make_connection):
        connection_id = await make_connection()
        subscription = await services.webhooks.enable_resource_sync(connection_id, "sheet-1")
        raw = json.dumps({"resourceId": subscription.external_resource_id, "resourceState": "update"}).encode()

        bad = await client.post(
            "/api/v1/webhooks/notification", content=raw, headers={"X-Webhook-Signature": "0" * 64}
        )
        good = await client.post(
            "/api/v1/webhooks/notification",
            content=raw,
            headers={"X-Webhook-Signature": hmac.new(b"s", raw, hashlib.sha256).hexdigest()},
        )
        malformed = await client.post("/api/v1/webhooks/notification", content=b"{not json")

        assert bad.status_code == 200
        assert bad.json() == {"status": "rejected"}
        assert good.json() == {"status": "triggered"}
        assert malformed.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_subscription_management(self, client, make_connection):
        connection_id = await make_connection()

        enabled = await client.post(
            f"/api/v1/connections/{connection_id}/resources/sheet-1/sync",
            json={"resource_name": "Orders"},
            headers=_auth(),
        )
        assert enabled.status_code == 200
        subscription_id = enabled.json()["id"]

        listed = await client.get(f"/api/v1/connections/{connection_id}/webhook-subscriptions", headers=_auth())
        assert [s["id"] for s in listed.json()] == [subscription_id]

        renewed = await client.post(f"/api/v1/webhook-subscriptions/{subscription_id}/renew", headers=_auth())
        assert renewed.status_code == 200
        new_id = renewed.json()["subscription"]["id"]
        assert new_id != subscription_id

        stale = await client.post(f"/api/v1/webhook-subscriptions/{subscription_id}/renew", headers=_auth())
        assert stale.status_code == 409

        removed = await client.delete(f"/api/v1/webhook-subscriptions/{new_id}", headers=_auth())
        assert removed.json() == {"subscription_id": new_id, "removed": True}

    @pytest.mark.asyncio
    async def test_subscription_of_other_user_is_hidden(self, client, services, make_connection):
        connection_id = await make_connection(user_id="user-2")
        subscription = await services.webhooks.enable_resource_sync(connection_id, "sheet-1")

        resp = await client.delete(f"/api/v1/webhook-subscriptions/{subscription.id}", headers=_auth())

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_manual_sync_route(self, client, make_connection):
        connection_id = await make_connection()
        url = f"/api/v1/connections/{connection_id}/resources/sheet-1/manual-sync"

        first = await client.post(url, headers=_auth())
        second = await client.post(url, headers=_auth())

        assert first.json()["created"] is True
        assert first.json()["operation"]["operation_type"] == "manual"
        assert second.json()["created"] is False


class TestTokenHealthRoutes:
    @pytest.mark.asyncio
    async def test_status(self, client, make_connection, clock):
        await make_connection(expires_in=30 * 60)

        resp = await client.get("/api/v1/token-health/status", headers=_auth())

        body = resp.json()
        assert body["scheduler"]["is_running"] is False
        assert body["tokens"]["expiring_soon"] == 1
        assert body["timestamp"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_refresh_check_runs_in_background(self, client, provider, make_connection):
        await make_connection(expires_in=60)

        resp = await client.post("/api/v1/token-health/refresh-check", headers=_auth())

        assert resp.status_code == 200
        assert provider.refresh_count == 1
