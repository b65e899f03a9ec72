"""
Tests for OAuth2ConnectionManager: handshake, storage, refresh, revoke.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.exceptions import (
    AuthorizationError,
    ConnectionInactiveError,
    TokenRefreshError,
)
from connectors.security import code_challenge_s256
from database.models import ConnectionStatus, PlatformType
from tests.fakes import GOOGLE_TOKEN_URL, form_of


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def _start_google(services, user_id="user-1", tenant_id="tenant-1"):
    config = services.registry.config_for(PlatformType.GOOGLE_SHEETS)
    request = await services.connections.generate_authorization_url(
        PlatformType.GOOGLE_SHEETS, config, user_id, tenant_id
    )
    return config, request


class TestAuthorizationUrl:
    @pytest.mark.asyncio
    async def test_google_url_carries_state_and_pkce(self, services):
        config, request = await _start_google(services)
        parsed = urlparse(request.authorization_url)
        query = _query(request.authorization_url)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == config.authorization_url
        assert query["response_type"] == "code"
        assert query["client_id"] == "google-client"
        assert query["redirect_uri"] == "https://app.example.com/api/v1/connectors/google_sheets/callback"
        assert query["scope"] == " ".join(config.scopes)
        assert query["state"] == request.state
        assert query["code_challenge_method"] == "S256"
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"

        stored = await services.state_store.peek(request.state)
        assert stored.user_id == "user-1"
        assert stored.tenant_id == "tenant-1"
        assert query["code_challenge"] == code_challenge_s256(stored.code_verifier)

    @pytest.mark.asyncio
    async def test_state_tokens_are_unique(self, services):
        _, first = await _start_google(services)
        _, second = await _start_google(services)
        assert first.state != second.state
        assert len(first.state) >= 43

    @pytest.mark.asyncio
    async def test_shopify_url_is_shop_specific_without_pkce(self, services):
        platform_data = {"shop": "acme.myshopify.com"}
        config = services.registry.config_for(PlatformType.SHOPIFY, platform_data)
        request = await services.connections.generate_authorization_url(
            PlatformType.SHOPIFY, config, "user-1", "tenant-1", platform_data
        )
        assert request.authorization_url.startswith("https://acme.myshopify.com/admin/oauth/authorize?")
        query = _query(request.authorization_url)
        assert "code_challenge" not in query
        assert query["scope"] == ",".join(config.scopes)

        stored = await services.state_store.peek(request.state)
        assert stored.code_verifier is None
        assert stored.platform_data == platform_data

    @pytest.mark.asyncio
    async def test_shopify_requires_shop(self, services):
        with pytest.raises(AuthorizationError):
            services.registry.config_for(PlatformType.SHOPIFY, {})


class TestCodeExchange:
    @pytest.mark.asyncio
    async def test_state_is_single_use(self, services, provider):
        config, request = await _start_google(services)

        token, state_data = await services.connections.exchange_code_for_token("abc", request.state, config)
        assert token.access_token == "at-initial"
        assert state_data.user_id == "user-1"

        with pytest.raises(AuthorizationError):
            await services.connections.exchange_code_for_token("abc", request.state, config)
        assert len(provider.token_grants("authorization_code")) == 1

    @pytest.mark.asyncio
    async def test_expired_state_is_rejected(self, services, provider, clock):
        config, request = await _start_google(services)
        clock.advance(seconds=601)

        with pytest.raises(AuthorizationError):
            await services.connections.exchange_code_for_token("abc", request.state, config)
        assert provider.token_grants("authorization_code") == []

    @pytest.mark.asyncio
    async def test_unknown_state_is_rejected(self, services):
        config = services.registry.config_for(PlatformType.GOOGLE_SHEETS)
        with pytest.raises(AuthorizationError):
            await services.connections.exchange_code_for_token("abc", "forged", config)

    @pytest.mark.asyncio
    async def test_lookup_without_config_does_not_redeem(self, services, provider):
        config, request = await _start_google(services)

        token, preview = await services.connections.exchange_code_for_token("abc", request.state, None)
        assert token is None
        assert preview.platform_type == PlatformType.GOOGLE_SHEETS
        assert provider.requests == []

        token, _ = await services.connections.exchange_code_for_token("abc", request.state, config)
        assert token.access_token == "at-initial"

    @pytest.mark.asyncio
    async def test_exchange_sends_code_verifier(self, services, provider):
        config, request = await _start_google(services)
        verifier = (await services.state_store.peek(request.state)).code_verifier

        await services.connections.exchange_code_for_token("abc", request.state, config)

        form = provider.token_grants("authorization_code")[0]
        assert form["code"] == "abc"
        assert form["code_verifier"] == verifier
        assert form["redirect_uri"] == config.redirect_uri

    @pytest.mark.asyncio
    async def test_provider_denial_short_circuits(self, services, provider):
        _, request = await _start_google(services)

        with pytest.raises(AuthorizationError):
            await services.connections.complete_authorization(
                PlatformType.GOOGLE_SHEETS,
                state=request.state,
                error="access_denied",
                error_description="User said no",
            )
        assert provider.requests == []
        assert await services.state_store.peek(request.state) is None

    @pytest.mark.asyncio
    async def test_state_for_other_platform_is_rejected(self, services, provider):
        _, request = await _start_google(services)
        with pytest.raises(AuthorizationError):
            await services.connections.complete_authorization(
                PlatformType.YOUCAN, code="abc", state=request.state
            )
        assert provider.requests == []


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_authorize_store_and_refresh(self, services, provider, clock):
        _, request = await _start_google(services, user_id="U", tenant_id="O")

        conn = await services.connections.complete_authorization(
            PlatformType.GOOGLE_SHEETS, code="abc", state=request.state
        )
        assert conn.status == ConnectionStatus.ACTIVE.value
        assert conn.user_id == "U"
        assert conn.tenant_id == "O"
        assert conn.token_expires_at == clock.now + timedelta(seconds=3600)
        assert conn.platform_name == "Google Sheets - owner@example.com"
        assert conn.platform_data["google_email"] == "owner@example.com"
        assert conn.access_token != "at-initial"  # encrypted at rest

        assert await services.connections.get_access_token(conn.id) == "at-initial"
        assert provider.refresh_count == 0

        clock.advance(seconds=3600 - 59)
        assert await services.connections.get_access_token(conn.id) == "at-1"
        assert provider.refresh_count == 1
        assert provider.token_grants("refresh_token")[0]["refresh_token"] == "rt-initial"

        refreshed = await services.connections.get_connection(conn.id)
        assert refreshed.token_expires_at == clock.now + timedelta(seconds=3600)
        assert refreshed.platform_data["last_token_refresh"] == clock.now.isoformat()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, services, provider, make_connection):
        connection_id = await make_connection(expires_in=30)
        provider.refresh_delay = 0.01

        tokens = await asyncio.gather(
            *(services.connections.get_access_token(connection_id) for _ in range(10))
        )

        assert provider.refresh_count == 1
        assert set(tokens) == {"at-1"}

    @pytest.mark.asyncio
    async def test_scheduled_and_on_demand_refresh_share_the_lock(self, services, provider, make_connection):
        connection_id = await make_connection(expires_in=30)
        provider.refresh_delay = 0.01

        results = await asyncio.gather(
            services.connections.refresh_if_expiring(connection_id, timedelta(minutes=15)),
            services.connections.get_access_token(connection_id),
        )

        assert provider.refresh_count == 1
        assert results[1] == "at-1"

    @pytest.mark.asyncio
    async def test_fresh_token_is_not_refreshed(self, services, provider, make_connection):
        connection_id = await make_connection(expires_in=3600)
        assert await services.connections.get_access_token(connection_id) == "at-0"
        assert await services.connections.refresh_if_expiring(connection_id, timedelta(minutes=15)) is False
        assert provider.refresh_count == 0

    @pytest.mark.asyncio
    async def test_invalid_grant_is_terminal(self, services, provider, make_connection, sleeps):
        connection_id = await make_connection(expires_in=30)
        provider.route(
            "POST",
            GOOGLE_TOKEN_URL,
            lambda request: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token revoked"}),
        )

        with pytest.raises(TokenRefreshError) as exc_info:
            await services.connections.refresh_access_token(connection_id)

        assert exc_info.value.terminal is True
        assert exc_info.value.status == ConnectionStatus.ERROR.value
        assert sleeps == []
        conn = await services.connections.get_connection(connection_id)
        assert conn.status == ConnectionStatus.ERROR.value
        assert "Token revoked" in conn.last_error_message

        with pytest.raises(ConnectionInactiveError):
            await services.connections.get_access_token(connection_id)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, services, provider, make_connection, sleeps):
        connection_id = await make_connection(expires_in=30)

        def _timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider.route("POST", GOOGLE_TOKEN_URL, _timeout)

        with pytest.raises(TokenRefreshError) as exc_info:
            await services.connections.get_access_token(connection_id)

        assert exc_info.value.terminal is False
        assert sleeps == [1.0, 2.0]
        assert len(provider.calls("POST", GOOGLE_TOKEN_URL)) == 3
        conn = await services.connections.get_connection(connection_id)
        assert conn.status == ConnectionStatus.ACTIVE.value
        assert conn.last_error_at is not None
        assert "timeout" in conn.last_error_message.lower()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, services, provider, make_connection, sleeps):
        connection_id = await make_connection(expires_in=30)
        responses = [
            httpx.Response(503, json={"error": "backend_error"}),
            httpx.Response(200, json={"access_token": "at-retry", "expires_in": 3600}),
        ]
        provider.route("POST", GOOGLE_TOKEN_URL, lambda request: responses.pop(0))

        assert await services.connections.get_access_token(connection_id) == "at-retry"
        assert sleeps == [1.0]
        conn = await services.connections.get_connection(connection_id)
        assert conn.last_error_message is None

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, services, provider, make_connection):
        connection_id = await make_connection(expires_in=30)
        provider.route(
            "POST",
            GOOGLE_TOKEN_URL,
            lambda request: httpx.Response(
                200,
                json={"access_token": f"at-for-{form_of(request)['refresh_token']}", "refresh_token": "rt-rotated", "expires_in": 30},
            ),
        )

        await services.connections.refresh_access_token(connection_id)
        await services.connections.refresh_access_token(connection_id)

        sent = [form_of(r)["refresh_token"] for r in provider.calls("POST", GOOGLE_TOKEN_URL)]
        assert sent == ["rt-0", "rt-rotated"]

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, services, provider, make_connection):
        connection_id = await make_connection(expires_in=30, refresh_token=None)

        with pytest.raises(TokenRefreshError) as exc_info:
            await services.connections.get_access_token(connection_id)

        assert exc_info.value.terminal is True
        assert exc_info.value.status == ConnectionStatus.EXPIRED.value
        assert provider.requests == []
        conn = await services.connections.get_connection(connection_id)
        assert conn.status == ConnectionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_non_expiring_token_never_refreshes(self, services, provider, make_connection, clock):
        connection_id = await make_connection(expires_in=None, refresh_token=None)
        clock.advance(days=365)
        assert await services.connections.get_access_token(connection_id) == "at-0"
        assert provider.requests == []


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, services, make_connection):
        connection_id = await make_connection()

        assert await services.connections.revoke_connection(connection_id) is True
        assert await services.connections.revoke_connection(connection_id) is False

        conn = await services.connections.get_connection(connection_id)
        assert conn.status == ConnectionStatus.REVOKED.value
        assert conn.last_error_message == "revoked"
        assert conn.access_token is None
        assert conn.refresh_token is None

    @pytest.mark.asyncio
    async def test_revoked_connection_yields_no_token(self, services, make_connection):
        connection_id = await make_connection()
        await services.connections.revoke_connection(connection_id)

        with pytest.raises(ConnectionInactiveError) as exc_info:
            await services.connections.get_access_token(connection_id)
        assert exc_info.value.status == ConnectionStatus.REVOKED.value

        with pytest.raises(ConnectionInactiveError):
            await services.connections.refresh_access_token(connection_id)

    @pytest.mark.asyncio
    async def test_revoke_calls_provider_revocation(self, services, provider, make_connection):
        connection_id = await make_connection(access_token="at-live")
        await services.connections.revoke_connection(connection_id)

        revokes = provider.calls("POST", "https://oauth2.googleapis.com/revoke")
        assert len(revokes) == 1
        assert revokes[0].url.params["token"] == "at-live"


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_success_reports_account(self, services, make_connection):
        connection_id = await make_connection()
        result = await services.connections.test_connection(connection_id)
        assert result.success is True
        assert result.details["email"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_unauthorized_marks_connection_error(self, services, provider, make_connection):
        connection_id = await make_connection()
        provider.route(
            "GET",
            "https://www.googleapis.com/oauth2/v2/userinfo",
            lambda request: httpx.Response(401, json={"error": "invalid_token"}),
        )

        result = await services.connections.test_connection(connection_id)

        assert result.success is False
        conn = await services.connections.get_connection(connection_id)
        assert conn.status == ConnectionStatus.ERROR.value
        assert conn.last_error_at is not None
