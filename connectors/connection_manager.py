"""
OAuth2ConnectionManager — authorization handshake, encrypted credential
storage and token refresh for platform connections.

This is the single interface other components use to get an active access
token for a connection.  Refreshes for one connection are serialized by a
per-connection lock that is shared by on-demand callers and the background
refresh scheduler, so a refresh token is never redeemed twice concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
import weakref
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.clock import Clock, utcnow
from connectors.encryption import TokenCipher
from connectors.exceptions import (
    AuthorizationError,
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ConnectorError,
    PlatformNotConfiguredError,
    TokenExchangeError,
    TokenRefreshError,
)
from connectors.registry import PlatformRegistry
from connectors.schemas import (
    AuthorizationRequest,
    AuthorizationStateData,
    ConnectionSummary,
    ConnectionTestResult,
    OAuth2Config,
    TokenResponse,
)
from connectors.security import code_challenge_s256, generate_code_verifier, generate_state_token
from connectors.state_store import AuthorizationStateStore
from database.helpers import load_connection, to_uuid
from database.models import ConnectionStatus, PlatformConnection, PlatformType

logger = logging.getLogger(__name__)

# Provider error codes meaning the refresh token itself is dead.
TERMINAL_REFRESH_ERRORS = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client", "invalid_token"}
)


def _error_fields(resp: httpx.Response) -> Tuple[str, str]:
    """Extract (error, error_description) from an OAuth error response."""
    try:
        payload = resp.json()
    except ValueError:
        return "", resp.text[:200]
    if not isinstance(payload, dict):
        return "", ""
    error = payload.get("error") or ""
    if isinstance(error, dict):  # some APIs nest {"error": {"status": ..., "message": ...}}
        return str(error.get("status", "")).lower(), str(error.get("message", ""))
    return str(error).lower(), str(payload.get("error_description") or "")


class OAuth2ConnectionManager:
    """Owns Connection rows: creation, token refresh, test and revoke."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: PlatformRegistry,
        cipher: TokenCipher,
        state_store: AuthorizationStateStore,
        http_client: httpx.AsyncClient,
        *,
        refresh_buffer_seconds: int = 60,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        backoff_multiplier: float = 2.0,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._cipher = cipher
        self._state_store = state_store
        self._http = http_client
        self._refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._backoff_multiplier = backoff_multiplier
        self._clock = clock
        self._sleep = sleep
        # Entries disappear once no coroutine holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def registry(self) -> PlatformRegistry:
        return self._registry

    def _lock_for(self, connection_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    # ── Authorization handshake ─────────────────────────────────────────

    async def generate_authorization_url(
        self,
        platform_type: PlatformType,
        config: OAuth2Config,
        user_id: str,
        tenant_id: str,
        platform_data: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationRequest:
        """
        Build the provider authorization URL and persist the state.

        The state is an unguessable token stored with the caller's identity,
        the platform and (with PKCE) the code verifier.  It is valid for one
        redemption within the state TTL.
        """
        state = generate_state_token()
        code_verifier: Optional[str] = None
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": config.scope_separator.join(config.scopes),
            "state": state,
            **config.extra_authorization_params,
        }
        if config.use_pkce:
            code_verifier = generate_code_verifier()
            params["code_challenge"] = code_challenge_s256(code_verifier)
            params["code_challenge_method"] = "S256"

        await self._state_store.save(
            state,
            user_id=user_id,
            tenant_id=tenant_id,
            platform_type=platform_type,
            code_verifier=code_verifier,
            platform_data=platform_data,
        )

        logger.info(
            "Generated authorization URL for %s (user=%s tenant=%s pkce=%s)",
            PlatformType(platform_type).value, user_id, tenant_id, config.use_pkce,
        )
        return AuthorizationRequest(
            authorization_url=f"{config.authorization_url}?{urlencode(params)}",
            state=state,
        )

    async def exchange_code_for_token(
        self,
        code: str,
        state: str,
        config: Optional[OAuth2Config],
    ) -> Tuple[Optional[TokenResponse], AuthorizationStateData]:
        """
        Redeem ``state`` and exchange ``code`` at the token endpoint.

        With ``config=None`` the state is only looked up (not redeemed) so a
        caller can learn the platform before resolving its configuration;
        the second call with a config performs the single redemption.
        """
        if config is None:
            preview = await self._state_store.peek(state)
            if preview is None:
                raise AuthorizationError("state not found or expired")
            return None, preview

        state_data = await self._state_store.consume(state)
        if state_data is None:
            raise AuthorizationError("state not found or expired")

        form = {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": config.redirect_uri,
        }
        if config.use_pkce:
            if not state_data.code_verifier:
                raise AuthorizationError("PKCE code verifier missing for state")
            form["code_verifier"] = state_data.code_verifier

        logger.info(
            "Exchanging authorization code for %s (user=%s)",
            state_data.platform_type.value, state_data.user_id,
        )
        try:
            resp = await self._http.post(config.token_url, data=form)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token endpoint unreachable: {exc}") from exc

        if resp.status_code != 200:
            error, description = _error_fields(resp)
            raise TokenExchangeError(
                f"Token exchange failed with status {resp.status_code}: {description or error}"
            )
        try:
            token = TokenResponse.model_validate(resp.json())
        except ValueError as exc:
            raise TokenExchangeError("No access token received") from exc

        logger.info(
            "Exchanged code for %s token (refresh_token=%s expires_in=%s)",
            state_data.platform_type.value, bool(token.refresh_token), token.expires_in,
        )
        return token, state_data

    async def complete_authorization(
        self,
        platform_type: PlatformType | str,
        *,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> PlatformConnection:
        """
        Finish the callback: validate state, exchange the code, look up the
        remote account and store the new connection.
        """
        platform = self._registry.get(platform_type)

        if error:
            # Provider-side denial: burn the state, never touch the token endpoint.
            if state:
                await self._state_store.discard(state)
            raise AuthorizationError(f"Authorization denied by provider: {error_description or error}")
        if not code or not state:
            raise AuthorizationError("Missing authorization code or state")

        _, preview = await self.exchange_code_for_token(code, state, None)
        if preview.platform_type != platform.platform_type:
            await self._state_store.discard(state)
            raise AuthorizationError("state was issued for a different platform")

        config = platform.oauth_config(preview.platform_data)
        token, state_data = await self.exchange_code_for_token(code, state, config)

        platform_data: Dict[str, Any] = dict(state_data.platform_data)
        try:
            platform_data.update(
                await platform.fetch_account_info(self._http, token.access_token, platform_data)
            )
        except httpx.HTTPError as exc:
            logger.warning("Account lookup failed for %s: %s", platform.slug, exc)
        platform_data["connected_at"] = self._clock().isoformat()

        scopes = [s for s in re.split(r"[,\s]+", token.scope or "") if s] or config.scopes
        connection_id = await self.store_connection(
            state_data.user_id,
            state_data.tenant_id,
            platform.platform_type,
            platform.connection_label(platform_data),
            token,
            scopes,
            platform_data,
        )
        return await self.get_connection(connection_id)

    async def store_connection(
        self,
        user_id: str,
        tenant_id: str,
        platform_type: PlatformType,
        display_name: str,
        token_response: TokenResponse,
        scopes: List[str],
        platform_data: Optional[Dict[str, Any]] = None,
    ) -> uuid.UUID:
        """
        Encrypt and persist a new ACTIVE connection.

        Several connections per (user, platform) are allowed, one per
        remote account.
        """
        now = self._clock()
        expires_at = (
            now + timedelta(seconds=token_response.expires_in)
            if token_response.expires_in
            else None
        )
        conn = PlatformConnection(
            id=uuid.uuid4(),
            platform_type=PlatformType(platform_type).value,
            platform_name=display_name,
            status=ConnectionStatus.ACTIVE.value,
            access_token=self._cipher.encrypt_token(token_response.access_token),
            refresh_token=(
                self._cipher.encrypt_token(token_response.refresh_token)
                if token_response.refresh_token
                else None
            ),
            token_expires_at=expires_at,
            scopes=list(scopes),
            platform_data=platform_data or {},
            user_id=user_id,
            tenant_id=tenant_id,
            sync_count=0,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(conn)
            await session.commit()

        logger.info(
            "Stored %s connection %s for user %s (tenant %s)",
            conn.platform_type, conn.id, user_id, tenant_id,
        )
        return conn.id

    # ── Lookups ─────────────────────────────────────────────────────────

    async def get_connection(self, connection_id: str | uuid.UUID) -> PlatformConnection:
        async with self._session_factory() as session:
            conn = await load_connection(session, connection_id)
        if conn is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return conn

    async def list_connections(self, user_id: str, tenant_id: str) -> List[PlatformConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlatformConnection)
                .where(
                    PlatformConnection.user_id == user_id,
                    PlatformConnection.tenant_id == tenant_id,
                )
                .order_by(PlatformConnection.created_at.desc())
            )
            return list(result.scalars().all())

    def summarize(self, conn: PlatformConnection) -> ConnectionSummary:
        """API view of a connection (no tokens)."""
        try:
            account = self._registry.get(conn.platform_type).account_view(conn.platform_data or {})
            account_data = account.model_dump(exclude_none=True)
        except PlatformNotConfiguredError:
            account_data = {}
        return ConnectionSummary(
            id=conn.id,
            platform_type=conn.platform_type,
            platform_name=conn.platform_name,
            status=conn.status,
            scopes=list(conn.scopes or []),
            token_expires_at=conn.token_expires_at,
            last_sync_at=conn.last_sync_at,
            last_error_at=conn.last_error_at,
            last_error_message=conn.last_error_message,
            sync_count=conn.sync_count or 0,
            account=account_data,
        )

    # ── Tokens ──────────────────────────────────────────────────────────

    def _needs_refresh(self, conn: PlatformConnection, window: timedelta) -> bool:
        return conn.token_expires_at is not None and conn.token_expires_at <= self._clock() + window

    @staticmethod
    def _ensure_active(conn: PlatformConnection) -> None:
        if conn.status != ConnectionStatus.ACTIVE.value or not conn.access_token:
            raise ConnectionInactiveError(
                f"Connection {conn.id} is {conn.status}", status=conn.status
            )

    async def get_access_token(self, connection_id: str | uuid.UUID) -> str:
        """
        Return a usable access token, refreshing it first when it expires
        within the refresh buffer.

        Concurrent callers for the same connection wait on the connection
        lock and then read the token the first caller stored.
        """
        cid = to_uuid(connection_id)
        conn = await self.get_connection(cid)
        self._ensure_active(conn)
        if not self._needs_refresh(conn, self._refresh_buffer):
            return self._cipher.decrypt_token(conn.access_token)

        async with self._lock_for(cid):
            conn = await self.get_connection(cid)
            self._ensure_active(conn)
            if self._needs_refresh(conn, self._refresh_buffer):
                logger.info("Token for connection %s expiring at %s, refreshing", cid, conn.token_expires_at)
                await self._refresh_locked(conn, None)
                conn = await self.get_connection(cid)
                self._ensure_active(conn)
        return self._cipher.decrypt_token(conn.access_token)

    async def refresh_access_token(
        self,
        connection_id: str | uuid.UUID,
        config: Optional[OAuth2Config] = None,
    ) -> TokenResponse:
        """Unconditionally refresh a connection's token (under its lock)."""
        cid = to_uuid(connection_id)
        async with self._lock_for(cid):
            conn = await self.get_connection(cid)
            if conn.status == ConnectionStatus.REVOKED.value:
                raise ConnectionInactiveError(f"Connection {cid} is revoked", status=conn.status)
            return await self._refresh_locked(conn, config)

    async def refresh_if_expiring(self, connection_id: str | uuid.UUID, within: timedelta) -> bool:
        """
        Refresh when the token expires within ``within``.

        Returns False when nothing was needed, e.g. because an on-demand
        caller refreshed the token while this one waited for the lock.
        """
        cid = to_uuid(connection_id)
        async with self._lock_for(cid):
            conn = await self.get_connection(cid)
            if conn.status != ConnectionStatus.ACTIVE.value or not conn.refresh_token:
                return False
            if not self._needs_refresh(conn, within):
                return False
            await self._refresh_locked(conn, None)
            return True

    async def _refresh_locked(
        self,
        conn: PlatformConnection,
        config: Optional[OAuth2Config],
    ) -> TokenResponse:
        """Refresh with retries. Caller must hold the connection lock."""
        if not conn.refresh_token:
            await self._record_failure(
                conn.id,
                "Token expired and no refresh token available",
                status=ConnectionStatus.EXPIRED,
            )
            raise TokenRefreshError(
                "No refresh token available",
                terminal=True,
                connection_id=str(conn.id),
                status=ConnectionStatus.EXPIRED.value,
            )

        config = config or self._registry.config_for(conn.platform_type, conn.platform_data or {})
        refresh_token = self._cipher.decrypt_token(conn.refresh_token)

        attempt = 0
        while True:
            try:
                token = await self._request_refresh(config, refresh_token, conn.id)
                break
            except TokenRefreshError as exc:
                if exc.terminal:
                    logger.warning("Refresh token rejected for connection %s: %s", conn.id, exc)
                    await self._record_failure(conn.id, str(exc), status=ConnectionStatus.ERROR)
                    exc.status = ConnectionStatus.ERROR.value
                    raise
                if attempt >= self._max_retries:
                    logger.warning(
                        "Token refresh failed for connection %s after %d attempt(s): %s",
                        conn.id, attempt + 1, exc,
                    )
                    await self._record_failure(conn.id, str(exc))
                    raise
                delay = self._backoff_seconds * (self._backoff_multiplier ** attempt)
                logger.info(
                    "Retrying token refresh for connection %s in %.1fs (attempt %d)",
                    conn.id, delay, attempt + 2,
                )
                await self._sleep(delay)
                attempt += 1

        await self._persist_refresh(conn, token)
        logger.info(
            "Refreshed %s token for connection %s (new refresh token: %s)",
            conn.platform_type, conn.id, bool(token.refresh_token),
        )
        return token

    async def _request_refresh(
        self,
        config: OAuth2Config,
        refresh_token: str,
        connection_id: uuid.UUID,
    ) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
        }
        cid = str(connection_id)
        try:
            resp = await self._http.post(config.token_url, data=form)
        except httpx.TimeoutException as exc:
            raise TokenRefreshError(f"Token endpoint timeout: {exc}", terminal=False, connection_id=cid) from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Network error: {exc}", terminal=False, connection_id=cid) from exc

        error, description = _error_fields(resp)
        if resp.status_code != 200 or error:
            terminal = error in TERMINAL_REFRESH_ERRORS or resp.status_code == 401
            raise TokenRefreshError(
                f"Token refresh failed with status {resp.status_code}: {description or error or 'unknown error'}",
                terminal=terminal,
                connection_id=cid,
            )
        try:
            return TokenResponse.model_validate(resp.json())
        except ValueError as exc:
            raise TokenRefreshError(
                "No access token received in refresh response", terminal=False, connection_id=cid
            ) from exc

    async def _persist_refresh(self, conn: PlatformConnection, token: TokenResponse) -> None:
        """Write the new token pair and expiry in one statement."""
        now = self._clock()
        values: Dict[str, Any] = {
            "access_token": self._cipher.encrypt_token(token.access_token),
            "token_expires_at": now + timedelta(seconds=token.expires_in) if token.expires_in else None,
            "status": ConnectionStatus.ACTIVE.value,
            "last_error_at": None,
            "last_error_message": None,
            "platform_data": {**(conn.platform_data or {}), "last_token_refresh": now.isoformat()},
            "updated_at": now,
        }
        # Some providers rotate refresh tokens
        if token.refresh_token:
            values["refresh_token"] = self._cipher.encrypt_token(token.refresh_token)

        async with self._session_factory() as session:
            result = await session.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.id == conn.id,
                    PlatformConnection.status != ConnectionStatus.REVOKED.value,
                )
                .values(**values)
            )
            await session.commit()
        if result.rowcount == 0:
            raise ConnectionInactiveError(
                f"Connection {conn.id} was revoked during refresh",
                status=ConnectionStatus.REVOKED.value,
            )

    async def _record_failure(
        self,
        connection_id: uuid.UUID,
        message: str,
        *,
        status: Optional[ConnectionStatus] = None,
    ) -> None:
        now = self._clock()
        values: Dict[str, Any] = {
            "last_error_at": now,
            "last_error_message": message[:1000],
            "updated_at": now,
        }
        if status is not None:
            values["status"] = status.value
        async with self._session_factory() as session:
            await session.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.id == connection_id,
                    PlatformConnection.status != ConnectionStatus.REVOKED.value,
                )
                .values(**values)
            )
            await session.commit()

    # ── Test / revoke ───────────────────────────────────────────────────

    async def test_connection(self, connection_id: str | uuid.UUID) -> ConnectionTestResult:
        """Call the platform's identity endpoint with the current token."""
        conn = await self.get_connection(connection_id)
        platform = self._registry.get(conn.platform_type)
        try:
            token = await self.get_access_token(conn.id)
        except (ConnectionInactiveError, TokenRefreshError) as exc:
            return ConnectionTestResult(success=False, error=str(exc), details={"status": conn.status})

        result = await platform.test_connection(self._http, token, conn.platform_data or {})
        if result.success:
            async with self._session_factory() as session:
                await session.execute(
                    update(PlatformConnection)
                    .where(PlatformConnection.id == conn.id)
                    .values(last_error_at=None, last_error_message=None, updated_at=self._clock())
                )
                await session.commit()
        else:
            status = ConnectionStatus.ERROR if result.details.get("status_code") == 401 else None
            await self._record_failure(conn.id, result.error or "Connection test failed", status=status)
        logger.info("Connection test for %s: success=%s", conn.id, result.success)
        return result

    async def revoke_connection(self, connection_id: str | uuid.UUID) -> bool:
        """
        Mark a connection REVOKED and drop its tokens.  Idempotent: returns
        False when the connection was already revoked.
        """
        cid = to_uuid(connection_id)
        async with self._lock_for(cid):
            conn = await self.get_connection(cid)
            if conn.status == ConnectionStatus.REVOKED.value:
                logger.info("Connection %s already revoked", cid)
                return False

            if conn.access_token:
                try:
                    platform = self._registry.get(conn.platform_type)
                    await platform.revoke_token(self._http, self._cipher.decrypt_token(conn.access_token))
                except ConnectorError as exc:
                    logger.warning("Provider-side revocation skipped for %s: %s", cid, exc)

            now = self._clock()
            async with self._session_factory() as session:
                await session.execute(
                    update(PlatformConnection)
                    .where(PlatformConnection.id == cid)
                    .values(
                        status=ConnectionStatus.REVOKED.value,
                        access_token=None,
                        refresh_token=None,
                        token_expires_at=None,
                        last_error_at=now,
                        last_error_message="revoked",
                        updated_at=now,
                    )
                )
                await session.commit()

        logger.info("Revoked connection %s", cid)
        return True
