"""
Connector API routes — platforms, OAuth connect/callback, connection
management (list, test, refresh, revoke).

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from auth.dependencies import get_current_principal
from auth.models import Principal
from connectors.exceptions import (
    AuthorizationError,
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ConnectorError,
    PlatformNotConfiguredError,
    SubscriptionNotFoundError,
    TokenExchangeError,
    TokenRefreshError,
)
from connectors.schemas import ConnectionSummary, ConnectionTestResult
from connectors.services import ConnectorServices, get_services
from database.models import ConnectionStatus, PlatformConnection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


# ── Error translation ──────────────────────────────────────────────────


def to_http_exception(exc: ConnectorError) -> HTTPException:
    """Map a connector error onto the HTTP status the caller should see."""
    if isinstance(exc, (AuthorizationError, TokenExchangeError)):
        return HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    if isinstance(exc, (ConnectionNotFoundError, SubscriptionNotFoundError, PlatformNotConfiguredError)):
        return HTTPException(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, ConnectionInactiveError):
        return HTTPException(status.HTTP_409_CONFLICT, {"message": str(exc), "status": exc.status})
    if isinstance(exc, TokenRefreshError) and exc.terminal:
        return HTTPException(
            status.HTTP_409_CONFLICT,
            {"message": str(exc), "status": exc.status or ConnectionStatus.ERROR.value},
        )
    return HTTPException(status.HTTP_502_BAD_GATEWAY, str(exc))


async def owned_connection(
    services: ConnectorServices,
    connection_id: str,
    principal: Principal,
) -> PlatformConnection:
    """Load a connection belonging to the caller, 404 otherwise."""
    try:
        conn = await services.connections.get_connection(connection_id)
    except ValueError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    except ConnectionNotFoundError as exc:
        raise to_http_exception(exc)
    if conn.user_id != principal.user_id or conn.tenant_id != principal.tenant_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return conn


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/platforms")
async def list_platforms(services: ConnectorServices = Depends(get_services)) -> List[Dict[str, Any]]:
    """
    List all known platforms and their configuration status.
    No auth required; used by the frontend to show available connectors.
    """
    return services.registry.list_platforms()


@router.get("/connections")
async def list_connections(
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> List[ConnectionSummary]:
    """List all platform connections of the authenticated user."""
    connections = await services.connections.list_connections(principal.user_id, principal.tenant_id)
    return [services.connections.summarize(c) for c in connections]


@router.get("/{platform}/auth-url")
async def get_auth_url(
    platform: str,
    shop: Optional[str] = Query(None, description="Shop domain (Shopify only)"),
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a platform.

    Frontend should open this URL in a popup window.
    """
    platform_data = {"shop": shop} if shop else {}
    try:
        connector = services.registry.get_by_slug(platform)
        request = await services.connections.generate_authorization_url(
            connector.platform_type,
            connector.oauth_config(platform_data),
            principal.user_id,
            principal.tenant_id,
            platform_data,
        )
    except ConnectorError as exc:
        raise to_http_exception(exc)

    return {
        "authorization_url": request.authorization_url,
        "state": request.state,
        "platform": connector.slug,
    }


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    services: ConnectorServices = Depends(get_services),
) -> HTMLResponse:
    """
    OAuth callback: the provider redirects here after consent.

    Validates state, exchanges the code, stores the connection and returns a
    small HTML page that notifies the opener window and auto-closes.
    """
    try:
        conn = await services.connections.complete_authorization(
            platform.upper(),
            code=code,
            state=state,
            error=error,
            error_description=error_description,
        )
    except ConnectorError as exc:
        logger.warning("OAuth callback failed for %s: %s", platform, exc)
        return HTMLResponse(
            content=_callback_html(success=False, message=f"Connection failed: {exc}", platform=platform),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    logger.info(
        "OAuth connected: user=%s tenant=%s platform=%s connection=%s",
        conn.user_id, conn.tenant_id, platform, conn.id,
    )
    return HTMLResponse(
        content=_callback_html(success=True, message=f"Connected {conn.platform_name}", platform=platform),
        status_code=status.HTTP_200_OK,
    )


@router.post("/connections/{connection_id}/test")
async def test_connection(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> ConnectionTestResult:
    conn = await owned_connection(services, connection_id, principal)
    try:
        return await services.connections.test_connection(conn.id)
    except ConnectorError as exc:
        raise to_http_exception(exc)


@router.post("/connections/{connection_id}/refresh")
async def refresh_connection(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> ConnectionSummary:
    """Force a token refresh."""
    conn = await owned_connection(services, connection_id, principal)
    try:
        await services.connections.refresh_access_token(conn.id)
        conn = await services.connections.get_connection(conn.id)
    except ConnectorError as exc:
        raise to_http_exception(exc)
    return services.connections.summarize(conn)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke a connection and tear down its webhook subscriptions."""
    conn = await owned_connection(services, connection_id, principal)
    removed = await services.webhooks.remove_connection_subscriptions(conn.id)
    revoked = await services.connections.revoke_connection(conn.id)
    return {
        "status": "revoked",
        "connection_id": str(conn.id),
        "already_revoked": not revoked,
        "subscriptions_removed": removed,
    }


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, platform: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    safe_platform = html.escape(platform)
    opener_payload = json.dumps(
        {"type": "oauth-callback", "platform": platform, "success": success, "message": message}
    ).replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{safe_platform} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({opener_payload}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
