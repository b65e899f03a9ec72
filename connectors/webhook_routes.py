"""
Webhook, sync and token-health API routes.

Inbound provider pushes always get a 200 so the provider does not retry;
the JSON body reports what happened to the notification.

Route prefix: /api/v1
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from auth.dependencies import get_current_principal
from auth.models import Principal
from connectors.exceptions import ConnectorError, SubscriptionNotFoundError
from connectors.routes import owned_connection, to_http_exception
from connectors.schemas import (
    SubscriptionRenewalResult,
    SyncOperationView,
    WebhookNotification,
    WebhookSubscriptionView,
)
from connectors.services import ConnectorServices, get_services
from connectors.webhooks import NotificationOutcome
from database.models import WebhookSubscription

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


class EnableSyncRequest(BaseModel):
    resource_name: Optional[str] = None


async def _owned_subscription(
    services: ConnectorServices,
    subscription_id: str,
    principal: Principal,
) -> WebhookSubscription:
    try:
        subscription = await services.webhooks.get_subscription(subscription_id)
    except ValueError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Webhook subscription not found")
    except SubscriptionNotFoundError as exc:
        raise to_http_exception(exc)
    await owned_connection(services, str(subscription.connection_id), principal)
    return subscription


# ── Inbound provider pushes ────────────────────────────────────────────


@router.post("/webhooks/google-drive")
async def google_drive_webhook(
    x_goog_channel_id: Optional[str] = Header(None),
    x_goog_resource_id: Optional[str] = Header(None),
    x_goog_resource_state: Optional[str] = Header(None),
    x_goog_resource_uri: Optional[str] = Header(None),
    x_goog_message_number: Optional[str] = Header(None),
    x_goog_channel_token: Optional[str] = Header(None),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, str]:
    """Drive channel notification; everything arrives in X-Goog-* headers."""
    if not x_goog_resource_id or not x_goog_resource_state:
        logger.warning("Drive notification without resource headers (channel %s)", x_goog_channel_id)
        return {"status": NotificationOutcome.IGNORED.value}

    notification = WebhookNotification(
        id=x_goog_channel_id,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
        resource_uri=x_goog_resource_uri,
        message_number=x_goog_message_number,
        channel_token=x_goog_channel_token,
    )
    outcome = await services.webhooks.handle_notification(notification)
    return {"status": outcome.value}


@router.post("/webhooks/notification")
async def signed_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, str]:
    """JSON notification, optionally signed over the raw body."""
    raw_body = await request.body()
    try:
        notification = WebhookNotification.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning("Malformed webhook notification: %s", exc.errors()[:1])
        return {"status": NotificationOutcome.IGNORED.value}

    outcome = await services.webhooks.handle_notification(
        notification, signature=x_webhook_signature, raw_body=raw_body
    )
    return {"status": outcome.value}


# ── Resource sync & subscriptions ──────────────────────────────────────


@router.post("/connections/{connection_id}/resources/{resource_id}/sync")
async def enable_resource_sync(
    connection_id: str,
    resource_id: str,
    body: Optional[EnableSyncRequest] = None,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> WebhookSubscriptionView:
    """Start syncing a resource and subscribe to its change notifications."""
    conn = await owned_connection(services, connection_id, principal)
    try:
        resource_name = body.resource_name if body else None
        subscription = await services.webhooks.enable_resource_sync(conn.id, resource_id, resource_name)
    except ConnectorError as exc:
        raise to_http_exception(exc)
    return WebhookSubscriptionView.model_validate(subscription)


@router.get("/connections/{connection_id}/webhook-subscriptions")
async def list_subscriptions(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> List[WebhookSubscriptionView]:
    conn = await owned_connection(services, connection_id, principal)
    subscriptions = await services.webhooks.get_active_subscriptions(conn.id)
    return [WebhookSubscriptionView.model_validate(s) for s in subscriptions]


@router.post("/connections/{connection_id}/webhook-subscriptions/renew")
async def renew_connection_subscriptions(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> List[SubscriptionRenewalResult]:
    """Renew this connection's subscriptions that are about to expire."""
    conn = await owned_connection(services, connection_id, principal)
    return await services.webhooks.renew_expiring_subscriptions(conn.id)


@router.delete("/webhook-subscriptions/{subscription_id}")
async def remove_subscription(
    subscription_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    subscription = await _owned_subscription(services, subscription_id, principal)
    removed = await services.webhooks.remove_subscription(subscription.id)
    return {"subscription_id": str(subscription.id), "removed": removed}


@router.post("/webhook-subscriptions/{subscription_id}/renew")
async def renew_subscription(
    subscription_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    subscription = await _owned_subscription(services, subscription_id, principal)
    try:
        renewed = await services.webhooks.renew_subscription(subscription.id)
    except ConnectorError as exc:
        raise to_http_exception(exc)
    if renewed is None:
        raise HTTPException(status.HTTP_409_CONFLICT, "Webhook subscription is not active")
    return {
        "previous_subscription_id": str(subscription.id),
        "subscription": WebhookSubscriptionView.model_validate(renewed).model_dump(mode="json"),
    }


# ── Sync operations ────────────────────────────────────────────────────


@router.post("/connections/{connection_id}/resources/{resource_id}/manual-sync")
async def manual_sync(
    connection_id: str,
    resource_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    conn = await owned_connection(services, connection_id, principal)
    try:
        operation, created = await services.webhooks.trigger_manual_sync(conn.id, resource_id)
    except ConnectorError as exc:
        raise to_http_exception(exc)
    return {
        "created": created,
        "operation": SyncOperationView.model_validate(operation).model_dump(mode="json"),
    }


@router.get("/connections/{connection_id}/sync-operations")
async def list_sync_operations(
    connection_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> List[SyncOperationView]:
    conn = await owned_connection(services, connection_id, principal)
    operations = await services.sync.list_for_connection(conn.id)
    return [SyncOperationView.model_validate(op) for op in operations]


@router.get("/sync-operations/{operation_id}")
async def get_sync_operation(
    operation_id: str,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> SyncOperationView:
    try:
        operation = await services.sync.get(operation_id)
    except ValueError:
        operation = None
    if operation is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Sync operation not found")
    await owned_connection(services, str(operation.connection_id), principal)
    return SyncOperationView.model_validate(operation)


# ── Token health ───────────────────────────────────────────────────────


@router.get("/token-health/status")
async def token_health_status(
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    scheduler = services.refresh_scheduler
    tokens = await scheduler.get_token_health_status()
    return {
        "scheduler": scheduler.get_scheduler_status().model_dump(),
        "tokens": tokens.model_dump(),
        "timestamp": services.clock().isoformat(),
    }


@router.post("/token-health/refresh-check")
async def trigger_refresh_check(
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, str]:
    """Kick off a refresh sweep without waiting for it."""
    logger.info("Manual token refresh check requested by %s", principal.user_id)
    background_tasks.add_task(services.refresh_scheduler.trigger_now)
    return {
        "message": "Token refresh check triggered successfully",
        "triggered_at": services.clock().isoformat(),
    }
