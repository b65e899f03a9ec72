"""
ConnectorServices — the process-wide object graph.

Built once by the app lifespan (or by tests with fakes injected) and stored
on ``app.state.services``; routes reach it through ``get_services``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.channels import DriveChannelClient
from connectors.clock import Clock, utcnow
from connectors.connection_manager import OAuth2ConnectionManager
from connectors.encryption import TokenCipher
from connectors.http import build_provider_client
from connectors.refresh_scheduler import TokenRefreshScheduler
from connectors.registry import PlatformRegistry
from connectors.state_store import AuthorizationStateStore
from connectors.sync import QueueSyncTrigger, SyncOperationService, SyncTrigger
from connectors.webhook_scheduler import WebhookMaintenanceScheduler
from connectors.webhooks import WebhookSubscriptionManager

logger = logging.getLogger(__name__)


class ConnectorServices:
    def __init__(
        self,
        settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[PlatformRegistry] = None,
        sync_trigger: Optional[SyncTrigger] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self._owns_http_client = http_client is None
        self.http_client = http_client or build_provider_client(settings.provider_timeout_seconds)

        self.registry = registry or PlatformRegistry.from_settings(settings)
        self.cipher = TokenCipher.from_settings(settings)
        self.state_store = AuthorizationStateStore(
            session_factory,
            ttl_seconds=settings.oauth_state_ttl_seconds,
            clock=clock,
        )
        self.connections = OAuth2ConnectionManager(
            session_factory,
            self.registry,
            self.cipher,
            self.state_store,
            self.http_client,
            refresh_buffer_seconds=settings.access_token_refresh_buffer_seconds,
            max_retries=settings.default_max_retries,
            backoff_seconds=settings.default_backoff_seconds,
            backoff_multiplier=settings.default_backoff_multiplier,
            clock=clock,
            sleep=sleep,
        )
        self.sync = SyncOperationService(session_factory, clock=clock)
        self.sync_trigger = sync_trigger or QueueSyncTrigger()
        self.webhooks = WebhookSubscriptionManager(
            session_factory,
            self.connections,
            self.sync,
            self.sync_trigger,
            DriveChannelClient(self.http_client, clock=clock),
            callback_url=settings.get_webhook_callback_url(),
            webhook_secret=settings.webhook_secret,
            renewal_window_hours=settings.webhook_renewal_window_hours,
            clock=clock,
        )
        self.refresh_scheduler = TokenRefreshScheduler(
            session_factory,
            self.connections,
            interval_ms=settings.token_refresh_interval_ms,
            lookahead_minutes=settings.token_refresh_lookahead_minutes,
            concurrency=settings.token_refresh_concurrency,
            grace_seconds=settings.scheduler_shutdown_grace_seconds,
            clock=clock,
        )
        self.webhook_scheduler = WebhookMaintenanceScheduler(
            self.webhooks,
            renewal_interval_seconds=settings.webhook_renewal_interval_seconds,
            cleanup_interval_seconds=settings.webhook_cleanup_interval_seconds,
            grace_seconds=settings.scheduler_shutdown_grace_seconds,
        )

    def start(self) -> None:
        self.refresh_scheduler.start()
        self.webhook_scheduler.start()
        logger.info("Connector background jobs started")

    async def aclose(self) -> None:
        await self.refresh_scheduler.stop()
        await self.webhook_scheduler.stop()
        await self.sync_trigger.aclose()
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.info("Connector services shut down")


def get_services(request: Request) -> ConnectorServices:
    """FastAPI dependency: the services built at startup."""
    return request.app.state.services
