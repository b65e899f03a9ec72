"""
WebhookMaintenanceScheduler — hourly renewal and periodic cleanup of push
channels.
"""

from __future__ import annotations

import logging
from typing import List

from connectors.periodic import PeriodicTask
from connectors.schemas import CleanupResult, SubscriptionRenewalResult
from connectors.webhooks import WebhookSubscriptionManager

logger = logging.getLogger(__name__)


class WebhookMaintenanceScheduler:
    def __init__(
        self,
        webhook_manager: WebhookSubscriptionManager,
        *,
        renewal_interval_seconds: float = 3600,
        cleanup_interval_seconds: float = 6 * 3600,
        grace_seconds: float = 10.0,
    ):
        self._webhooks = webhook_manager
        self._renewal = PeriodicTask(
            "webhook-renewal",
            renewal_interval_seconds,
            self.trigger_renewal,
            grace_seconds=grace_seconds,
        )
        self._cleanup = PeriodicTask(
            "webhook-cleanup",
            cleanup_interval_seconds,
            self.trigger_cleanup,
            grace_seconds=grace_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._renewal.is_running or self._cleanup.is_running

    def start(self) -> None:
        self._renewal.start()
        self._cleanup.start()

    async def stop(self) -> None:
        await self._renewal.stop()
        await self._cleanup.stop()

    async def trigger_renewal(self) -> List[SubscriptionRenewalResult]:
        logger.info("Running scheduled webhook renewal")
        return await self._webhooks.renew_expiring_subscriptions()

    async def trigger_cleanup(self) -> CleanupResult:
        logger.info("Running scheduled webhook cleanup")
        return await self._webhooks.cleanup_expired_subscriptions()
