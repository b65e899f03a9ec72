"""
WebhookSubscriptionManager — push-notification channels for synced resources.

Owns WebhookSubscription rows: opening a Drive channel for a resource,
renewing it before it lapses, tearing it down, and turning inbound
notifications into (coalesced) sync operations.

Invariants:
  • at most one active subscription per (connection, resource), enforced
    by a per-key lock plus a partial unique index;
  • ``handle_notification`` never raises, every failure is acknowledged and
    reported as a ``NotificationOutcome``;
  • teardown always deactivates the local row even when the provider call
    fails.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
import weakref
from datetime import timedelta
from typing import List, Optional, Tuple

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.channels import DriveChannelClient
from connectors.clock import Clock, utcnow
from connectors.connection_manager import OAuth2ConnectionManager
from connectors.exceptions import (
    ConnectionNotFoundError,
    ConnectorError,
    SignatureValidationError,
    SubscriptionNotFoundError,
    SyncTriggerError,
    WebhookSetupError,
)
from connectors.schemas import CleanupResult, SubscriptionRenewalResult, WebhookNotification
from connectors.security import compute_signature, verify_signature
from connectors.sync import SyncOperationService, SyncTrigger
from database.helpers import load_connection, load_resource, to_uuid
from database.models import (
    PlatformType,
    SyncedResource,
    SyncOperation,
    SyncOperationType,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

# Push channels are only offered for Drive-backed resources.
_PUSH_PLATFORMS = {PlatformType.GOOGLE_SHEETS.value}


class NotificationOutcome(str, enum.Enum):
    REJECTED = "rejected"                        # bad signature or channel token
    IGNORED = "ignored"                          # not an "update" event
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"
    EXPIRED = "expired"                          # subscription lapsed, now inactive
    COALESCED = "coalesced"                      # a sync is already pending/processing
    TRIGGERED = "triggered"
    TRIGGER_FAILED = "trigger_failed"
    ERROR = "error"


def canonical_payload(notification: WebhookNotification) -> str:
    """JSON used for signing when the raw request body is unavailable."""
    return json.dumps(
        notification.model_dump(by_alias=True, exclude_none=True),
        separators=(",", ":"),
    )


class WebhookSubscriptionManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connection_manager: OAuth2ConnectionManager,
        sync_service: SyncOperationService,
        sync_trigger: SyncTrigger,
        channel_client: DriveChannelClient,
        *,
        callback_url: str,
        webhook_secret: str,
        renewal_window_hours: int = 2,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._connections = connection_manager
        self._sync = sync_service
        self._trigger = sync_trigger
        self._channels = channel_client
        self._callback_url = callback_url
        self._secret = webhook_secret
        self._renewal_window = timedelta(hours=renewal_window_hours)
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[Tuple[uuid.UUID, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, connection_id: uuid.UUID, resource_id: str) -> asyncio.Lock:
        key = (connection_id, resource_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ── Signing ─────────────────────────────────────────────────────────

    def channel_token(self, connection_id: str | uuid.UUID, resource_id: str) -> str:
        """Token handed to the provider at watch time and echoed on every push."""
        return compute_signature(f"{connection_id}:{resource_id}", self._secret)

    def validate_signature(self, payload: bytes | str, signature: str) -> None:
        if not verify_signature(payload, signature, self._secret):
            raise SignatureValidationError("Invalid webhook signature")

    # ── Setup ───────────────────────────────────────────────────────────

    async def enable_resource_sync(
        self,
        connection_id: str | uuid.UUID,
        resource_id: str,
        resource_name: Optional[str] = None,
    ) -> WebhookSubscription:
        """Register ``resource_id`` as synced for the connection and subscribe to it."""
        cid = to_uuid(connection_id)
        now = self._clock()
        async with self._session_factory() as session:
            if await load_connection(session, cid) is None:
                raise ConnectionNotFoundError(f"Connection {cid} not found")
            resource = await load_resource(session, cid, resource_id)
            if resource is None:
                session.add(
                    SyncedResource(
                        id=uuid.uuid4(),
                        connection_id=cid,
                        resource_id=resource_id,
                        resource_name=resource_name,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                resource.is_active = True
                resource.resource_name = resource_name or resource.resource_name
                resource.updated_at = now
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent enable already inserted the row.
                await session.rollback()

        return await self.setup_subscription(cid, resource_id)

    async def setup_subscription(self, connection_id: str | uuid.UUID, resource_id: str) -> WebhookSubscription:
        """
        Open a channel on ``resource_id`` and persist it as the active
        subscription.  A still-valid active subscription is returned as is.
        """
        try:
            cid = to_uuid(connection_id)
        except ValueError as exc:
            raise WebhookSetupError(f"Invalid connection id {connection_id!r}") from exc
        async with self._lock_for(cid, resource_id):
            return await self._setup_locked(cid, resource_id)

    async def _active_for(
        self, session: AsyncSession, connection_id: uuid.UUID, resource_id: str
    ) -> Optional[WebhookSubscription]:
        result = await session.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.connection_id == connection_id,
                WebhookSubscription.resource_id == resource_id,
                WebhookSubscription.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _setup_locked(self, connection_id: uuid.UUID, resource_id: str) -> WebhookSubscription:
        now = self._clock()
        async with self._session_factory() as session:
            conn = await load_connection(session, connection_id)
            if conn is None:
                raise WebhookSetupError(f"Connection {connection_id} not found")
            if conn.platform_type not in _PUSH_PLATFORMS:
                raise WebhookSetupError(f"Push notifications are not supported for {conn.platform_type}")
            if await load_resource(session, connection_id, resource_id) is None:
                raise WebhookSetupError(f"Resource {resource_id} is not synced for connection {connection_id}")

            existing = await self._active_for(session, connection_id, resource_id)
            if existing is not None:
                if existing.expiration is None or existing.expiration > now:
                    logger.info("Reusing active subscription %s for resource %s", existing.id, resource_id)
                    return existing
                existing.is_active = False
                existing.updated_at = now
                await session.commit()

        try:
            access_token = await self._connections.get_access_token(connection_id)
        except ConnectorError as exc:
            raise WebhookSetupError(f"No usable access token: {exc}") from exc

        registration = await self._channels.watch(
            access_token,
            resource_id,
            channel_id=str(uuid.uuid4()),
            address=self._callback_url,
            token=self.channel_token(connection_id, resource_id),
        )

        subscription = WebhookSubscription(
            id=uuid.uuid4(),
            connection_id=connection_id,
            resource_id=resource_id,
            external_subscription_id=registration.external_subscription_id,
            external_resource_id=registration.external_resource_id,
            expiration=registration.expiration,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(subscription)
            await session.execute(
                update(SyncedResource)
                .where(
                    SyncedResource.connection_id == connection_id,
                    SyncedResource.resource_id == resource_id,
                )
                .values(webhook_subscription_id=subscription.id, updated_at=now)
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                await self._stop_channel_quietly(connection_id, subscription)
                raise WebhookSetupError(
                    f"An active subscription already exists for resource {resource_id}"
                ) from exc

        logger.info(
            "Webhook subscription %s created for connection %s resource %s (expires %s)",
            subscription.id, connection_id, resource_id, subscription.expiration,
        )
        return subscription

    # ── Teardown ────────────────────────────────────────────────────────

    async def _stop_channel_quietly(self, connection_id: uuid.UUID, subscription: WebhookSubscription) -> None:
        try:
            access_token = await self._connections.get_access_token(connection_id)
            await self._channels.stop(
                access_token,
                subscription.external_subscription_id,
                subscription.external_resource_id,
            )
        except (ConnectorError, httpx.HTTPError) as exc:
            logger.warning(
                "Failed to stop channel %s at provider: %s",
                subscription.external_subscription_id, exc,
            )

    async def _deactivate(self, subscription_id: uuid.UUID) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription_id)
                .values(is_active=False, updated_at=now)
            )
            await session.execute(
                update(SyncedResource)
                .where(SyncedResource.webhook_subscription_id == subscription_id)
                .values(webhook_subscription_id=None, updated_at=now)
            )
            await session.commit()

    async def get_subscription(self, subscription_id: str | uuid.UUID) -> WebhookSubscription:
        async with self._session_factory() as session:
            subscription = await session.get(WebhookSubscription, to_uuid(subscription_id))
        if subscription is None:
            raise SubscriptionNotFoundError(f"Webhook subscription {subscription_id} not found")
        return subscription

    async def remove_subscription(self, subscription_id: str | uuid.UUID) -> bool:
        """
        Stop the channel (best effort) and deactivate the row.

        Returns False when the subscription was already inactive.
        """
        subscription = await self.get_subscription(subscription_id)
        async with self._lock_for(subscription.connection_id, subscription.resource_id):
            return await self._remove_locked(subscription.id)

    async def _remove_locked(self, subscription_id: uuid.UUID) -> bool:
        subscription = await self.get_subscription(subscription_id)
        if not subscription.is_active:
            return False
        await self._stop_channel_quietly(subscription.connection_id, subscription)
        await self._deactivate(subscription.id)
        logger.info("Webhook subscription %s removed", subscription.id)
        return True

    async def remove_connection_subscriptions(self, connection_id: str | uuid.UUID) -> int:
        removed = 0
        for subscription in await self.get_active_subscriptions(connection_id):
            if await self.remove_subscription(subscription.id):
                removed += 1
        return removed

    async def renew_subscription(self, subscription_id: str | uuid.UUID) -> Optional[WebhookSubscription]:
        """
        Replace an active subscription with a fresh channel.  The old row
        stays inactive.  Returns None when the subscription was inactive.
        """
        subscription = await self.get_subscription(subscription_id)
        async with self._lock_for(subscription.connection_id, subscription.resource_id):
            if not await self._remove_locked(subscription.id):
                logger.warning("Attempted to renew inactive subscription %s", subscription.id)
                return None
            renewed = await self._setup_locked(subscription.connection_id, subscription.resource_id)

        logger.info("Webhook subscription %s renewed as %s", subscription.id, renewed.id)
        return renewed

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_active_subscriptions(
        self, connection_id: Optional[str | uuid.UUID] = None
    ) -> List[WebhookSubscription]:
        stmt = select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True))
        if connection_id is not None:
            stmt = stmt.where(WebhookSubscription.connection_id == to_uuid(connection_id))
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(WebhookSubscription.created_at.desc()))
            return list(result.scalars().all())

    # ── Batch sweeps ────────────────────────────────────────────────────

    async def renew_expiring_subscriptions(
        self, connection_id: Optional[str | uuid.UUID] = None
    ) -> List[SubscriptionRenewalResult]:
        """Renew active subscriptions expiring within the renewal window."""
        now = self._clock()
        stmt = select(WebhookSubscription.id).where(
            WebhookSubscription.is_active.is_(True),
            WebhookSubscription.expiration >= now,
            WebhookSubscription.expiration <= now + self._renewal_window,
        )
        if connection_id is not None:
            stmt = stmt.where(WebhookSubscription.connection_id == to_uuid(connection_id))
        async with self._session_factory() as session:
            subscription_ids = list((await session.execute(stmt)).scalars().all())

        results: List[SubscriptionRenewalResult] = []
        for subscription_id in subscription_ids:
            try:
                await self.renew_subscription(subscription_id)
                results.append(SubscriptionRenewalResult(subscription_id=subscription_id, success=True))
            except Exception as exc:
                logger.error("Failed to renew expiring subscription %s: %s", subscription_id, exc)
                results.append(
                    SubscriptionRenewalResult(subscription_id=subscription_id, success=False, error=str(exc))
                )

        logger.info(
            "Renewal sweep complete: %d total, %d renewed, %d failed",
            len(results),
            sum(1 for r in results if r.success),
            sum(1 for r in results if not r.success),
        )
        return results

    async def cleanup_expired_subscriptions(self) -> CleanupResult:
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription.id).where(
                    WebhookSubscription.is_active.is_(True),
                    WebhookSubscription.expiration < now,
                )
            )
            subscription_ids = list(result.scalars().all())

        cleanup = CleanupResult()
        for subscription_id in subscription_ids:
            try:
                await self.remove_subscription(subscription_id)
                cleanup.cleaned_count += 1
            except Exception as exc:
                logger.error("Failed to clean up subscription %s: %s", subscription_id, exc)
                cleanup.errors.append(f"Subscription {subscription_id}: {exc}")

        logger.info(
            "Cleanup sweep complete: %d expired, %d cleaned, %d errors",
            len(subscription_ids), cleanup.cleaned_count, len(cleanup.errors),
        )
        return cleanup

    # ── Notifications ───────────────────────────────────────────────────

    async def handle_notification(
        self,
        notification: WebhookNotification,
        signature: Optional[str] = None,
        raw_body: Optional[bytes] = None,
    ) -> NotificationOutcome:
        """
        Process one provider push.  Never raises: the provider retries on
        error responses, so every failure is logged and acknowledged.
        """
        try:
            return await self._handle_notification(notification, signature, raw_body)
        except Exception:
            logger.exception("Failed to handle webhook notification for %s", notification.resource_id)
            return NotificationOutcome.ERROR

    async def _handle_notification(
        self,
        notification: WebhookNotification,
        signature: Optional[str],
        raw_body: Optional[bytes],
    ) -> NotificationOutcome:
        if signature is not None:
            try:
                payload = raw_body if raw_body is not None else canonical_payload(notification)
                self.validate_signature(payload, signature)
            except SignatureValidationError:
                logger.warning("Invalid webhook signature for resource %s", notification.resource_id)
                return NotificationOutcome.REJECTED

        if notification.resource_state != "update":
            logger.debug("Ignoring %s notification for %s", notification.resource_state, notification.resource_id)
            return NotificationOutcome.IGNORED

        # Drive hands out the same resourceId to every channel on a file, so
        # the channel id is what tells two connections watching it apart.
        conditions = [
            WebhookSubscription.external_resource_id == notification.resource_id,
            WebhookSubscription.is_active.is_(True),
        ]
        if notification.id:
            conditions.append(WebhookSubscription.external_subscription_id == notification.id)

        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription)
                .where(*conditions)
                .order_by(WebhookSubscription.created_at.desc())
                .limit(1)
            )
            subscription = result.scalar_one_or_none()

        if subscription is None:
            logger.warning("No active subscription for resource %s", notification.resource_id)
            return NotificationOutcome.UNKNOWN_SUBSCRIPTION

        if notification.channel_token is not None and not verify_signature(
            f"{subscription.connection_id}:{subscription.resource_id}",
            notification.channel_token,
            self._secret,
        ):
            logger.warning("Channel token mismatch for subscription %s", subscription.id)
            return NotificationOutcome.REJECTED

        if subscription.expiration is not None and subscription.expiration < self._clock():
            logger.warning("Subscription %s expired at %s, deactivating", subscription.id, subscription.expiration)
            await self._deactivate(subscription.id)
            return NotificationOutcome.EXPIRED

        operation, created = await self._sync.start(
            subscription.connection_id, subscription.resource_id, SyncOperationType.WEBHOOK
        )
        if not created:
            logger.info(
                "Sync already %s for connection %s resource %s, coalescing notification",
                operation.status, subscription.connection_id, subscription.resource_id,
            )
            return NotificationOutcome.COALESCED

        if not await self._fire(operation):
            return NotificationOutcome.TRIGGER_FAILED
        return NotificationOutcome.TRIGGERED

    async def _fire(self, operation: SyncOperation) -> bool:
        """Hand a new operation to the trigger; on failure mark it failed."""
        try:
            await self._trigger.trigger(operation)
        except Exception as exc:
            logger.error("Sync trigger failed for operation %s: %s", operation.id, exc)
            await self._sync.fail(operation.id, f"Trigger failed: {exc}")
            return False
        return True

    async def trigger_manual_sync(
        self, connection_id: str | uuid.UUID, resource_id: str
    ) -> Tuple[SyncOperation, bool]:
        """
        Start a manual sync, coalescing with any in-flight one.

        Raises SyncTriggerError when the trigger cannot start the work.
        """
        cid = to_uuid(connection_id)
        async with self._session_factory() as session:
            if await load_connection(session, cid) is None:
                raise ConnectionNotFoundError(f"Connection {cid} not found")

        operation, created = await self._sync.start(cid, resource_id, SyncOperationType.MANUAL)
        if created and not await self._fire(operation):
            raise SyncTriggerError(f"Could not start sync operation {operation.id}")
        return operation, created
