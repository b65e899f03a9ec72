"""
TokenRefreshScheduler — proactively refreshes tokens before they expire.

Each tick selects ACTIVE connections that hold a refresh token and expire
within the lookahead window, then refreshes them through
``OAuth2ConnectionManager.refresh_if_expiring`` so the per-connection lock
is shared with on-demand callers.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.clock import Clock, utcnow
from connectors.connection_manager import OAuth2ConnectionManager
from connectors.exceptions import ConnectorError
from connectors.periodic import PeriodicTask
from connectors.schemas import RefreshBatchResult, SchedulerStatus, TokenHealthStatus
from database.models import ConnectionStatus, PlatformConnection

logger = logging.getLogger(__name__)

# "expiring soon" bucket of the health report
_HEALTH_HORIZON = timedelta(hours=1)


class TokenRefreshScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connection_manager: OAuth2ConnectionManager,
        *,
        interval_ms: int = 5 * 60 * 1000,
        lookahead_minutes: int = 15,
        concurrency: int = 5,
        grace_seconds: float = 10.0,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._manager = connection_manager
        self._interval_ms = interval_ms
        self._lookahead = timedelta(minutes=lookahead_minutes)
        self._concurrency = max(1, concurrency)
        self._clock = clock
        # One batch at a time; a manual trigger waits for a running tick.
        self._batch_lock = asyncio.Lock()
        self._task = PeriodicTask(
            "token-refresh-scheduler",
            interval_ms / 1000,
            self.check_and_refresh_tokens,
            grace_seconds=grace_seconds,
            run_immediately=True,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def trigger_now(self) -> RefreshBatchResult:
        """Run one sweep right away (operational use)."""
        logger.info("Manual token refresh triggered")
        return await self.check_and_refresh_tokens()

    # ── Sweep ───────────────────────────────────────────────────────────

    async def _due_connection_ids(self) -> List:
        cutoff = self._clock() + self._lookahead
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlatformConnection.id).where(
                    PlatformConnection.status == ConnectionStatus.ACTIVE.value,
                    PlatformConnection.refresh_token.is_not(None),
                    PlatformConnection.token_expires_at.is_not(None),
                    PlatformConnection.token_expires_at <= cutoff,
                )
            )
            return list(result.scalars().all())

    async def check_and_refresh_tokens(self) -> RefreshBatchResult:
        """
        Refresh every connection due within the lookahead window.

        Failures are collected per connection and never abort the batch.
        """
        async with self._batch_lock:
            connection_ids = await self._due_connection_ids()
            result = RefreshBatchResult(total=len(connection_ids))
            if not connection_ids:
                logger.debug("No tokens need refreshing")
                return result

            logger.info("Found %d token(s) to refresh", len(connection_ids))
            semaphore = asyncio.Semaphore(self._concurrency)

            async def _refresh_one(connection_id) -> Tuple[bool, Optional[str]]:
                """(refreshed, error) for one connection."""
                async with semaphore:
                    try:
                        return await self._manager.refresh_if_expiring(connection_id, self._lookahead), None
                    except ConnectorError as exc:
                        logger.warning("Failed to refresh token for connection %s: %s", connection_id, exc)
                        return False, str(exc)
                    except Exception as exc:
                        logger.exception("Unexpected error refreshing connection %s", connection_id)
                        return False, str(exc)

            outcomes = await asyncio.gather(*(_refresh_one(cid) for cid in connection_ids))
            for connection_id, (refreshed, error) in zip(connection_ids, outcomes):
                if error is not None:
                    result.failed += 1
                    result.failures[str(connection_id)] = error
                elif refreshed:
                    result.successful += 1
                else:
                    result.skipped += 1

            logger.info(
                "Token refresh complete: %d successful, %d skipped, %d failed",
                result.successful, result.skipped, result.failed,
            )
            return result

    # ── Reporting ───────────────────────────────────────────────────────

    async def get_token_health_status(self) -> TokenHealthStatus:
        """Counts over connections that currently hold an access token."""
        now = self._clock()
        has_token = PlatformConnection.access_token.is_not(None)
        active = PlatformConnection.status == ConnectionStatus.ACTIVE.value
        async with self._session_factory() as session:
            async def _count(*criteria) -> int:
                stmt = select(func.count()).select_from(PlatformConnection).where(*criteria)
                return (await session.execute(stmt)).scalar_one()

            total = await _count(has_token)
            active_count = await _count(active, has_token)
            expiring_soon = await _count(
                active,
                PlatformConnection.token_expires_at > now,
                PlatformConnection.token_expires_at <= now + _HEALTH_HORIZON,
            )
            expired = await _count(active, PlatformConnection.token_expires_at <= now)

        return TokenHealthStatus(
            total=total,
            active=active_count,
            expiring_soon=expiring_soon,
            expired=expired,
            needing_refresh=expiring_soon + expired,
        )

    def get_scheduler_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._task.is_running,
            interval_ms=self._interval_ms,
            interval_minutes=self._interval_ms / 60000,
        )
