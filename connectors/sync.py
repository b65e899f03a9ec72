"""
Sync operations — bookkeeping for resource synchronisation runs and the
triggers that start them.

At most one operation per (connection, resource) is pending or processing
at any time.  ``SyncOperationService.start`` enforces this with an
in-process lock and the partial unique index on ``sync_operations``; a
losing concurrent insert is reported as coalesced rather than as an error.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.clock import Clock, utcnow
from connectors.exceptions import SyncTriggerError
from connectors.schemas import SyncCounters
from database.helpers import to_uuid
from database.models import (
    IN_FLIGHT_SYNC_STATUSES,
    PlatformConnection,
    SyncOperation,
    SyncOperationType,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class SyncOperationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, clock: Clock = utcnow):
        self._session_factory = session_factory
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

    async def _in_flight(
        self, session: AsyncSession, connection_id: uuid.UUID, resource_id: str
    ) -> Optional[SyncOperation]:
        result = await session.execute(
            select(SyncOperation)
            .where(
                SyncOperation.connection_id == connection_id,
                SyncOperation.resource_id == resource_id,
                SyncOperation.status.in_(IN_FLIGHT_SYNC_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start(
        self,
        connection_id: str | uuid.UUID,
        resource_id: str,
        operation_type: SyncOperationType = SyncOperationType.WEBHOOK,
    ) -> Tuple[SyncOperation, bool]:
        """
        Create a pending operation unless one is already in flight.

        Returns ``(operation, created)``; ``created`` is False when the
        existing in-flight operation is returned instead.
        """
        cid = to_uuid(connection_id)
        async with self._lock_for(cid, resource_id):
            async with self._session_factory() as session:
                existing = await self._in_flight(session, cid, resource_id)
                if existing is not None:
                    return existing, False

                now = self._clock()
                op = SyncOperation(
                    id=uuid.uuid4(),
                    connection_id=cid,
                    resource_id=resource_id,
                    operation_type=SyncOperationType(operation_type).value,
                    status=SyncStatus.PENDING.value,
                    started_at=now,
                    created_at=now,
                )
                session.add(op)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another process won the race on the partial unique index.
                    await session.rollback()
                    existing = await self._in_flight(session, cid, resource_id)
                    if existing is None:
                        raise
                    return existing, False

        logger.info(
            "Created %s sync operation %s for connection %s resource %s",
            op.operation_type, op.id, cid, resource_id,
        )
        return op, True

    async def get(self, operation_id: str | uuid.UUID) -> Optional[SyncOperation]:
        async with self._session_factory() as session:
            return await session.get(SyncOperation, to_uuid(operation_id))

    async def list_for_connection(
        self, connection_id: str | uuid.UUID, *, limit: int = 50
    ) -> List[SyncOperation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncOperation)
                .where(SyncOperation.connection_id == to_uuid(connection_id))
                .order_by(SyncOperation.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_processing(self, operation_id: str | uuid.UUID) -> bool:
        """pending -> processing.  False when the operation was not pending."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncOperation)
                .where(
                    SyncOperation.id == to_uuid(operation_id),
                    SyncOperation.status == SyncStatus.PENDING.value,
                )
                .values(status=SyncStatus.PROCESSING.value, started_at=self._clock())
            )
            await session.commit()
        return result.rowcount == 1

    async def claim_pending(self, limit: int = 10) -> List[SyncOperation]:
        """Hand pending operations to an external worker, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncOperation.id)
                .where(SyncOperation.status == SyncStatus.PENDING.value)
                .order_by(SyncOperation.created_at)
                .limit(limit)
            )
            candidates = list(result.scalars().all())

        claimed = []
        for operation_id in candidates:
            if await self.mark_processing(operation_id):
                claimed.append(operation_id)
        if not claimed:
            return []
        async with self._session_factory() as session:
            result = await session.execute(select(SyncOperation).where(SyncOperation.id.in_(claimed)))
            return list(result.scalars().all())

    async def record_progress(self, operation_id: str | uuid.UUID, counters: SyncCounters) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncOperation)
                .where(SyncOperation.id == to_uuid(operation_id))
                .values(**counters.model_dump())
            )
            await session.commit()

    async def complete(
        self,
        operation_id: str | uuid.UUID,
        counters: Optional[SyncCounters] = None,
    ) -> Optional[SyncOperation]:
        """Mark the operation completed and bump the connection's sync stats."""
        counters = counters or SyncCounters()
        now = self._clock()
        async with self._session_factory() as session:
            op = await session.get(SyncOperation, to_uuid(operation_id))
            if op is None:
                return None
            op.status = SyncStatus.COMPLETED.value
            op.completed_at = now
            op.records_processed = counters.records_processed
            op.records_created = counters.records_created
            op.records_skipped = counters.records_skipped
            op.error_count = counters.error_count
            await session.execute(
                update(PlatformConnection)
                .where(PlatformConnection.id == op.connection_id)
                .values(
                    sync_count=PlatformConnection.sync_count + 1,
                    last_sync_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        logger.info(
            "Sync operation %s completed: %d processed, %d created, %d skipped",
            op.id, counters.records_processed, counters.records_created, counters.records_skipped,
        )
        return op

    async def fail(self, operation_id: str | uuid.UUID, error: str) -> Optional[SyncOperation]:
        now = self._clock()
        async with self._session_factory() as session:
            op = await session.get(SyncOperation, to_uuid(operation_id))
            if op is None:
                return None
            op.status = SyncStatus.FAILED.value
            op.completed_at = now
            op.error_count = (op.error_count or 0) + 1
            op.error_details = {"error": error, "failed_at": now.isoformat()}
            await session.commit()
        logger.warning("Sync operation %s failed: %s", op.id, error)
        return op


# ═══════════════════════════════════════════════════════════════════════════════
# Triggers
# ═══════════════════════════════════════════════════════════════════════════════


class SyncTrigger(ABC):
    """Starts the work for a freshly created pending SyncOperation."""

    @abstractmethod
    async def trigger(self, operation: SyncOperation) -> None:
        """Raise SyncTriggerError when the operation cannot be started."""
        ...

    async def aclose(self) -> None:
        return None


class QueueSyncTrigger(SyncTrigger):
    """
    Leaves the operation pending for an external worker that polls
    ``SyncOperationService.claim_pending``.
    """

    async def trigger(self, operation: SyncOperation) -> None:
        logger.info(
            "Queued sync operation %s for connection %s resource %s",
            operation.id, operation.connection_id, operation.resource_id,
        )


SyncRunner = Callable[[SyncOperation], Awaitable[Optional[SyncCounters]]]


class BackgroundSyncTrigger(SyncTrigger):
    """Runs ``runner`` in a background task and records the outcome."""

    def __init__(self, service: SyncOperationService, runner: SyncRunner):
        self._service = service
        self._runner = runner
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    async def trigger(self, operation: SyncOperation) -> None:
        if self._closed:
            raise SyncTriggerError("Sync trigger is shut down")
        task = asyncio.create_task(self._run(operation), name=f"sync-{operation.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, operation: SyncOperation) -> None:
        if not await self._service.mark_processing(operation.id):
            logger.info("Sync operation %s no longer pending, skipping", operation.id)
            return
        try:
            counters = await self._runner(operation)
        except Exception as exc:
            logger.exception("Sync runner failed for operation %s", operation.id)
            await self._service.fail(operation.id, str(exc))
            return
        await self._service.complete(operation.id, counters)

    async def aclose(self) -> None:
        """Stop accepting work and wait for running syncs."""
        self._closed = True
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
