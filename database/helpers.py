"""
Database helper functions shared by the connector managers.
"""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import PlatformConnection, SyncedResource


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


async def load_connection(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
) -> Optional[PlatformConnection]:
    return await session.get(PlatformConnection, to_uuid(connection_id))


async def load_resource(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    resource_id: str,
) -> Optional[SyncedResource]:
    result = await session.execute(
        select(SyncedResource).where(
            SyncedResource.connection_id == to_uuid(connection_id),
            SyncedResource.resource_id == resource_id,
        )
    )
    return result.scalar_one_or_none()
