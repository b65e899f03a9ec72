"""
AuthorizationStateStore — short-lived, single-use OAuth ``state`` records.

A state row is written when the authorization URL is generated and deleted
when it is redeemed at callback time, whether the redemption succeeds or
not.  Redemption is a conditional DELETE: of two concurrent callbacks with
the same state only the one whose DELETE hits the row wins.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.clock import Clock, utcnow
from connectors.schemas import AuthorizationStateData
from database.models import OAuthState, PlatformType

logger = logging.getLogger(__name__)


def _to_data(row: OAuthState) -> AuthorizationStateData:
    return AuthorizationStateData(
        state=row.state,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        platform_type=PlatformType(row.platform_type),
        code_verifier=row.code_verifier,
        platform_data=dict(row.platform_data or {}),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


class AuthorizationStateStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 600,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def save(
        self,
        state: str,
        *,
        user_id: str,
        tenant_id: str,
        platform_type: PlatformType,
        code_verifier: Optional[str],
        platform_data: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationStateData:
        now = self._clock()
        row = OAuthState(
            state=state,
            user_id=user_id,
            tenant_id=tenant_id,
            platform_type=PlatformType(platform_type).value,
            code_verifier=code_verifier,
            platform_data=platform_data or {},
            created_at=now,
            expires_at=now + self._ttl,
        )
        async with self._session_factory() as session:
            # Opportunistic housekeeping of abandoned handshakes.
            await session.execute(delete(OAuthState).where(OAuthState.expires_at <= now))
            session.add(row)
            await session.commit()
        return _to_data(row)

    async def peek(self, state: str) -> Optional[AuthorizationStateData]:
        """Read a live state without redeeming it."""
        async with self._session_factory() as session:
            row = await session.get(OAuthState, state)
            if row is None or row.expires_at <= self._clock():
                return None
            return _to_data(row)

    async def consume(self, state: str) -> Optional[AuthorizationStateData]:
        """
        Redeem a state exactly once.

        Returns None when the state is unknown, already redeemed or past
        its TTL; expired rows are deleted on the way out.
        """
        async with self._session_factory() as session:
            result = await session.execute(select(OAuthState).where(OAuthState.state == state))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            data = _to_data(row)
            deleted = await session.execute(delete(OAuthState).where(OAuthState.state == state))
            await session.commit()

        if deleted.rowcount != 1:
            logger.warning("OAuth state redeemed concurrently, rejecting replay")
            return None
        if data.expires_at <= self._clock():
            logger.info("OAuth state expired (created %s)", data.created_at.isoformat())
            return None
        return data

    async def discard(self, state: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(OAuthState).where(OAuthState.state == state))
            await session.commit()
