"""
Shared fixtures: SQLite-backed database, controllable clock, fake provider
and a fully wired ConnectorServices.

The ORM models use Postgres types, so JSONB columns are swapped for JSON and
timezone-aware DateTime columns for a decorator that hands back UTC-aware
values from SQLite.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from config.settings import Settings
from connectors.http import build_provider_client
from connectors.schemas import TokenResponse
from connectors.services import ConnectorServices
from database.models import Base, PlatformType
from database.session import create_tables
from tests.fakes import FakeClock, FakeProvider


def _patch_columns_for_sqlite() -> None:
    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_bind_param(self, value, dialect):
            if value is not None and value.tzinfo is not None:
                return value.astimezone(timezone.utc).replace(tzinfo=None)
            return value

        def process_result_value(self, value, dialect):
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


@pytest.fixture
def provider(clock) -> FakeProvider:
    fake = FakeProvider()
    # Channels granted by the fake live for 24h from the test's "now".
    fake.watch_expiration_ms = int((clock.now + timedelta(hours=24)).timestamp() * 1000)
    return fake


# ---------------------------------------------------------------------------
# Database & services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'connectors.db'}")
    await create_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret="test-jwt-secret",
        token_encryption_key=Fernet.generate_key().decode(),
        oauth_redirect_base="https://app.example.com",
        google_client_id="google-client",
        google_client_secret="google-secret",
        youcan_client_id="youcan-client",
        youcan_client_secret="youcan-secret",
        shopify_client_id="shopify-client",
        shopify_client_secret="shopify-secret",
        webhook_secret="s",
        default_max_retries=2,
    )


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest_asyncio.fixture
async def services(settings, session_factory, provider, clock, sleeps):
    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    http_client = build_provider_client(transport=provider.transport)
    svc = ConnectorServices(
        settings,
        session_factory,
        http_client=http_client,
        clock=clock,
        sleep=_fake_sleep,
    )
    yield svc
    await svc.aclose()
    await http_client.aclose()


@pytest.fixture
def make_connection(services):
    """Store a Google Sheets connection directly, bypassing the handshake."""

    async def _make(
        *,
        access_token: str = "at-0",
        refresh_token: Optional[str] = "rt-0",
        expires_in: Optional[int] = 3600,
        platform_type: PlatformType = PlatformType.GOOGLE_SHEETS,
        user_id: str = "user-1",
        tenant_id: str = "tenant-1",
        platform_data: Optional[dict] = None,
    ):
        return await services.connections.store_connection(
            user_id,
            tenant_id,
            platform_type,
            "Google Sheets - owner@example.com",
            TokenResponse(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in),
            ["https://www.googleapis.com/auth/spreadsheets"],
            platform_data or {},
        )

    return _make
