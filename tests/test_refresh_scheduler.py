"""
Tests for TokenRefreshScheduler and the PeriodicTask lifecycle it runs on.
"""

import asyncio

import httpx
import pytest
from sqlalchemy import update

from connectors.periodic import PeriodicTask
from database.models import ConnectionStatus, PlatformConnection
from tests.fakes import GOOGLE_TOKEN_URL, form_of


async def _set_status(services, connection_id, status):
    async with services.session_factory() as session:
        await session.execute(
            update(PlatformConnection)
            .where(PlatformConnection.id == connection_id)
            .values(status=status.value)
        )
        await session.commit()


class TestSweep:
    @pytest.mark.asyncio
    async def test_refreshes_only_due_connections(self, services, provider, make_connection):
        due = await make_connection(expires_in=10 * 60)
        await make_connection(expires_in=2 * 3600)
        await make_connection(expires_in=5 * 60, refresh_token=None)
        errored = await make_connection(expires_in=60)
        await _set_status(services, errored, ConnectionStatus.ERROR)

        result = await services.refresh_scheduler.check_and_refresh_tokens()

        assert result.total == 1
        assert result.successful == 1
        assert result.failed == 0
        assert provider.refresh_count == 1
        assert await services.connections.get_access_token(due) == "at-1"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, services, provider, make_connection):
        good = await make_connection(expires_in=60, refresh_token="rt-good")
        bad = await make_connection(expires_in=60, refresh_token="rt-bad")

        def _token(request):
            if form_of(request)["refresh_token"] == "rt-bad":
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "at-good", "expires_in": 3600})

        provider.route("POST", GOOGLE_TOKEN_URL, _token)

        result = await services.refresh_scheduler.check_and_refresh_tokens()

        assert result.total == 2
        assert result.successful == 1
        assert result.failed == 1
        assert str(bad) in result.failures
        assert (await services.connections.get_connection(good)).status == ConnectionStatus.ACTIVE.value
        assert (await services.connections.get_connection(bad)).status == ConnectionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_connection_refreshed_on_demand_is_skipped(
        self, services, provider, make_connection, monkeypatch
    ):
        raced = await make_connection(expires_in=60)
        await make_connection(expires_in=60, refresh_token="rt-other")
        scheduler = services.refresh_scheduler
        list_due = scheduler._due_connection_ids

        async def _due_then_refreshed_elsewhere():
            ids = await list_due()
            await services.connections.refresh_access_token(raced)
            return ids

        monkeypatch.setattr(scheduler, "_due_connection_ids", _due_then_refreshed_elsewhere)

        result = await scheduler.check_and_refresh_tokens()

        assert result.total == 2
        assert result.successful == 1
        assert result.skipped == 1
        assert result.failed == 0
        assert provider.refresh_count == 2

    @pytest.mark.asyncio
    async def test_empty_sweep(self, services, provider, make_connection):
        await make_connection(expires_in=3600)
        result = await services.refresh_scheduler.trigger_now()
        assert result.total == 0
        assert provider.requests == []


class TestHealth:
    @pytest.mark.asyncio
    async def test_token_health_counts(self, services, make_connection, clock):
        await make_connection(expires_in=30 * 60)          # expiring soon
        await make_connection(expires_in=3 * 3600)         # healthy
        await make_connection(expires_in=10)               # expires before the clock moves
        revoked = await make_connection(expires_in=3600)
        await services.connections.revoke_connection(revoked)
        clock.advance(seconds=20)

        health = await services.refresh_scheduler.get_token_health_status()

        assert health.total == 3
        assert health.active == 3
        assert health.expiring_soon == 1
        assert health.expired == 1
        assert health.needing_refresh == 2

    @pytest.mark.asyncio
    async def test_scheduler_status(self, services):
        status = services.refresh_scheduler.get_scheduler_status()
        assert status.is_running is False
        assert status.interval_ms == 300000
        assert status.interval_minutes == 5


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_is_idempotent(self, services, provider, make_connection):
        await make_connection(expires_in=60)
        scheduler = services.refresh_scheduler

        scheduler.start()
        scheduler.start()
        assert scheduler.get_scheduler_status().is_running is True

        for _ in range(100):
            if provider.refresh_count:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()
        await scheduler.stop()
        assert provider.refresh_count == 1
        assert scheduler.get_scheduler_status().is_running is False

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_loop_alive(self):
        calls = []

        async def _tick():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("test-task", 0.01, _tick, grace_seconds=1)
        task.start()
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        assert task.is_running
        await task.stop()
        assert len(calls) >= 3

    @pytest.mark.asyncio
    async def test_stop_cancels_hung_tick_after_grace(self):
        started = asyncio.Event()

        async def _hang():
            started.set()
            await asyncio.sleep(60)

        task = PeriodicTask("hung-task", 60, _hang, grace_seconds=0.05, run_immediately=True)
        task.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.wait_for(task.stop(), timeout=1)
        assert task.is_running is False
