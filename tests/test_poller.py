"""
Tests for PollingScheduler and PeriodicLoop.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from algofleet.core.errors import NotFoundError, TransientNetworkError
from algofleet.core.models import TargetKind
from algofleet.execution.instance_manager import InstanceManager, InstanceManagerConfig
from algofleet.execution.market_data import QuoteRefreshResult
from algofleet.execution.order_sync import OrderStatusSync
from algofleet.monitoring.metrics_rich import FleetMetrics
from algofleet.orchestrator.poller import PeriodicLoop, PollerConfig, PollingScheduler


def fail_for(instance_id, value, exc=None):
    """Side effect that raises for one instance and returns `value` for the rest."""
    async def _side_effect(instance, *args, **kwargs):
        if instance.id == instance_id:
            raise exc or TransientNetworkError("Request timeout after 15.0s")
        return value
    return _side_effect


@pytest.fixture
def storage(storage_factory, instance_row):
    return storage_factory([
        instance_row(1),
        instance_row(2),
        instance_row(3),
        instance_row(4, active=False),
    ])


@pytest.fixture
def quotes():
    q = MagicMock()
    q.refresh = AsyncMock(side_effect=lambda wid: QuoteRefreshResult(watchlist_id=wid, upserted=2))
    return q


@pytest.fixture
def metrics():
    return FleetMetrics()


@pytest.fixture
def scheduler(gateway, storage, quotes, metrics, events):
    manager = InstanceManager(
        gateway, storage, config=InstanceManagerConfig(log_event_callback=events.record)
    )
    order_sync = OrderStatusSync(gateway, storage, log_event_callback=events.record)
    config = PollerConfig(
        instance_interval_sec=3600,
        health_interval_sec=3600,
        market_data_interval_sec=3600,
        log_event_callback=events.record,
    )
    return PollingScheduler(manager, order_sync, quotes, metrics=metrics, config=config)


class TestInstancePolling:
    """Fan-out over active instances."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, scheduler, gateway, storage, events):
        gateway.get_funds.side_effect = fail_for(2, {"availablecash": "2500", "m2mrealized": "40"})

        cycle = await scheduler.poll_all_instances()

        assert cycle.attempted == 3
        assert cycle.succeeded == 2
        assert cycle.failed == 1
        assert (await storage.get("instances", 1))["realized_pnl"] == pytest.approx(40.0)
        assert (await storage.get("instances", 3))["current_balance"] == pytest.approx(2500.0)
        assert (await storage.get("instances", 2))["realized_pnl"] == 0.0
        failed = events.named("instance_poll_failed")
        assert [e["instance_id"] for e in failed] == [2]

    @pytest.mark.asyncio
    async def test_inactive_instances_not_polled(self, scheduler, gateway):
        await scheduler.poll_all_instances()
        polled = {c.args[0].id for c in gateway.get_funds.await_args_list}
        assert polled == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_poll_instance_skips_inactive(self, scheduler, gateway):
        result = await scheduler.poll_instance(4)
        assert result.skipped
        assert result.reason == "inactive"
        gateway.get_funds.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_target_hit_reported(self, scheduler, gateway, metrics, events):
        gateway.get_funds.return_value = {"availablecash": "100", "m2mrealized": "6000"}

        result = await scheduler.poll_instance(1)

        assert result.target.hit
        assert result.target.kind is TargetKind.PROFIT
        hits = events.named("target_hit")
        assert hits[0]["instance_id"] == 1
        assert hits[0]["kind"] == "profit"
        assert metrics.get_registry().get_sample_value(
            "targets_hit_total", {"instance": "1", "kind": "profit"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_cycle_metrics(self, scheduler, metrics):
        await scheduler.poll_all_instances()

        registry = metrics.get_registry()
        assert registry.get_sample_value("poll_cycles_total", {"loop": "instances"}) == 1.0
        assert registry.get_sample_value(
            "poll_instances_total", {"loop": "instances", "outcome": "ok"}
        ) == 3.0


class TestManualRefresh:

    @pytest.mark.asyncio
    async def test_includes_health_check(self, scheduler, gateway, storage):
        result = await scheduler.refresh_instance(1)

        assert result.instance.health_status.value == "healthy"
        gateway.ping.assert_awaited_once()
        assert (await storage.get("instances", 1))["health_status"] == "healthy"

    @pytest.mark.asyncio
    async def test_errors_propagate(self, scheduler, gateway):
        gateway.get_trade_book.side_effect = TransientNetworkError("HTTP 503", status_code=503)

        with pytest.raises(TransientNetworkError):
            await scheduler.refresh_instance(1)

    @pytest.mark.asyncio
    async def test_unknown_instance(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.refresh_instance(99)


class TestHealthPolling:

    @pytest.mark.asyncio
    async def test_ping_failure_isolated(self, scheduler, gateway, storage):
        gateway.ping.side_effect = fail_for(2, {"message": "pong"})

        cycle = await scheduler.poll_health_checks()

        assert cycle.attempted == 4
        assert cycle.succeeded == 4
        assert cycle.details == {"healthy": 3, "unhealthy": 1}
        assert (await storage.get("instances", 2))["health_status"] == "unhealthy"
        assert (await storage.get("instances", 4))["health_status"] == "healthy"

    @pytest.mark.asyncio
    async def test_raising_check_counted_as_failed(self, scheduler, events):
        original = scheduler.manager.health_check

        async def flaky(instance):
            if instance.id == 3:
                raise RuntimeError("storage unavailable")
            return await original(instance)

        scheduler.manager.health_check = AsyncMock(side_effect=flaky)

        cycle = await scheduler.poll_health_checks()

        assert cycle.failed == 1
        assert cycle.succeeded == 3
        assert events.named("health_poll_instance_failed")[0]["instance_id"] == 3


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler, gateway):
        assert await scheduler.start() is True
        assert scheduler.is_polling
        # initial pass ran for instances and health
        assert gateway.get_funds.await_count == 3
        assert gateway.ping.await_count == 4

        assert await scheduler.start() is False
        assert gateway.get_funds.await_count == 3

        scheduler.stop()
        scheduler.stop()
        assert not scheduler.is_polling
        await scheduler.drain(timeout=1.0)

    @pytest.mark.asyncio
    async def test_market_data_switching(self, scheduler, quotes):
        assert await scheduler.start_market_data(1) is True
        assert await scheduler.start_market_data(1) is False
        assert quotes.refresh.await_count == 1

        assert await scheduler.start_market_data(2) is True
        assert scheduler.active_watchlist_id == 2
        assert scheduler.is_market_data_polling

        assert scheduler.stop_market_data() is True
        assert scheduler.stop_market_data() is False
        assert scheduler.active_watchlist_id is None
        await scheduler.drain(timeout=1.0)

    @pytest.mark.asyncio
    async def test_market_data_stopped_during_initial_poll(self, scheduler, quotes, events):
        async def stop_midway(wid):
            scheduler.stop_market_data()
            return QuoteRefreshResult(watchlist_id=wid)

        quotes.refresh.side_effect = stop_midway

        assert await scheduler.start_market_data(3) is False
        assert not scheduler.is_market_data_polling
        assert scheduler.active_watchlist_id is None
        assert events.named("market_data_started") == []
        await scheduler.drain(timeout=1.0)

    @pytest.mark.asyncio
    async def test_market_data_poll_never_raises(self, scheduler, quotes, events):
        quotes.refresh.side_effect = RuntimeError("boom")

        assert await scheduler.poll_market_data(5) is None
        assert scheduler.last_cycles["market_data"].failed == 1
        assert events.named("market_data_poll_failed")[0]["watchlist_id"] == 5

    @pytest.mark.asyncio
    async def test_status_snapshot(self, scheduler):
        await scheduler.poll_health_checks()

        status = scheduler.status()

        assert status["is_polling"] is False
        assert status["active_watchlist_id"] is None
        assert status["intervals"] == {"instance_sec": 3600, "health_sec": 3600, "market_data_sec": 3600}
        assert status["last_cycles"]["health"]["details"]["healthy"] == 4


class TestPeriodicLoop:

    @pytest.mark.asyncio
    async def test_tick_error_does_not_stop_loop(self, events):
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")

        loop = PeriodicLoop("test", 0.01, tick, events.record)
        assert loop.start() is True
        assert loop.start() is False

        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)

        assert loop.stop() is True
        await loop.join(timeout=1.0)
        assert loop.stop() is False
        assert len(calls) >= 3
        assert events.named("loop_tick_error")[0]["loop"] == "test"

    @pytest.mark.asyncio
    async def test_stop_before_first_tick(self):
        tick = AsyncMock()
        loop = PeriodicLoop("idle", 3600, tick)

        loop.start()
        loop.stop()
        await loop.join(timeout=1.0)

        tick.assert_not_awaited()
