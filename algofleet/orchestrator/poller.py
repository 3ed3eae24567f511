"""
PollingScheduler: periodic fan-out of health, P&L and order-sync work across
every managed instance, plus an on-demand market data loop for one watchlist.

Loops:
    instance     (15s)  active instances: P&L refresh, order sync, target check
    health       (5min) all instances, including inactive ones
    market_data  (5s)   one watchlist at a time, only while started

Each tick spawns one task per instance and joins them all; a failing
instance is counted and logged, never allowed to stop the tick or the loop.
stop() only prevents future ticks; calls already in flight run to completion.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from algofleet.core.models import HealthStatus, Instance
from algofleet.execution.instance_manager import InstanceManager
from algofleet.execution.market_data import QuoteRefresher, QuoteRefreshResult
from algofleet.execution.order_sync import OrderStatusSync, OrderSyncResult
from algofleet.execution.pnl import TargetCheck, check_targets
from algofleet.utils import utc_iso

if TYPE_CHECKING:
    from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")


@dataclass
class PollerConfig:
    """Configuration for PollingScheduler."""
    instance_interval_sec: float = 15.0
    health_interval_sec: float = 300.0
    market_data_interval_sec: float = 5.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class PollCycleResult:
    """Result of one scheduler tick. Kept in memory for status reporting only."""
    loop: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    started_at: Optional[str] = None
    # Loop-specific counters, e.g. healthy/unhealthy for the health loop
    details: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InstancePollResult:
    """Result of polling or manually refreshing one instance."""
    instance: Instance
    skipped: bool = False
    reason: Optional[str] = None
    orders: Optional[OrderSyncResult] = None
    target: Optional[TargetCheck] = None


class PeriodicLoop:
    """
    Interval loop backed by a single asyncio task.

    start() while running and stop() while stopped are no-ops. A tick that
    raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        tick: Callable[[], Awaitable[Any]],
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self._tick = tick
        self._log_event = log_event or (lambda *a, **kw: None)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_event.is_set()

    def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=f"fleet-{self.name}")
        return True

    def stop(self) -> bool:
        if not self.is_running:
            return False
        self._stop_event.set()
        return True

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for a stopped loop's in-flight tick to finish."""
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_sec)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._tick()
            except Exception as exc:
                self._log_event("loop_tick_error", level=logging.ERROR, loop=self.name, error=str(exc))


class PollingScheduler:
    """
    Usage:
        scheduler = PollingScheduler(manager, order_sync, quotes, metrics=metrics)
        await scheduler.start()
        await scheduler.start_market_data(watchlist_id=1)
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        manager: InstanceManager,
        order_sync: OrderStatusSync,
        quotes: QuoteRefresher,
        metrics: Optional["FleetMetrics"] = None,
        config: Optional[PollerConfig] = None,
    ) -> None:
        self.manager = manager
        self.order_sync = order_sync
        self.quotes = quotes
        self.metrics = metrics
        self.config = config or PollerConfig()
        self._log_event = self.config.log_event_callback or self._default_log

        self._instance_loop = PeriodicLoop(
            "instances", self.config.instance_interval_sec, self.poll_all_instances, self._log_event
        )
        self._health_loop = PeriodicLoop(
            "health", self.config.health_interval_sec, self.poll_health_checks, self._log_event
        )
        self._market_loop: Optional[PeriodicLoop] = None
        self.active_watchlist_id: Optional[int] = None
        self.last_cycles: Dict[str, PollCycleResult] = {}
        self.last_market_data: Optional[QuoteRefreshResult] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    @property
    def is_polling(self) -> bool:
        return self._instance_loop.is_running

    @property
    def is_market_data_polling(self) -> bool:
        return self._market_loop is not None and self._market_loop.is_running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Arm the instance and health loops and run one initial pass of each."""
        if self.is_polling:
            self._log_event("poller_already_running", level=logging.WARNING)
            return False

        self._instance_loop.start()
        self._health_loop.start()

        await self.poll_all_instances()
        await self.poll_health_checks()

        self._log_event(
            "poller_started",
            instance_interval_sec=self.config.instance_interval_sec,
            health_interval_sec=self.config.health_interval_sec,
            market_data_interval_sec=self.config.market_data_interval_sec,
        )
        return True

    def stop(self) -> None:
        stopped = self._instance_loop.stop()
        stopped = self._health_loop.stop() or stopped
        stopped = self.stop_market_data() or stopped
        if stopped:
            self._log_event("poller_stopped")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight ticks of stopped loops."""
        loops = [self._instance_loop, self._health_loop]
        if self._market_loop is not None:
            loops.append(self._market_loop)
        await asyncio.gather(*(loop.join(timeout) for loop in loops))

    # ------------------------------------------------------------------
    # Instance loop
    # ------------------------------------------------------------------

    async def poll_all_instances(self) -> PollCycleResult:
        cycle = PollCycleResult(loop="instances", started_at=utc_iso())
        start = time.perf_counter()
        try:
            instances = await self.manager.list_instances(active=True)
        except Exception as exc:
            self._log_event("instance_poll_list_failed", level=logging.ERROR, error=str(exc))
            return self._finish(cycle, start)

        cycle.attempted = len(instances)
        if instances:
            outcomes = await asyncio.gather(
                *(self.poll_instance(i.id) for i in instances),
                return_exceptions=True,
            )
            for instance, outcome in zip(instances, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    cycle.failed += 1
                    self._log_event(
                        "instance_poll_failed",
                        level=logging.WARNING,
                        instance_id=instance.id,
                        error=str(outcome),
                    )
                elif outcome.skipped:
                    cycle.details["skipped"] = cycle.details.get("skipped", 0) + 1
                else:
                    cycle.succeeded += 1
                    if outcome.target is not None and outcome.target.hit:
                        cycle.details["targets_hit"] = cycle.details.get("targets_hit", 0) + 1

        return self._finish(cycle, start)

    async def poll_instance(self, instance_id: int) -> InstancePollResult:
        """P&L refresh, order sync and target check for one instance. Raises on failure."""
        instance = await self.manager.get_instance(instance_id)
        if not instance.active:
            return InstancePollResult(instance=instance, skipped=True, reason="inactive")
        return await self._run_instance(instance, include_health=False)

    async def refresh_instance(self, instance_id: int) -> InstancePollResult:
        """Manual refresh: the scheduled poll steps plus a health check, bypassing the interval."""
        instance = await self.manager.get_instance(instance_id)
        self._log_event("manual_refresh", instance_id=instance_id)
        start = time.perf_counter()
        result = await self._run_instance(instance, include_health=True)
        self._log_event(
            "manual_refresh_completed",
            instance_id=instance_id,
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return result

    async def _run_instance(self, instance: Instance, include_health: bool) -> InstancePollResult:
        updated = await self.manager.refresh_pnl(instance)
        if include_health:
            updated = await self.manager.health_check(updated)
        orders = await self.order_sync.sync_order_status(updated)

        target = check_targets(updated, updated.total_pnl)
        if target.hit:
            self._log_event(
                "target_hit",
                level=logging.WARNING,
                instance_id=updated.id,
                kind=target.kind.value,
                threshold=target.threshold,
                current=target.current,
                action=target.action,
            )
            if self.metrics:
                self.metrics.targets_hit.labels(instance=str(updated.id), kind=target.kind.value).inc()

        return InstancePollResult(instance=updated, orders=orders, target=target)

    # ------------------------------------------------------------------
    # Health loop
    # ------------------------------------------------------------------

    async def poll_health_checks(self) -> PollCycleResult:
        cycle = PollCycleResult(loop="health", started_at=utc_iso())
        start = time.perf_counter()
        try:
            instances = await self.manager.list_instances()
        except Exception as exc:
            self._log_event("health_poll_list_failed", level=logging.ERROR, error=str(exc))
            return self._finish(cycle, start)

        cycle.attempted = len(instances)
        cycle.details = {"healthy": 0, "unhealthy": 0}
        outcomes = await asyncio.gather(
            *(self.manager.health_check(i) for i in instances),
            return_exceptions=True,
        )
        for instance, outcome in zip(instances, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                cycle.failed += 1
                self._log_event(
                    "health_poll_instance_failed",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    error=str(outcome),
                )
                continue
            cycle.succeeded += 1
            if outcome.health_status is HealthStatus.HEALTHY:
                cycle.details["healthy"] += 1
            else:
                cycle.details["unhealthy"] += 1

        return self._finish(cycle, start)

    # ------------------------------------------------------------------
    # Market data loop
    # ------------------------------------------------------------------

    async def start_market_data(self, watchlist_id: int) -> bool:
        """
        Start quote polling for one watchlist.

        No-op when already polling the same watchlist; a different watchlist
        replaces the current one.
        """
        if self.is_market_data_polling:
            if self.active_watchlist_id == watchlist_id:
                return False
            self.stop_market_data()

        self.active_watchlist_id = watchlist_id
        loop = PeriodicLoop(
            "market_data",
            self.config.market_data_interval_sec,
            lambda: self.poll_market_data(watchlist_id),
            self._log_event,
        )
        self._market_loop = loop
        loop.start()

        await self.poll_market_data(watchlist_id)
        # Stopped or replaced while the initial poll was in flight
        if self._market_loop is not loop or not loop.is_running:
            return False
        self._log_event(
            "market_data_started",
            watchlist_id=watchlist_id,
            interval_sec=self.config.market_data_interval_sec,
        )
        return True

    def stop_market_data(self) -> bool:
        if not self.is_market_data_polling:
            return False
        self._market_loop.stop()
        self._log_event("market_data_stopped", watchlist_id=self.active_watchlist_id)
        self.active_watchlist_id = None
        return True

    async def poll_market_data(self, watchlist_id: int) -> Optional[QuoteRefreshResult]:
        start = time.perf_counter()
        cycle = PollCycleResult(loop="market_data", started_at=utc_iso(), attempted=1)
        try:
            result = await self.quotes.refresh(watchlist_id)
        except Exception as exc:
            cycle.failed = 1
            self._log_event("market_data_poll_failed", level=logging.ERROR, watchlist_id=watchlist_id, error=str(exc))
            self._finish(cycle, start)
            return None
        cycle.succeeded = 1
        cycle.details = {"upserted": result.upserted, "failed_exchanges": len(result.failed_exchanges)}
        self.last_market_data = result
        self._finish(cycle, start)
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "is_polling": self.is_polling,
            "is_health_polling": self._health_loop.is_running,
            "is_market_data_polling": self.is_market_data_polling,
            "active_watchlist_id": self.active_watchlist_id,
            "intervals": {
                "instance_sec": self.config.instance_interval_sec,
                "health_sec": self.config.health_interval_sec,
                "market_data_sec": self.config.market_data_interval_sec,
            },
            "last_cycles": {name: cycle.to_dict() for name, cycle in self.last_cycles.items()},
        }

    def _finish(self, cycle: PollCycleResult, start: float) -> PollCycleResult:
        cycle.duration_ms = (time.perf_counter() - start) * 1000
        self.last_cycles[cycle.loop] = cycle

        level = logging.INFO if cycle.loop != "market_data" else logging.DEBUG
        self._log_event(
            f"{cycle.loop}_poll_completed",
            level=level,
            total=cycle.attempted,
            successful=cycle.succeeded,
            failed=cycle.failed,
            duration_ms=round(cycle.duration_ms, 1),
            **cycle.details,
        )
        if self.metrics:
            self.metrics.poll_cycles.labels(loop=cycle.loop).inc()
            self.metrics.poll_instances.labels(loop=cycle.loop, outcome="ok").inc(cycle.succeeded)
            self.metrics.poll_instances.labels(loop=cycle.loop, outcome="failed").inc(cycle.failed)
            self.metrics.poll_cycle_duration_ms.labels(loop=cycle.loop).observe(cycle.duration_ms)
        return cycle
