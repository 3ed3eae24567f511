"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

import httpx

from algofleet.config.config import Settings
from algofleet.config.config_validator import validate_and_log
from algofleet.execution.instance_manager import InstanceManager
from algofleet.execution.market_data import QuoteRefresher
from algofleet.execution.order_sync import OrderStatusSync
from algofleet.infra.gateway_client import GatewayClient
from algofleet.infra.logging_cfg import build_logger, log_event
from algofleet.infra.storage import JsonFileStorage
from algofleet.monitoring.metrics_rich import FleetMetrics
from algofleet.monitoring.server import start_metrics_server
from algofleet.orchestrator.poller import PollingScheduler

log = logging.getLogger("algofleet")


async def main() -> None:
    # .env is already loaded by the config import
    build_logger(
        "algofleet",
        level=os.getenv("FLEET_LOG_LEVEL", "INFO").upper(),
        file_path=os.getenv("FLEET_LOG_FILE", "logs/fleet.log") or None,
    )
    cfg = Settings.load()

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    metrics = FleetMetrics()
    gateway_cfg = cfg.gateway_config()
    # One shared HTTP/2 client for every instance
    shared_client = httpx.AsyncClient(http2=gateway_cfg.http2, timeout=gateway_cfg.timeout_sec)
    gateway = GatewayClient(gateway_cfg, client=shared_client, metrics=metrics)
    storage = await JsonFileStorage(cfg.store_path).open()

    manager = InstanceManager(gateway, storage, metrics=metrics)
    order_sync = OrderStatusSync(gateway, storage, metrics=metrics)
    quotes = QuoteRefresher(gateway, storage, manager, metrics=metrics)
    scheduler = PollingScheduler(manager, order_sync, quotes, metrics=metrics, config=cfg.poller_config())

    srv = None
    if cfg.metrics_port:
        srv = await start_metrics_server(metrics, cfg.metrics_port, status_provider=scheduler.status)

    instances = await manager.list_instances()
    log_event(log, "startup", instances=len(instances), store=cfg.store_path)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        if cfg.autostart_polling:
            await scheduler.start()
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        scheduler.stop()
        await scheduler.drain(timeout=cfg.request_timeout)
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        await gateway.close()
        await shared_client.aclose()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nFleet manager stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
