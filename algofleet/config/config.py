"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from algofleet.infra.gateway_client import GatewayConfig
    from algofleet.orchestrator.poller import PollerConfig

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be a valid integer, got {raw!r}") from None


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a valid number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    # Gateway client
    request_timeout: float
    max_retries: int
    retry_delay: float
    api_prefix: str
    # Scheduler intervals (seconds)
    instance_poll_interval: float
    health_poll_interval: float
    market_data_poll_interval: float
    autostart_polling: bool
    # Storage
    store_path: str
    # Logging
    log_level: str
    log_file: str | None
    # Metrics
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            request_timeout=_float_env("FLEET_REQUEST_TIMEOUT_SEC", 15.0),
            max_retries=_int_env("FLEET_MAX_RETRIES", 3),
            retry_delay=_float_env("FLEET_RETRY_DELAY_SEC", 1.0),
            api_prefix=os.getenv("FLEET_API_PREFIX", "/api/v1"),
            instance_poll_interval=_float_env("FLEET_INSTANCE_POLL_SEC", 15.0),
            health_poll_interval=_float_env("FLEET_HEALTH_POLL_SEC", 300.0),
            market_data_poll_interval=_float_env("FLEET_MARKET_DATA_POLL_SEC", 5.0),
            autostart_polling=env_bool("FLEET_AUTOSTART_POLLING", True),
            store_path=os.getenv("FLEET_STORE_PATH", "state/fleet.json"),
            log_level=os.getenv("FLEET_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("FLEET_LOG_FILE", "logs/fleet.log") or None,
            metrics_port=_int_env("FLEET_METRICS_PORT", 9095),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def gateway_config(self) -> "GatewayConfig":
        from algofleet.infra.gateway_client import GatewayConfig

        return GatewayConfig(
            timeout_sec=self.request_timeout,
            max_retries=self.max_retries,
            retry_delay_sec=self.retry_delay,
            api_prefix=self.api_prefix,
        )

    def poller_config(self) -> "PollerConfig":
        from algofleet.orchestrator.poller import PollerConfig

        return PollerConfig(
            instance_interval_sec=self.instance_poll_interval,
            health_interval_sec=self.health_poll_interval,
            market_data_interval_sec=self.market_data_poll_interval,
        )

    def _validate(self) -> None:
        if self.request_timeout <= 0:
            raise ValueError("FLEET_REQUEST_TIMEOUT_SEC must be > 0")
        if self.max_retries < 0:
            raise ValueError("FLEET_MAX_RETRIES must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("FLEET_RETRY_DELAY_SEC must be >= 0")
        if min(self.instance_poll_interval, self.health_poll_interval, self.market_data_poll_interval) <= 0:
            raise ValueError("Poll intervals must be > 0")
        if self.metrics_port < 0:
            raise ValueError("FLEET_METRICS_PORT must be >= 0")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"FLEET_LOG_LEVEL {self.log_level!r} is not a logging level")


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("algofleet")
    payload = {
        "event": "config_loaded",
        "request_timeout": cfg.request_timeout,
        "max_retries": cfg.max_retries,
        "retry_delay": cfg.retry_delay,
        "instance_poll_interval": cfg.instance_poll_interval,
        "health_poll_interval": cfg.health_poll_interval,
        "market_data_poll_interval": cfg.market_data_poll_interval,
    }
    logger.info(json.dumps(payload))
