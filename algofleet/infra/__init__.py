"""
Infrastructure package.

This package contains the gateway HTTP client, the storage collaborator and
logging configuration.
"""

from algofleet.infra.gateway_client import GatewayClient, GatewayConfig
from algofleet.infra.logging_cfg import build_logger, log_event
from algofleet.infra.storage import JsonFileStorage, MemoryStorage, Storage

__all__ = [
    "GatewayClient",
    "GatewayConfig",
    "build_logger",
    "log_event",
    "JsonFileStorage",
    "MemoryStorage",
    "Storage",
]
