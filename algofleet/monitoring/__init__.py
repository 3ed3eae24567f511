"""
Monitoring and observability package.
"""

from algofleet.monitoring.metrics_rich import FleetMetrics
from algofleet.monitoring.server import start_metrics_server

__all__ = [
    "FleetMetrics",
    "start_metrics_server",
]
