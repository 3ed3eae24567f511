"""
Prometheus metrics for the instance fleet.

Organized into: gateway, polling, P&L, health, safety.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class FleetMetrics:
    """Metrics for multi-instance orchestration observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Gateway Metrics ===
        self.gateway_requests = Counter(
            'gateway_requests_total',
            'Gateway call attempts by outcome (ok/transient/permanent)',
            labelnames=['operation', 'outcome'],
            registry=reg
        )
        self.gateway_retries = Counter(
            'gateway_retries_total',
            'Gateway retries after transient failures',
            labelnames=['operation'],
            registry=reg
        )
        self.gateway_latency_ms = Histogram(
            'gateway_latency_ms',
            'Gateway call attempt latency (milliseconds)',
            labelnames=['operation'],
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 15000],
            registry=reg
        )

        # === Polling Metrics ===
        self.poll_cycles = Counter(
            'poll_cycles_total',
            'Scheduler ticks executed',
            labelnames=['loop'],
            registry=reg
        )
        self.poll_instances = Counter(
            'poll_instances_total',
            'Per-instance poll outcomes',
            labelnames=['loop', 'outcome'],
            registry=reg
        )
        self.poll_cycle_duration_ms = Histogram(
            'poll_cycle_duration_ms',
            'Wall time of one scheduler tick (milliseconds)',
            labelnames=['loop'],
            buckets=[50, 100, 500, 1000, 5000, 15000, 60000],
            registry=reg
        )
        self.orders_synced = Counter(
            'orders_synced_total',
            'Tracked orders whose status changed during sync',
            labelnames=['instance'],
            registry=reg
        )
        self.quotes_upserted = Counter(
            'quotes_upserted_total',
            'Market data rows written',
            labelnames=['exchange'],
            registry=reg
        )

        # === P&L Metrics ===
        self.realized_pnl = Gauge(
            'instance_realized_pnl',
            'Realized P&L per instance',
            labelnames=['instance'],
            registry=reg
        )
        self.unrealized_pnl = Gauge(
            'instance_unrealized_pnl',
            'Unrealized P&L per instance',
            labelnames=['instance'],
            registry=reg
        )
        self.total_pnl = Gauge(
            'instance_total_pnl',
            'Total P&L per instance',
            labelnames=['instance'],
            registry=reg
        )
        self.balance = Gauge(
            'instance_balance',
            'Available cash per instance',
            labelnames=['instance'],
            registry=reg
        )
        self.pnl_divergence = Counter(
            'realized_pnl_divergence_total',
            'Funds-reported realized P&L disagreeing with the FIFO estimate',
            labelnames=['instance'],
            registry=reg
        )

        # === Health Metrics ===
        self.instance_healthy = Gauge(
            'instance_healthy',
            'Last health check result (1=healthy, 0=unhealthy)',
            labelnames=['instance'],
            registry=reg
        )
        self.analyzer_mode = Gauge(
            'instance_analyzer_mode',
            'Analyzer mode flag (1=analyzer, 0=live)',
            labelnames=['instance'],
            registry=reg
        )

        # === Safety Metrics ===
        self.safe_switch = Counter(
            'safe_switch_total',
            'Analyzer mode transitions by outcome (switched/refused/failed)',
            labelnames=['direction', 'outcome'],
            registry=reg
        )
        self.targets_hit = Counter(
            'targets_hit_total',
            'Profit/loss thresholds reached',
            labelnames=['instance', 'kind'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
