"""
Execution layer components.

- pnl: pure P&L computation (FIFO matching, targets, aggregation)
- InstanceManager: instance CRUD, health checks, P&L refresh, Safe-Switch
- OrderStatusSync: tracked order reconciliation against the order book
- QuoteRefresher: watchlist quote refresh into market_data
"""

from algofleet.execution.instance_manager import InstanceManager, InstanceManagerConfig, SafeSwitchResult
from algofleet.execution.market_data import QuoteRefresher, QuoteRefreshResult
from algofleet.execution.order_sync import OrderStatusSync, OrderSyncResult, map_order_status
from algofleet.execution.pnl import (
    AggregatedPnL,
    InstancePnL,
    PnLResult,
    TargetCheck,
    check_targets,
    realized_pnl,
    unrealized_pnl,
)

__all__ = [
    "InstanceManager",
    "InstanceManagerConfig",
    "SafeSwitchResult",
    "QuoteRefresher",
    "QuoteRefreshResult",
    "OrderStatusSync",
    "OrderSyncResult",
    "map_order_status",
    "AggregatedPnL",
    "InstancePnL",
    "PnLResult",
    "TargetCheck",
    "check_targets",
    "realized_pnl",
    "unrealized_pnl",
]
