"""
Order status sync: reconcile locally tracked orders against the remote order
book.

Only rows in `watchlist_orders` that are still `pending` or `open` are
checked. A tracked order absent from the remote book is left alone; it will
be checked again on the next cycle.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from algofleet.core.models import Instance, OrderStatus
from algofleet.infra.gateway_client import GatewayClient
from algofleet.infra.storage import Storage

if TYPE_CHECKING:
    from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")

ORDERS = "watchlist_orders"

_STATUS_MAP: Dict[str, OrderStatus] = {
    "open": OrderStatus.OPEN,
    "pending": OrderStatus.PENDING,
    "complete": OrderStatus.COMPLETE,
    "cancelled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "trigger pending": OrderStatus.PENDING,
    "partially filled": OrderStatus.OPEN,
}


def map_order_status(remote_status: Any) -> OrderStatus:
    """Map a broker status string to a local OrderStatus (unknown -> pending)."""
    key = str(remote_status or "").strip().lower()
    return _STATUS_MAP.get(key, OrderStatus.PENDING)


def _remote_order_id(order: Mapping[str, Any]) -> Optional[str]:
    value = order.get("orderid") or order.get("order_id")
    return str(value) if value not in (None, "") else None


@dataclass
class OrderSyncResult:
    """Result of one order book reconciliation."""
    checked: int = 0
    updated: int = 0


class OrderStatusSync:
    """
    Usage:
        sync = OrderStatusSync(gateway, storage)
        result = await sync.sync_order_status(instance)
    """

    def __init__(
        self,
        gateway: GatewayClient,
        storage: Storage,
        metrics: Optional["FleetMetrics"] = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.gateway = gateway
        self.storage = storage
        self.metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    async def sync_order_status(self, instance: Instance) -> OrderSyncResult:
        tracked = await self.storage.list(
            ORDERS,
            {"instance_id": instance.id, "status": (OrderStatus.PENDING.value, OrderStatus.OPEN.value)},
        )
        if not tracked:
            return OrderSyncResult()

        order_book = await self.gateway.get_order_book(instance)
        by_id: Dict[str, Dict[str, Any]] = {}
        for order in order_book:
            oid = _remote_order_id(order)
            if oid is not None:
                by_id[oid] = order

        updated = 0
        for row in tracked:
            remote = by_id.get(str(row.get("order_id")))
            if remote is None:
                continue
            status = map_order_status(remote.get("status") or remote.get("order_status"))
            if status.value == row.get("status"):
                continue
            await self.storage.update(ORDERS, row["id"], {
                "status": status.value,
                "broker_order_id": _remote_order_id(remote),
                "metadata": dict(remote),
            })
            updated += 1

        result = OrderSyncResult(checked=len(tracked), updated=updated)
        if updated:
            self._log_event(
                "order_status_synced",
                instance_id=instance.id,
                checked=result.checked,
                updated=result.updated,
            )
            if self.metrics:
                self.metrics.orders_synced.labels(instance=str(instance.id)).inc(updated)
        return result
