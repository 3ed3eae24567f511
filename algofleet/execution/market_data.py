"""
QuoteRefresher: pull latest quotes for one watchlist into `market_data`.

Symbols are grouped by exchange and each group is fetched concurrently from
the best market-data instance (primary role, else secondary). A failed group
is logged and skipped; the others are still written.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from algofleet.core.models import Instance, Quote, WatchlistSymbol
from algofleet.execution.instance_manager import InstanceManager
from algofleet.infra.gateway_client import GatewayClient
from algofleet.infra.storage import Storage

if TYPE_CHECKING:
    from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")

SYMBOLS = "watchlist_symbols"
MARKET_DATA = "market_data"


@dataclass
class QuoteRefreshResult:
    """Result of one market data refresh."""
    watchlist_id: int
    instance_id: Optional[int] = None
    symbols: int = 0
    upserted: int = 0
    failed_exchanges: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    skipped_reason: Optional[str] = None


class QuoteRefresher:
    """
    Usage:
        refresher = QuoteRefresher(gateway, storage, manager)
        result = await refresher.refresh(watchlist_id=3)
    """

    def __init__(
        self,
        gateway: GatewayClient,
        storage: Storage,
        manager: InstanceManager,
        metrics: Optional["FleetMetrics"] = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.gateway = gateway
        self.storage = storage
        self.manager = manager
        self.metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    async def refresh(self, watchlist_id: int) -> QuoteRefreshResult:
        start = time.perf_counter()
        result = QuoteRefreshResult(watchlist_id=watchlist_id)

        rows = await self.storage.list(SYMBOLS, {"watchlist_id": watchlist_id})
        symbols = [s for s in (WatchlistSymbol.from_row(r) for r in rows) if s.enabled and s.symbol]
        result.symbols = len(symbols)
        if not symbols:
            result.skipped_reason = "no_symbols"
            return result

        candidates = await self.manager.get_market_data_instances()
        if not candidates:
            result.skipped_reason = "no_market_data_instance"
            self._log_event("market_data_no_instance", level=logging.DEBUG, watchlist_id=watchlist_id)
            return result
        instance = candidates[0]
        result.instance_id = instance.id

        groups: Dict[str, List[str]] = {}
        for s in symbols:
            groups.setdefault(s.exchange, []).append(s.symbol)

        exchanges = list(groups)
        outcomes = await asyncio.gather(
            *(self._refresh_group(instance, exchange, groups[exchange]) for exchange in exchanges),
            return_exceptions=True,
        )
        for exchange, outcome in zip(exchanges, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed_exchanges.append(exchange)
                self._log_event(
                    "quote_group_failed",
                    level=logging.ERROR,
                    watchlist_id=watchlist_id,
                    instance_id=instance.id,
                    exchange=exchange,
                    symbols=len(groups[exchange]),
                    error=str(outcome),
                )
                continue
            result.upserted += outcome

        result.duration_ms = (time.perf_counter() - start) * 1000
        self._log_event(
            "market_data_refreshed",
            level=logging.DEBUG,
            watchlist_id=watchlist_id,
            instance_id=instance.id,
            symbols=result.symbols,
            upserted=result.upserted,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def _refresh_group(self, instance: Instance, exchange: str, symbols: List[str]) -> int:
        quotes = await self.gateway.get_quotes(instance, exchange, symbols)
        for quote in quotes:
            await self._upsert(quote)
        if self.metrics and quotes:
            self.metrics.quotes_upserted.labels(exchange=exchange).inc(len(quotes))
        return len(quotes)

    async def _upsert(self, quote: Quote) -> None:
        await self.storage.upsert(MARKET_DATA, ("exchange", "symbol"), quote.to_row())
