"""
Domain entities shared by the gateway client, P&L engine and instance manager.

Instance is the locally owned record of one remote gateway. Trade, Position
and Quote are read-only snapshots normalised from whatever field names the
remote happens to use.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from algofleet.utils import first_float, first_present, mask_api_key, parse_bool_safe, parse_float_safe


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def parse(cls, value: Any) -> "HealthStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class MarketDataRole(str, Enum):
    NONE = "none"
    PRIMARY = "primary"
    SECONDARY = "secondary"

    @classmethod
    def parse(cls, value: Any) -> "MarketDataRole":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.NONE


class TargetKind(str, Enum):
    PROFIT = "profit"
    LOSS = "loss"
    NONE = "none"


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> Optional["TradeSide"]:
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().upper()
        if raw in {"BUY", "B"}:
            return cls.BUY
        if raw in {"SELL", "S"}:
            return cls.SELL
        return None


@dataclass
class Instance:
    """One managed gateway. Mutated only through InstanceManager."""
    id: int
    name: str
    endpoint_url: str
    api_key: str
    strategy_tag: Optional[str] = None

    # Operating mode
    active: bool = True
    analyzer_mode: bool = False
    market_data_role: MarketDataRole = MarketDataRole.NONE

    # Risk thresholds
    target_profit: Optional[float] = 5000.0
    target_loss: Optional[float] = 2000.0

    # P&L snapshot
    current_balance: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0

    # Health snapshot
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: Optional[str] = None
    last_ping_at: Optional[str] = None

    last_updated: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Instance":
        return cls(
            id=int(row["id"]),
            name=str(row.get("name", "")),
            endpoint_url=str(row.get("endpoint_url", "")),
            api_key=str(row.get("api_key", "")),
            strategy_tag=row.get("strategy_tag") or None,
            active=parse_bool_safe(row.get("active"), True),
            analyzer_mode=parse_bool_safe(row.get("analyzer_mode"), False),
            market_data_role=MarketDataRole.parse(row.get("market_data_role", "none")),
            target_profit=parse_float_safe(row.get("target_profit"), None),
            target_loss=parse_float_safe(row.get("target_loss"), None),
            current_balance=parse_float_safe(row.get("current_balance"), 0.0),
            realized_pnl=parse_float_safe(row.get("realized_pnl"), 0.0),
            unrealized_pnl=parse_float_safe(row.get("unrealized_pnl"), 0.0),
            total_pnl=parse_float_safe(row.get("total_pnl"), 0.0),
            health_status=HealthStatus.parse(row.get("health_status", "unknown")),
            last_health_check=row.get("last_health_check"),
            last_ping_at=row.get("last_ping_at"),
            last_updated=row.get("last_updated"),
            created_at=row.get("created_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["market_data_role"] = self.market_data_role.value
        row["health_status"] = self.health_status.value
        return row

    def to_public_dict(self) -> Dict[str, Any]:
        """Row without the raw credential, for status payloads and logs."""
        row = self.to_row()
        row["api_key"] = mask_api_key(self.api_key)
        return row


def parse_timestamp(value: Any) -> float:
    """
    Best-effort sort key for remote trade timestamps.

    Accepts epoch numbers (s or ms), ISO-8601 strings, "dd-mm-YYYY HH:MM:SS"
    and bare "HH:MM:SS". Anything else sorts first.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) / 1000.0 if value > 1e11 else float(value)
    text = str(value).strip()
    numeric = parse_float_safe(text, None)
    if numeric is not None:
        return numeric / 1000.0 if numeric > 1e11 else numeric
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        pass
    for fmt in ("%d-%m-%Y %H:%M:%S", "%d-%b-%Y %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).timestamp()
        except ValueError:
            continue
    parts = text.split(":")
    if len(parts) == 3 and all(p.isdigit() for p in parts):
        h, m, s = (int(p) for p in parts)
        return float(h * 3600 + m * 60 + s)
    return 0.0


@dataclass(frozen=True)
class Trade:
    """Immutable fill from the remote trade book."""
    symbol: str
    side: Optional[TradeSide]
    quantity: float
    price: float
    timestamp: float = 0.0
    # Authoritative per-trade P&L when the remote reports one
    pnl: Optional[float] = None

    @classmethod
    def from_remote(cls, raw: Mapping[str, Any]) -> Optional["Trade"]:
        symbol = first_present(raw, ("symbol", "tradingsymbol"))
        if not symbol:
            return None
        return cls(
            symbol=str(symbol),
            side=TradeSide.parse(first_present(raw, ("side", "action", "transaction_type"))),
            quantity=first_float(raw, ("quantity", "qty", "filled_quantity")),
            price=first_float(raw, ("price", "average_price", "fill_price")),
            timestamp=parse_timestamp(first_present(raw, ("time", "timestamp", "fill_timestamp"))),
            pnl=parse_float_safe(raw.get("pnl"), 0.0) if "pnl" in raw else None,
        )


@dataclass(frozen=True)
class Position:
    """Remote-reported open exposure. Quantity 0 means closed."""
    symbol: str
    quantity: float
    average_price: float = 0.0
    pnl: float = 0.0
    exchange: Optional[str] = None
    product: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    @classmethod
    def from_remote(cls, raw: Mapping[str, Any]) -> "Position":
        # Symbol-less rows still count as exposure for the open-position check
        return cls(
            symbol=str(first_present(raw, ("symbol", "tradingsymbol"), "")),
            quantity=first_float(raw, ("quantity", "netqty", "net_quantity")),
            average_price=first_float(raw, ("average_price", "avg_price", "averageprice")),
            pnl=first_float(raw, ("pnl", "unrealized_pnl", "mtm")),
            exchange=raw.get("exchange"),
            product=raw.get("product"),
        )


@dataclass(frozen=True)
class Quote:
    exchange: str
    symbol: str
    ltp: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0

    @property
    def change_percent(self) -> float:
        if self.close > 0 and self.ltp > 0:
            return (self.ltp - self.close) / self.close * 100.0
        return 0.0

    @classmethod
    def from_remote(cls, exchange: str, symbol: str, raw: Mapping[str, Any]) -> "Quote":
        return cls(
            exchange=exchange,
            symbol=str(first_present(raw, ("symbol", "tradingsymbol"), symbol)),
            ltp=first_float(raw, ("ltp", "last_price")),
            open=first_float(raw, ("open",)),
            high=first_float(raw, ("high",)),
            low=first_float(raw, ("low",)),
            close=first_float(raw, ("close", "prev_close")),
            volume=first_float(raw, ("volume",)),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "symbol": self.symbol,
            "ltp": self.ltp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "change_percent": self.change_percent,
        }


@dataclass
class WatchlistSymbol:
    id: int
    watchlist_id: int
    exchange: str
    symbol: str
    enabled: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WatchlistSymbol":
        known = {"id", "watchlist_id", "exchange", "symbol", "enabled"}
        return cls(
            id=int(row["id"]),
            watchlist_id=int(row["watchlist_id"]),
            exchange=str(row.get("exchange", "")),
            symbol=str(row.get("symbol", "")),
            enabled=parse_bool_safe(row.get("enabled"), True),
            extra={k: v for k, v in row.items() if k not in known},
        )
