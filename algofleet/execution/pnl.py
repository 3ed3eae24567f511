"""
P&L engine: realized / unrealized P&L, target checks and cross-instance
aggregation.

Everything in this module is a pure function of its arguments. Network
fetches happen in InstanceManager; results are handed in here.

Realized P&L per symbol:
    - If any trade for the symbol carries a remote `pnl` field, the remote
      is trusted and those values are summed.
    - Otherwise trades are replayed oldest first (stable for equal
      timestamps) through FIFO lot matching: an incoming trade consumes the
      oldest opposite-side lots, crediting matched_qty * (exit - entry) with
      the sign given by direction. Any unmatched remainder opens a new lot.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from algofleet.core.models import Instance, Position, TargetKind, Trade, TradeSide
from algofleet.utils import first_present, parse_float_safe

TradeLike = Union[Trade, Mapping[str, Any]]
PositionLike = Union[Position, Mapping[str, Any]]

# Fallback chain for the authoritative realized figure on the funds endpoint
FUNDS_REALIZED_FIELDS: Tuple[str, ...] = ("m2mrealized", "realized_pnl", "realizedpnl")
FUNDS_BALANCE_FIELDS: Tuple[str, ...] = ("availablecash", "available_cash", "balance")


@dataclass(frozen=True)
class PnLResult:
    per_symbol: Dict[str, float]
    total: float


@dataclass(frozen=True)
class TargetCheck:
    hit: bool
    kind: TargetKind = TargetKind.NONE
    threshold: Optional[float] = None
    current: float = 0.0
    action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hit": self.hit,
            "kind": self.kind.value,
            "threshold": self.threshold,
            "current": self.current,
            "action": self.action,
        }


@dataclass
class SymbolPnL:
    realized: float = 0.0
    unrealized: float = 0.0

    @property
    def total(self) -> float:
        return self.realized + self.unrealized


@dataclass
class InstancePnL:
    """P&L breakdown for one instance; `error` is set when its fetch failed."""
    instance_id: int
    name: str
    realized: float = 0.0
    unrealized: float = 0.0
    balance: float = 0.0
    symbols: Dict[str, SymbolPnL] = field(default_factory=dict)
    open_positions: int = 0
    total_trades: int = 0
    error: Optional[str] = None

    @property
    def total(self) -> float:
        return self.realized + self.unrealized

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "realized_pnl": self.realized,
            "unrealized_pnl": self.unrealized,
            "total_pnl": self.total,
            "current_balance": self.balance,
        }
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["metadata"] = {
                "total_symbols": len(self.symbols),
                "open_positions": self.open_positions,
                "total_trades": self.total_trades,
            }
        return payload


@dataclass
class AggregatedPnL:
    realized: float = 0.0
    unrealized: float = 0.0
    balance: float = 0.0
    instances: Dict[int, InstancePnL] = field(default_factory=dict)
    # symbol -> {"realized", "unrealized", "total", "instances": [{id, name, pnl}]}
    symbols: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    total_instances: int = 0
    active_instances: int = 0
    total_positions: int = 0
    total_trades: int = 0

    @property
    def total(self) -> float:
        return self.realized + self.unrealized

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pnl": {
                "realized_pnl": self.realized,
                "unrealized_pnl": self.unrealized,
                "total_pnl": self.total,
                "current_balance": self.balance,
            },
            "instance_breakdown": {iid: pnl.to_dict() for iid, pnl in self.instances.items()},
            "symbol_breakdown": self.symbols,
            "metadata": {
                "total_instances": self.total_instances,
                "active_instances": self.active_instances,
                "total_symbols": len(self.symbols),
                "total_positions": self.total_positions,
                "total_trades": self.total_trades,
            },
        }


def _as_trade(raw: TradeLike) -> Optional[Trade]:
    return raw if isinstance(raw, Trade) else Trade.from_remote(raw)


def _as_position(raw: PositionLike) -> Position:
    return raw if isinstance(raw, Position) else Position.from_remote(raw)


def fifo_realized(trades: Sequence[Trade]) -> float:
    """FIFO-matched realized P&L for trades of a single symbol."""
    ordered = sorted(trades, key=lambda t: t.timestamp)  # sorted() is stable
    buys: Deque[List[float]] = deque()
    sells: Deque[List[float]] = deque()
    realized = 0.0

    for trade in ordered:
        qty = trade.quantity
        price = trade.price
        if trade.side is None or qty <= 0 or price <= 0:
            continue

        if trade.side is TradeSide.BUY:
            # Buying back short lots
            while sells and qty > 0:
                lot = sells[0]
                matched = min(qty, lot[0])
                realized += matched * (lot[1] - price)
                lot[0] -= matched
                qty -= matched
                if lot[0] <= 0:
                    sells.popleft()
            if qty > 0:
                buys.append([qty, price])
        else:
            while buys and qty > 0:
                lot = buys[0]
                matched = min(qty, lot[0])
                realized += matched * (price - lot[1])
                lot[0] -= matched
                qty -= matched
                if lot[0] <= 0:
                    buys.popleft()
            if qty > 0:
                sells.append([qty, price])

    return realized


def _symbol_realized(trades: Sequence[Trade]) -> float:
    if any(t.pnl is not None for t in trades):
        return sum(t.pnl or 0.0 for t in trades)
    return fifo_realized(trades)


def realized_pnl(trades: Iterable[TradeLike]) -> PnLResult:
    by_symbol: Dict[str, List[Trade]] = {}
    for raw in trades or ():
        trade = _as_trade(raw)
        if trade is None or not trade.symbol:
            continue
        by_symbol.setdefault(trade.symbol, []).append(trade)

    per_symbol = {symbol: _symbol_realized(items) for symbol, items in by_symbol.items()}
    return PnLResult(per_symbol=per_symbol, total=sum(per_symbol.values()))


def unrealized_pnl(positions: Iterable[PositionLike]) -> PnLResult:
    per_symbol: Dict[str, float] = {}
    for raw in positions or ():
        position = _as_position(raw)
        if not position.symbol or not position.is_open:
            continue
        per_symbol[position.symbol] = per_symbol.get(position.symbol, 0.0) + position.pnl
    return PnLResult(per_symbol=per_symbol, total=sum(per_symbol.values()))


def open_positions(positions: Iterable[PositionLike]) -> List[Position]:
    """Positions with non-zero net quantity."""
    return [p for p in (_as_position(raw) for raw in positions or ()) if p.is_open]


def realized_from_funds(funds: Optional[Mapping[str, Any]]) -> Optional[float]:
    """Authoritative realized figure from the funds endpoint, None when absent."""
    if not funds:
        return None
    if not any(key in funds and funds[key] not in (None, "") for key in FUNDS_REALIZED_FIELDS):
        return None
    return parse_float_safe(first_present(funds, FUNDS_REALIZED_FIELDS), 0.0)


def balance_from_funds(funds: Optional[Mapping[str, Any]]) -> float:
    if not funds:
        return 0.0
    return parse_float_safe(first_present(funds, FUNDS_BALANCE_FIELDS), 0.0)


def check_targets(instance: Instance, total: float) -> TargetCheck:
    """
    Compare an instance's current total P&L against its thresholds.

    Profit is checked first, so degenerate thresholds (both 0) report profit.
    """
    target_profit = instance.target_profit
    target_loss = instance.target_loss

    if target_profit is not None and total >= target_profit:
        return TargetCheck(
            hit=True,
            kind=TargetKind.PROFIT,
            threshold=target_profit,
            current=total,
            action="Switch to analyzer mode to lock profits",
        )

    if target_loss is not None and total <= -abs(target_loss):
        return TargetCheck(
            hit=True,
            kind=TargetKind.LOSS,
            threshold=-abs(target_loss),
            current=total,
            action="Switch to analyzer mode to prevent further losses",
        )

    return TargetCheck(hit=False, current=total)


def build_instance_pnl(
    instance: Instance,
    trades: Iterable[TradeLike],
    positions: Iterable[PositionLike],
    funds: Optional[Mapping[str, Any]] = None,
) -> InstancePnL:
    """Per-symbol breakdown for one instance from already fetched books."""
    trade_list = list(trades or ())
    position_list = [_as_position(p) for p in positions or ()]
    realized = realized_pnl(trade_list)
    unrealized = unrealized_pnl(position_list)

    symbols: Dict[str, SymbolPnL] = {}
    for symbol in sorted(set(realized.per_symbol) | set(unrealized.per_symbol)):
        symbols[symbol] = SymbolPnL(
            realized=realized.per_symbol.get(symbol, 0.0),
            unrealized=unrealized.per_symbol.get(symbol, 0.0),
        )

    return InstancePnL(
        instance_id=instance.id,
        name=instance.name,
        realized=realized.total,
        unrealized=unrealized.total,
        balance=balance_from_funds(funds),
        symbols=symbols,
        open_positions=sum(1 for p in position_list if p.is_open),
        total_trades=len(trade_list),
    )


def combine_instance_pnl(
    instances: Sequence[Instance],
    outcomes: Sequence[Union[InstancePnL, BaseException]],
) -> AggregatedPnL:
    """
    Fold settled per-instance results into one aggregate.

    A failed instance is kept with zero P&L and its error message; it never
    aborts the aggregation. Accumulation is commutative so completion order
    is irrelevant.
    """
    agg = AggregatedPnL(total_instances=len(instances))

    for instance, outcome in zip(instances, outcomes):
        if isinstance(outcome, BaseException):
            agg.instances[instance.id] = InstancePnL(
                instance_id=instance.id,
                name=instance.name,
                error=str(outcome) or type(outcome).__name__ or "Failed to fetch P&L",
            )
            continue

        agg.active_instances += 1
        agg.realized += outcome.realized
        agg.unrealized += outcome.unrealized
        agg.balance += outcome.balance
        agg.total_positions += outcome.open_positions
        agg.total_trades += outcome.total_trades
        agg.instances[instance.id] = outcome

        for symbol, pnl in outcome.symbols.items():
            entry = agg.symbols.setdefault(
                symbol, {"realized": 0.0, "unrealized": 0.0, "total": 0.0, "instances": []}
            )
            entry["realized"] += pnl.realized
            entry["unrealized"] += pnl.unrealized
            entry["total"] += pnl.total
            entry["instances"].append({"id": instance.id, "name": instance.name, "pnl": pnl.total})

    return agg
