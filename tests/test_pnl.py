"""
Tests for the P&L engine: FIFO matching, targets and aggregation.
"""
import pytest

from algofleet.core.errors import TransientNetworkError
from algofleet.core.models import Instance, Position, TargetKind, Trade, TradeSide
from algofleet.execution.pnl import (
    InstancePnL,
    SymbolPnL,
    build_instance_pnl,
    check_targets,
    combine_instance_pnl,
    fifo_realized,
    realized_from_funds,
    realized_pnl,
    unrealized_pnl,
)


def buy(qty, price, ts=0.0, symbol="INFY"):
    return Trade(symbol=symbol, side=TradeSide.BUY, quantity=qty, price=price, timestamp=ts)


def sell(qty, price, ts=0.0, symbol="INFY"):
    return Trade(symbol=symbol, side=TradeSide.SELL, quantity=qty, price=price, timestamp=ts)


def make_instance(instance_id=1, **overrides):
    fields = dict(id=instance_id, name=f"inst-{instance_id}", endpoint_url="http://gw.local", api_key="k")
    fields.update(overrides)
    return Instance(**fields)


class TestFifoMatching:
    """FIFO lot matching."""

    def test_buys_then_sells_equal_weighted_average(self):
        """Increasing buy prices, constant sell price: qty * (sell - weighted avg buy)."""
        trades = [
            buy(10, 100.0, ts=1),
            buy(20, 101.5, ts=2),
            buy(5, 104.0, ts=3),
            sell(15, 110.0, ts=4),
            sell(20, 110.0, ts=5),
        ]
        total_qty = 35
        avg_buy = (10 * 100.0 + 20 * 101.5 + 5 * 104.0) / total_qty

        assert fifo_realized(trades) == pytest.approx(total_qty * (110.0 - avg_buy))

    def test_partial_lot_consumption(self):
        trades = [buy(10, 100.0, ts=1), sell(4, 105.0, ts=2), sell(6, 95.0, ts=3)]
        assert fifo_realized(trades) == pytest.approx(4 * 5.0 - 6 * 5.0)

    def test_oldest_lot_consumed_first(self):
        trades = [buy(5, 100.0, ts=1), buy(5, 120.0, ts=2), sell(5, 130.0, ts=3)]
        assert fifo_realized(trades) == pytest.approx(150.0)

    def test_short_then_cover(self):
        trades = [sell(5, 200.0, ts=1), buy(5, 190.0, ts=2)]
        assert fifo_realized(trades) == pytest.approx(50.0)

    def test_remainder_opens_opposite_lot(self):
        # Sell 15 against 10 long: 5 become a short lot, covered at 90
        trades = [buy(10, 100.0, ts=1), sell(15, 105.0, ts=2), buy(5, 90.0, ts=3)]
        assert fifo_realized(trades) == pytest.approx(10 * 5.0 + 5 * 15.0)

    def test_sorted_by_timestamp(self):
        trades = [sell(10, 110.0, ts=20), buy(10, 100.0, ts=10)]
        assert fifo_realized(trades) == pytest.approx(100.0)

    def test_ties_keep_input_order(self):
        trades = [buy(5, 100.0, ts=1), buy(5, 120.0, ts=1), sell(5, 130.0, ts=1)]
        assert fifo_realized(trades) == pytest.approx(150.0)

        swapped = [buy(5, 120.0, ts=1), buy(5, 100.0, ts=1), sell(5, 130.0, ts=1)]
        assert fifo_realized(swapped) == pytest.approx(50.0)

    def test_invalid_trades_skipped(self):
        trades = [
            buy(0, 100.0, ts=1),
            buy(10, 0.0, ts=2),
            Trade(symbol="INFY", side=None, quantity=10, price=100.0, timestamp=3),
            buy(10, 100.0, ts=4),
            sell(10, 101.0, ts=5),
        ]
        assert fifo_realized(trades) == pytest.approx(10.0)

    def test_unmatched_lots_realize_nothing(self):
        assert fifo_realized([buy(10, 100.0), buy(5, 110.0)]) == 0.0


class TestRealizedPnL:
    """Per-symbol grouping and remote P&L trust."""

    def test_groups_by_symbol(self):
        trades = [
            buy(10, 100.0, ts=1, symbol="INFY"),
            buy(1, 2000.0, ts=1, symbol="TCS"),
            sell(10, 102.0, ts=2, symbol="INFY"),
            sell(1, 1990.0, ts=2, symbol="TCS"),
        ]
        result = realized_pnl(trades)

        assert result.per_symbol == {"INFY": pytest.approx(20.0), "TCS": pytest.approx(-10.0)}
        assert result.total == pytest.approx(10.0)

    def test_remote_pnl_field_trusted(self):
        trades = [
            {"symbol": "INFY", "action": "BUY", "quantity": 10, "price": 100, "pnl": "12.5"},
            {"symbol": "INFY", "action": "SELL", "quantity": 10, "price": 999, "pnl": -2.5},
        ]
        assert realized_pnl(trades).per_symbol["INFY"] == pytest.approx(10.0)

    def test_accepts_raw_remote_rows(self):
        trades = [
            {"tradingsymbol": "SBIN", "transaction_type": "B", "qty": "4", "average_price": "500", "timestamp": "09:15:00"},
            {"tradingsymbol": "SBIN", "transaction_type": "S", "qty": "4", "average_price": "510", "timestamp": "10:15:00"},
            {"quantity": 1, "price": 1},
        ]
        result = realized_pnl(trades)
        assert result.per_symbol == {"SBIN": pytest.approx(40.0)}

    def test_idempotent(self):
        trades = [buy(10, 100.0, ts=1), sell(3, 104.0, ts=2), sell(7, 99.0, ts=3)]
        snapshot = list(trades)

        first = realized_pnl(trades)
        second = realized_pnl(trades)

        assert first == second
        assert trades == snapshot

    def test_empty(self):
        result = realized_pnl([])
        assert result.per_symbol == {}
        assert result.total == 0.0


class TestUnrealizedPnL:

    def test_skips_closed_and_symbolless(self):
        positions = [
            {"symbol": "INFY", "quantity": "10", "pnl": "25.5"},
            {"symbol": "TCS", "quantity": "0", "pnl": "99"},
            {"quantity": "3", "pnl": "1000"},
            Position(symbol="INFY", quantity=-5, pnl=-5.5),
        ]
        result = unrealized_pnl(positions)

        assert result.per_symbol == {"INFY": pytest.approx(20.0)}
        assert result.total == pytest.approx(20.0)


class TestFundsFields:

    def test_realized_fallback_chain(self):
        assert realized_from_funds({"m2mrealized": "125.5"}) == pytest.approx(125.5)
        assert realized_from_funds({"realizedpnl": -40}) == pytest.approx(-40.0)
        assert realized_from_funds({"realized_pnl": "0"}) == 0.0

    def test_realized_absent(self):
        assert realized_from_funds({"availablecash": "100"}) is None
        assert realized_from_funds({}) is None
        assert realized_from_funds(None) is None


class TestCheckTargets:

    def test_profit_hit_at_threshold(self):
        check = check_targets(make_instance(target_profit=5000.0, target_loss=2000.0), 5000.0)
        assert check.hit
        assert check.kind is TargetKind.PROFIT
        assert check.threshold == 5000.0
        assert "lock profits" in check.action

    def test_loss_hit_uses_absolute_threshold(self):
        for target_loss in (2000.0, -2000.0):
            check = check_targets(make_instance(target_loss=target_loss), -2000.0)
            assert check.hit
            assert check.kind is TargetKind.LOSS
            assert check.threshold == -2000.0

    def test_no_hit_between_thresholds(self):
        check = check_targets(make_instance(), 1999.0)
        assert not check.hit
        assert check.kind is TargetKind.NONE
        assert check.current == 1999.0

    def test_degenerate_thresholds_report_profit(self):
        check = check_targets(make_instance(target_profit=0.0, target_loss=0.0), 0.0)
        assert check.kind is TargetKind.PROFIT

    def test_missing_thresholds_never_hit(self):
        check = check_targets(make_instance(target_profit=None, target_loss=None), -1e9)
        assert not check.hit


class TestAggregation:
    """All-settled cross-instance aggregation."""

    def test_failed_instance_annotated_with_zero_pnl(self):
        i1, i2 = make_instance(1), make_instance(2)
        pnl1 = build_instance_pnl(
            i1,
            trades=[buy(10, 100.0, ts=1), sell(10, 110.0, ts=2)],
            positions=[{"symbol": "TCS", "quantity": 2, "pnl": 15.0}],
            funds={"availablecash": "5000"},
        )

        agg = combine_instance_pnl([i1, i2], [pnl1, TransientNetworkError("Request timeout after 15.0s")])

        assert agg.realized == pytest.approx(100.0)
        assert agg.unrealized == pytest.approx(15.0)
        assert agg.total == pytest.approx(115.0)
        assert agg.balance == pytest.approx(5000.0)
        assert agg.total_instances == 2
        assert agg.active_instances == 1

        failed = agg.instances[2]
        assert failed.total == 0.0
        assert "timeout" in failed.error
        assert agg.to_dict()["instance_breakdown"][2]["error"] == failed.error

    def test_symbol_breakdown_merges_instances(self):
        i1, i2 = make_instance(1), make_instance(2)
        p1 = InstancePnL(instance_id=1, name="a", realized=10.0, symbols={"INFY": SymbolPnL(realized=10.0)})
        p2 = InstancePnL(instance_id=2, name="b", unrealized=5.0, symbols={"INFY": SymbolPnL(unrealized=5.0)})

        agg = combine_instance_pnl([i1, i2], [p1, p2])

        entry = agg.symbols["INFY"]
        assert entry["total"] == pytest.approx(15.0)
        assert [x["id"] for x in entry["instances"]] == [1, 2]

    def test_order_independent(self):
        i1, i2 = make_instance(1), make_instance(2)
        p1 = InstancePnL(instance_id=1, name="a", realized=1.25, unrealized=3.0)
        p2 = InstancePnL(instance_id=2, name="b", realized=-7.5, unrealized=0.5)

        forward = combine_instance_pnl([i1, i2], [p1, p2])
        backward = combine_instance_pnl([i2, i1], [p2, p1])

        assert forward.total == pytest.approx(backward.total)
        assert forward.realized == pytest.approx(backward.realized)
