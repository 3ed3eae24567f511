"""
Tests for QuoteRefresher.
"""
import pytest
from unittest.mock import AsyncMock

from algofleet.core.errors import TransientNetworkError
from algofleet.core.models import Quote
from algofleet.execution.instance_manager import InstanceManager
from algofleet.execution.market_data import QuoteRefresher


def quotes_for(exchange, symbols, ltp=110.0, close=100.0):
    return [Quote(exchange=exchange, symbol=s, ltp=ltp, close=close, volume=1000) for s in symbols]


class TestQuoteRefresher:

    @pytest.fixture
    def storage(self, storage_factory, instance_row):
        return storage_factory(
            [
                instance_row(1, market_data_role="secondary"),
                instance_row(2, market_data_role="primary"),
            ],
            watchlist_symbols=[
                {"id": 1, "watchlist_id": 10, "exchange": "NSE", "symbol": "INFY", "enabled": True},
                {"id": 2, "watchlist_id": 10, "exchange": "NSE", "symbol": "TCS", "enabled": True},
                {"id": 3, "watchlist_id": 10, "exchange": "NFO", "symbol": "NIFTY24DECFUT", "enabled": True},
                {"id": 4, "watchlist_id": 10, "exchange": "NSE", "symbol": "SBIN", "enabled": False},
                {"id": 5, "watchlist_id": 11, "exchange": "BSE", "symbol": "RELIANCE", "enabled": True},
            ],
        )

    @pytest.fixture
    def refresher(self, gateway, storage):
        async def fake_quotes(instance, exchange, symbols):
            return quotes_for(exchange, symbols)

        gateway.get_quotes = AsyncMock(side_effect=fake_quotes)
        return QuoteRefresher(gateway, storage, InstanceManager(gateway, storage))

    @pytest.mark.asyncio
    async def test_groups_by_exchange_on_primary(self, refresher, gateway):
        result = await refresher.refresh(10)

        assert result.instance_id == 2
        assert result.symbols == 3
        assert result.upserted == 3
        calls = {c.args[1]: c.args[2] for c in gateway.get_quotes.await_args_list}
        assert calls == {"NSE": ["INFY", "TCS"], "NFO": ["NIFTY24DECFUT"]}
        assert all(c.args[0].id == 2 for c in gateway.get_quotes.await_args_list)

    @pytest.mark.asyncio
    async def test_upserts_latest_quote(self, refresher, gateway, storage):
        await refresher.refresh(10)

        async def moved(instance, exchange, symbols):
            return quotes_for(exchange, symbols, ltp=95.0)

        gateway.get_quotes.side_effect = moved
        await refresher.refresh(10)

        rows = await storage.list("market_data", {"exchange": "NSE", "symbol": "INFY"})
        assert len(rows) == 1
        assert rows[0]["ltp"] == 95.0
        assert rows[0]["change_percent"] == pytest.approx(-5.0)
        assert len(await storage.list("market_data")) == 3

    @pytest.mark.asyncio
    async def test_failed_exchange_does_not_block_others(self, refresher, gateway, storage):
        async def partial(instance, exchange, symbols):
            if exchange == "NFO":
                raise TransientNetworkError("Request timeout after 15.0s")
            return quotes_for(exchange, symbols)

        gateway.get_quotes.side_effect = partial

        result = await refresher.refresh(10)

        assert result.failed_exchanges == ["NFO"]
        assert result.upserted == 2
        assert {r["symbol"] for r in await storage.list("market_data")} == {"INFY", "TCS"}

    @pytest.mark.asyncio
    async def test_no_market_data_instance(self, gateway, storage_factory, instance_row):
        storage = storage_factory(
            [instance_row(1)],
            watchlist_symbols=[{"id": 1, "watchlist_id": 10, "exchange": "NSE", "symbol": "INFY", "enabled": True}],
        )
        refresher = QuoteRefresher(gateway, storage, InstanceManager(gateway, storage))

        result = await refresher.refresh(10)

        assert result.skipped_reason == "no_market_data_instance"
        gateway.get_quotes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_watchlist(self, refresher, gateway):
        result = await refresher.refresh(99)
        assert result.skipped_reason == "no_symbols"
        gateway.get_quotes.assert_not_awaited()
