"""
Pytest configuration and shared fixtures.
"""

from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from algofleet.infra.storage import MemoryStorage


def _instance_row(instance_id: int, **overrides: Any) -> Dict[str, Any]:
    row = {
        "id": instance_id,
        "name": f"inst-{instance_id}",
        "endpoint_url": f"http://gw{instance_id}.local",
        "api_key": f"key-{instance_id}-abcdef",
        "strategy_tag": "alpha",
        "active": True,
        "analyzer_mode": False,
        "market_data_role": "none",
        "target_profit": 5000.0,
        "target_loss": 2000.0,
        "current_balance": 0.0,
        "realized_pnl": 0.0,
        "unrealized_pnl": 0.0,
        "total_pnl": 0.0,
        "health_status": "unknown",
    }
    row.update(overrides)
    return row


@pytest.fixture
def instance_row():
    """Factory for instance rows: instance_row(1, active=False)."""
    return _instance_row


@pytest.fixture
def storage_factory():
    def _make(instances: List[Dict[str, Any]], **tables: List[Dict[str, Any]]) -> MemoryStorage:
        return MemoryStorage({"instances": instances, **tables})
    return _make


@pytest.fixture
def gateway():
    """Gateway double; every wrapper succeeds with an empty/neutral reply."""
    gw = MagicMock()
    gw.ping = AsyncMock(return_value={"message": "pong"})
    gw.get_analyzer_status = AsyncMock(return_value={"analyze_mode": False})
    gw.toggle_analyzer = AsyncMock(return_value={})
    gw.get_funds = AsyncMock(return_value={"availablecash": "100000.00"})
    gw.get_trade_book = AsyncMock(return_value=[])
    gw.get_position_book = AsyncMock(return_value=[])
    gw.get_order_book = AsyncMock(return_value=[])
    gw.close_position = AsyncMock(return_value={})
    gw.cancel_all_orders = AsyncMock(return_value={})
    gw.validate_connection = AsyncMock(return_value=True)
    gw.get_quotes = AsyncMock(return_value=[])
    return gw


@pytest.fixture
def events():
    """Captures structured log events: pass `events.record` as log_event_callback."""
    class _Recorder:
        def __init__(self) -> None:
            self.items: List[Dict[str, Any]] = []

        def record(self, event: str, level: int = 20, **kwargs: Any) -> None:
            self.items.append({"event": event, "level": level, **kwargs})

        def named(self, event: str) -> List[Dict[str, Any]]:
            return [e for e in self.items if e["event"] == event]

    return _Recorder()
