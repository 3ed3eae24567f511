"""
Core package.

This package contains the error taxonomy and the domain models shared by
every other layer.
"""

from algofleet.core.errors import (
    ConflictError,
    FleetError,
    NotFoundError,
    PermanentRemoteError,
    RemoteError,
    RemoteErrorKind,
    TransientNetworkError,
    ValidationError,
)
from algofleet.core.models import (
    HealthStatus,
    Instance,
    MarketDataRole,
    OrderStatus,
    Position,
    Quote,
    TargetKind,
    Trade,
    TradeSide,
    WatchlistSymbol,
)

__all__ = [
    "ConflictError",
    "FleetError",
    "NotFoundError",
    "PermanentRemoteError",
    "RemoteError",
    "RemoteErrorKind",
    "TransientNetworkError",
    "ValidationError",
    "HealthStatus",
    "Instance",
    "MarketDataRole",
    "OrderStatus",
    "Position",
    "Quote",
    "TargetKind",
    "Trade",
    "TradeSide",
    "WatchlistSymbol",
]
