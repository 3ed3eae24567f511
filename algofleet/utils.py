"""
Utility helpers.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_float_safe(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """
    Parse a remote numeric field that may arrive as str, int, float or None.

    Non-finite and unparseable values collapse to `default`.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    return parsed


def parse_bool_safe(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in {"1", "true", "yes", "y", "on"}:
            return True
        if lower in {"0", "false", "no", "n", "off"}:
            return False
    return default


def first_present(data: Mapping[str, Any], keys: Sequence[str], default: Any = None) -> Any:
    """
    Return the first value in `data` whose key is present and truthy.

    Remote gateways disagree on field names (symbol vs tradingsymbol, pnl vs
    mtm, ...); callers pass the fallback chain in priority order.
    """
    for key in keys:
        value = data.get(key)
        if value not in (None, "", 0, "0"):
            return value
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def first_float(data: Mapping[str, Any], keys: Sequence[str], default: float = 0.0) -> float:
    value = first_present(data, keys)
    parsed = parse_float_safe(value, default)
    return default if parsed is None else parsed


def mask_api_key(api_key: Optional[str], visible: int = 4) -> str:
    """
    Render a credential as `****abcd` so it can be logged.

    Keys no longer than twice `visible` are masked entirely.
    """
    if not api_key or not isinstance(api_key, str):
        return ""
    shown = visible if len(api_key) > 2 * visible else 0
    return "*" * (len(api_key) - shown) + (api_key[-shown:] if shown else "")


def normalize_url(url: Optional[str]) -> str:
    if not url or not isinstance(url, str):
        return ""
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        return ""
    return url.rstrip("/")
