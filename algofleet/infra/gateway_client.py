"""
Async HTTP client for remote broker gateways with retry and failure
classification.

Every logical operation (ping, funds, position book, cancel, ...) is a JSON
request to `{endpoint_url}{api_prefix}/{operation}` carrying the instance
credential as `apikey`. Replies are enveloped as `{"status": "success" |
"error", "data": ..., "message": ...}`.

Failure classification:
    - timeout, connection failure, HTTP 5xx      -> TransientNetworkError
    - HTTP 4xx, `status == "error"`, bad envelope -> PermanentRemoteError

Transient failures are retried up to `max_retries` times with delays of
`retry_delay_sec * 2**attempt`; permanent failures are raised immediately.
Timeouts are per call; nothing here mutates local state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from algofleet.core.errors import PermanentRemoteError, RemoteError, TransientNetworkError
from algofleet.core.models import Instance, Quote
from algofleet.utils import mask_api_key

if TYPE_CHECKING:
    from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")


@dataclass
class GatewayConfig:
    """Configuration for GatewayClient."""
    timeout_sec: float = 15.0
    max_retries: int = 3
    retry_delay_sec: float = 1.0
    api_prefix: str = "/api/v1"
    http2: bool = True

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


def _rows(reply: Dict[str, Any], key: str, operation: str) -> List[Dict[str, Any]]:
    """Unwrap a book reply: `data` is either a list of rows or a dict holding one under `key`."""
    data = reply.get("data") or []
    if isinstance(data, dict) and key in data:
        data = data[key] or []
    if not isinstance(data, list) or not all(isinstance(row, dict) for row in data):
        raise PermanentRemoteError("Malformed response envelope", operation=operation)
    return list(data)


class GatewayClient:
    """
    Resilient client shared by every managed instance.

    Usage:
        client = GatewayClient(GatewayConfig(timeout_sec=10))
        funds = await client.get_funds(instance)
        await client.close()

    A shared httpx.AsyncClient may be injected; it is then left open by
    close(). `sleep` is injectable so tests can observe backoff delays.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional["FleetMetrics"] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=self.config.http2, timeout=self.config.timeout_sec)
            self._owns_client = True
        self._sleep = sleep
        self.metrics = metrics
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def build_url(self, instance: Instance, operation: str) -> str:
        prefix = "/" + self.config.api_prefix.strip("/") if self.config.api_prefix.strip("/") else ""
        return f"{instance.endpoint_url.rstrip('/')}{prefix}/{operation.lstrip('/')}"

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt + 1` (attempt is 0-based)."""
        return self.config.retry_delay_sec * (2 ** attempt)

    async def call(
        self,
        instance: Instance,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        method: str = "POST",
    ) -> Dict[str, Any]:
        """
        Execute one logical operation against one instance.

        Returns the decoded reply envelope. Raises TransientNetworkError once
        retries are exhausted, PermanentRemoteError immediately.
        """
        if not instance.endpoint_url or not instance.api_key:
            raise PermanentRemoteError(
                "Instance endpoint URL and API key are required", operation=operation, status_code=400
            )

        method = method.upper()
        url = self.build_url(instance, operation)
        data = dict(payload or {})
        body = {**data, "apikey": instance.api_key}

        self._log_event(
            "gateway_request",
            level=logging.DEBUG,
            instance_id=instance.id,
            operation=operation,
            method=method,
            url=url,
            payload={**data, "apikey": mask_api_key(instance.api_key)},
        )

        last_error: Optional[RemoteError] = None
        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            start = time.perf_counter()
            try:
                reply = await self._send(url, method, body, operation)
            except PermanentRemoteError as exc:
                self._record(operation, "permanent", start)
                self._log_event(
                    "gateway_failed",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    operation=operation,
                    kind=exc.kind.value,
                    status_code=exc.remote_status,
                    attempt=attempt + 1,
                    error=exc.message,
                )
                raise
            except TransientNetworkError as exc:
                self._record(operation, "transient", start)
                last_error = exc
                if attempt < self.config.max_retries:
                    delay = self.retry_delay(attempt)
                    self._log_event(
                        "gateway_retry",
                        level=logging.WARNING,
                        instance_id=instance.id,
                        operation=operation,
                        attempt=attempt + 1,
                        max_retries=self.config.max_retries,
                        delay_sec=delay,
                        error=exc.message,
                    )
                    if self.metrics:
                        self.metrics.gateway_retries.labels(operation=operation).inc()
                    await self._sleep(delay)
                continue
            self._record(operation, "ok", start)
            return reply

        assert last_error is not None
        self._log_event(
            "gateway_failed",
            level=logging.ERROR,
            instance_id=instance.id,
            operation=operation,
            kind=last_error.kind.value,
            status_code=last_error.remote_status,
            attempts=attempts,
            error=last_error.message,
        )
        raise last_error

    def _record(self, operation: str, outcome: str, start: float) -> None:
        if not self.metrics:
            return
        self.metrics.gateway_requests.labels(operation=operation, outcome=outcome).inc()
        self.metrics.gateway_latency_ms.labels(operation=operation).observe((time.perf_counter() - start) * 1000)

    async def _send(self, url: str, method: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout": self.config.timeout_sec}
        if method != "GET":
            kwargs["json"] = body
        try:
            # httpx timeouts apply per phase; wait_for bounds the whole call
            resp = await asyncio.wait_for(
                self.client.request(method, url, **kwargs), timeout=self.config.timeout_sec
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            raise TransientNetworkError(
                f"Request timeout after {self.config.timeout_sec}s", operation=operation
            ) from None
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Network error: {exc}", operation=operation) from exc

        status = resp.status_code
        try:
            data = resp.json()
        except ValueError:
            message = f"Invalid JSON response: {resp.text[:200]}"
            if status >= 500:
                raise TransientNetworkError(message, operation=operation, status_code=status) from None
            raise PermanentRemoteError(message, operation=operation, status_code=status) from None

        message = data.get("message") if isinstance(data, dict) else None
        if status >= 500:
            raise TransientNetworkError(message or f"HTTP {status}", operation=operation, status_code=status)
        if status >= 400:
            raise PermanentRemoteError(message or f"HTTP {status}", operation=operation, status_code=status)
        if not isinstance(data, dict) or "status" not in data:
            raise PermanentRemoteError("Malformed response envelope", operation=operation, status_code=status)
        if str(data["status"]).lower() == "error":
            raise PermanentRemoteError(
                message or "Remote returned error status", operation=operation, status_code=status
            )
        return data

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def ping(self, instance: Instance) -> Dict[str, Any]:
        reply = await self.call(instance, "ping")
        return reply.get("data") or {}

    async def get_analyzer_status(self, instance: Instance) -> Dict[str, Any]:
        reply = await self.call(instance, "analyzer")
        return reply.get("data") or {}

    async def toggle_analyzer(self, instance: Instance, mode: bool) -> Dict[str, Any]:
        reply = await self.call(instance, "analyzer/toggle", {"mode": bool(mode)})
        return reply.get("data") or {}

    async def get_funds(self, instance: Instance) -> Dict[str, Any]:
        reply = await self.call(instance, "funds")
        return reply.get("data") or {}

    async def get_holdings(self, instance: Instance) -> List[Dict[str, Any]]:
        reply = await self.call(instance, "holdings")
        return _rows(reply, "holdings", "holdings")

    # ------------------------------------------------------------------
    # Orders / positions / trades
    # ------------------------------------------------------------------

    async def get_order_book(self, instance: Instance) -> List[Dict[str, Any]]:
        reply = await self.call(instance, "orderbook")
        return _rows(reply, "orders", "orderbook")

    async def get_position_book(self, instance: Instance) -> List[Dict[str, Any]]:
        reply = await self.call(instance, "positionbook")
        return _rows(reply, "positions", "positionbook")

    async def get_trade_book(self, instance: Instance) -> List[Dict[str, Any]]:
        reply = await self.call(instance, "tradebook")
        return _rows(reply, "trades", "tradebook")

    async def place_smart_order(self, instance: Instance, order: Dict[str, Any]) -> Dict[str, Any]:
        if instance.strategy_tag and "strategy" not in order:
            order = {**order, "strategy": instance.strategy_tag}
        reply = await self.call(instance, "placesmartorder", order)
        data = reply.get("data") if isinstance(reply.get("data"), dict) else {}
        return {"orderid": reply.get("orderid") or data.get("orderid"), "status": reply.get("status")}

    async def cancel_order(self, instance: Instance, order_id: str, strategy: Optional[str] = None) -> Dict[str, Any]:
        reply = await self.call(
            instance, "cancelorder", {"orderid": order_id, "strategy": strategy or instance.strategy_tag}
        )
        data = reply.get("data") if isinstance(reply.get("data"), dict) else {}
        return {"orderid": reply.get("orderid") or data.get("orderid"), "status": reply.get("status")}

    async def cancel_all_orders(self, instance: Instance, strategy: Optional[str] = None) -> Dict[str, Any]:
        reply = await self.call(instance, "cancelallorder", {"strategy": strategy or instance.strategy_tag})
        return reply.get("data") or reply

    async def close_position(self, instance: Instance, strategy: Optional[str] = None) -> Dict[str, Any]:
        reply = await self.call(instance, "closeposition", {"strategy": strategy or instance.strategy_tag})
        return reply.get("data") or reply

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_quotes(self, instance: Instance, exchange: str, symbols: Sequence[str]) -> List[Quote]:
        """
        Latest quotes for one exchange group.

        The remote quotes operation takes one symbol per call, so the group
        is fetched concurrently; symbols that fail are logged and dropped.
        """
        async def _one(symbol: str) -> Quote:
            reply = await self.call(instance, "quotes", {"exchange": exchange, "symbol": symbol})
            return Quote.from_remote(exchange, symbol, reply.get("data") or {})

        results = await asyncio.gather(*(_one(s) for s in symbols), return_exceptions=True)
        quotes: List[Quote] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self._log_event(
                    "quote_fetch_failed",
                    level=logging.WARNING,
                    instance_id=instance.id,
                    exchange=exchange,
                    symbol=symbol,
                    error=str(result),
                )
                continue
            quotes.append(result)
        return quotes

    # ------------------------------------------------------------------
    # Utility
    # ------------------------------------------------------------------

    async def validate_connection(self, instance: Instance) -> bool:
        try:
            await self.ping(instance)
            return True
        except RemoteError:
            return False
