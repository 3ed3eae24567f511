"""
Minimal asyncio HTTP endpoint for metrics and scheduler status.

Endpoints:
- GET /health  - Liveness check, 200 while the process is up
- GET /status  - Scheduler status JSON
- GET /metrics - Prometheus text exposition of the FleetMetrics registry
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from algofleet.monitoring.metrics_rich import FleetMetrics

log = logging.getLogger("algofleet")


def _response(status: bytes, content_type: bytes, body: bytes) -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Content-Length: " + str(len(body)).encode() + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


def render_request(
    path: str,
    metrics: FleetMetrics,
    status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
) -> bytes:
    """Build the full HTTP response for one request path."""
    parsed = urlparse(path)

    if parsed.path == "/health":
        return _response(b"200 OK", b"application/json", json.dumps({"healthy": True}).encode())

    if parsed.path.startswith("/status"):
        if status_provider is None:
            return _response(b"404 Not Found", b"application/json", b"{}")
        try:
            body = json.dumps(status_provider(), default=str).encode()
        except Exception as exc:
            log.error(json.dumps({"event": "status_render_failed", "error": str(exc)}))
            return _response(b"500 Internal Server Error", b"application/json", b"{}")
        return _response(b"200 OK", b"application/json", body)

    if parsed.path in ("/", "/metrics"):
        return _response(b"200 OK", CONTENT_TYPE_LATEST.encode(), generate_latest(metrics.get_registry()))

    return _response(b"404 Not Found", b"text/plain", b"not found")


async def start_metrics_server(
    metrics: FleetMetrics,
    port: int,
    status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            req = await reader.read(2048)
            path = "/"
            first_line = req.split(b"\r\n", 1)[0]
            parts = first_line.split(b" ")
            if len(parts) >= 2:
                path = parts[1].decode("utf-8", errors="ignore")
            writer.write(render_request(path, metrics, status_provider))
            await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, host, port)
    log.info(json.dumps({"event": "metrics_server_started", "host": host, "port": port}))
    return server
