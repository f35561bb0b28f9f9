from __future__ import annotations

"""Prometheus metrics for the chatrelay FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status,
and counters for stream lifecycle transitions.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "chatrelay_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

STREAM_TRANSITIONS = Counter(
    "chatrelay_stream_transitions_total",
    "Stream records entering a status",
    labelnames=("status",),
)

STREAM_RACES_LOST = Counter(
    "chatrelay_stream_conditional_misses_total",
    "Conditional stream updates that matched no record",
    labelnames=("operation",),
)


def record_transition(status: str, count: int = 1) -> None:
    if count <= 0:
        return
    try:
        STREAM_TRANSITIONS.labels(status=status).inc(count)
    except Exception:
        # Metrics never block lifecycle updates
        pass


def record_miss(operation: str) -> None:
    try:
        STREAM_RACES_LOST.labels(operation=operation).inc()
    except Exception:
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /streams/{id}/resume) to a coarse label.

    Keeps the first two static segments so /api/streams and /streams stay distinct.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            pass
        return response

    return middleware
