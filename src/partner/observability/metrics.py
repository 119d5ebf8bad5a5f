from __future__ import annotations

"""Prometheus metrics for the partner API and streaming core.

Adds an HTTP middleware that records request latency per method/path/status
and counters for streamed chunks and send-cycle outcomes.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "partner_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

STREAM_CHUNKS = Counter(
    "partner_stream_chunks_total",
    "Streamed reply chunks applied to a session",
)

STREAM_OUTCOMES = Counter(
    "partner_stream_outcomes_total",
    "Finished send cycles by terminal phase",
    labelnames=("phase",),
)

PLAYBACKS = Counter(
    "partner_playbacks_total",
    "Speech playback attempts by result",
    labelnames=("result",),
)


def record_chunk() -> None:
    STREAM_CHUNKS.inc()


def record_outcome(phase: str) -> None:
    STREAM_OUTCOMES.labels(phase=phase).inc()


def record_playback(result: str) -> None:
    PLAYBACKS.labels(result=result).inc()


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chat/sessions/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
