from __future__ import annotations

"""Prometheus metrics for the Assistant Hub API.

Adds an HTTP middleware that records request latency per method/path/status,
plus turn and provider instruments used by the turn pipeline.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "assistant_hub_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

TURNS_TOTAL = Counter(
    "assistant_hub_turns_total",
    "Turn requests processed, by mode and outcome",
    labelnames=("mode", "outcome"),
)

# Completion calls are slow; buckets extend to a minute.
PROVIDER_LATENCY = Histogram(
    "assistant_hub_provider_latency_seconds",
    "Latency of completion and transcription calls in seconds",
    labelnames=("operation", "provider"),
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g. /conversations/{id}) to a coarse label."""
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
            # Metrics never fail a request
            pass
        return response

    return middleware
