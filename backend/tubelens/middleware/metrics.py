"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes run-level
counters/gauges for pipelines, event logs and attached streams.
"""

import re
import time

from prometheus_client import Counter, Histogram, Gauge
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Pipeline metrics ─────────────────────────────────────────────────────────

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total pipeline runs by outcome",
    ["pipeline", "status"],
)

pipeline_duration_seconds = Histogram(
    "pipeline_duration_seconds",
    "Pipeline run duration in seconds",
    ["pipeline"],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0, 1800.0),
)

pipeline_runs_in_flight = Gauge(
    "pipeline_runs_in_flight",
    "Pipeline tasks currently executing in this process",
)

dedup_attach_total = Counter(
    "dedup_attach_total",
    "Requests attached to an already in-flight run instead of starting one",
    ["pipeline"],
)

# ── Event log metrics ────────────────────────────────────────────────────────

run_events_appended_total = Counter(
    "run_events_appended_total",
    "Events appended to run event logs",
    ["kind"],
)

active_event_streams = Gauge(
    "active_event_streams",
    "SSE readers currently attached to a run event log",
)

_RUN_ID_RE = re.compile(r"^run_[0-9a-f]{32}$")


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/extraction/dQw4w9WgXcQ/run_ab12... → /api/extraction/{id}/{run_id}
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if _RUN_ID_RE.match(part):
            normalized.append("{run_id}")
        elif i == 2 and parts[1] in ("analysis", "extraction", "slide-analysis", "transcripts"):
            normalized.append("{id}")
        elif part.isdigit():
            normalized.append("{n}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
