import time
import logging

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

log = logging.getLogger("catalog.http")

# --- Metric objects ---
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Request latency seconds",
    labelnames=["path", "method"],
)
OPERATION_LATENCY = Histogram(
    "operation_latency_seconds",
    "Duration of core operations (query, sync)",
    labelnames=["op"],
)
CACHE_HITS = Counter("cache_hits_total", "Query cache hits")
CACHE_MISSES = Counter("cache_misses_total", "Query cache misses")
CACHE_ERRORS = Counter(
    "cache_errors_total", "Cache operation errors", labelnames=["op"]
)
UPSTREAM_ERRORS = Counter("upstream_errors_total", "Failed upstream page fetches")
SYNC_RECORDS = Counter(
    "sync_records_total",
    "Records reconciled from upstream",
    labelnames=["outcome"],
)


def record_cache_hit() -> None:
    CACHE_HITS.inc()


def record_cache_miss() -> None:
    CACHE_MISSES.inc()


def record_cache_error(op: str) -> None:
    CACHE_ERRORS.labels(op=op).inc()


def record_upstream_error() -> None:
    UPSTREAM_ERRORS.inc()


def record_sync_outcome(outcome: str) -> None:
    SYNC_RECORDS.labels(outcome=outcome).inc()


def observe_operation(op: str, seconds: float) -> None:
    OPERATION_LATENCY.labels(op=op).observe(seconds)


# --- Installation: request logging/metrics middleware + /metrics endpoint ---
def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            dur = time.perf_counter() - t0
            REQUEST_LATENCY.labels(
                path=request.url.path, method=request.method
            ).observe(dur)
            REQUESTS.labels(
                path=request.url.path, method=request.method, status=str(status)
            ).inc()
            log.info(
                "http method=%s path=%s status=%d duration_ms=%.1f client=%s",
                request.method,
                request.url.path,
                status,
                dur * 1000,
                request.client.host if request.client else "-",
            )

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
