from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
TOKEN_REFRESH_TOTAL = Counter(
    "token_refresh_total",
    "Outcomes of access token freshness checks",
    labelnames=("outcome",),
)
PLATFORM_REQUEST_LATENCY_SECONDS = Histogram(
    "platform_request_latency_seconds",
    "Latency of outbound accounting platform calls in seconds",
    labelnames=("operation",),
)


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_platform_request(duration_seconds: float, operation: str) -> None:
    PLATFORM_REQUEST_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_token_refresh(outcome: str) -> None:
    TOKEN_REFRESH_TOTAL.labels(outcome=outcome).inc()


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
