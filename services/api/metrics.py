"""Prometheus metrics for the reconciliation API.

Request metrics are labelled by route template (``/api/v1/invoices/{invoice_id}``),
never by the concrete path. Reconciliation counters live in
services.pipeline.metrics; both sets share the default registry.
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

reconciler_http_requests_total = Counter(
    "reconciler_http_requests_total",
    "HTTP requests handled by the reconciliation API",
    ["method", "route", "status"],
)

reconciler_http_request_seconds = Histogram(
    "reconciler_http_request_seconds",
    "Time spent handling a request",
    ["method", "route"],
    buckets=(0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5),
)

reconcile_jobs_enqueued_total = Counter(
    "reconcile_jobs_enqueued_total",
    "Reconciliations handed to the arq worker",
)


def observe_request(method: str, route: str, status_code: int, seconds: float) -> None:
    reconciler_http_requests_total.labels(method=method, route=route, status=status_code).inc()
    reconciler_http_request_seconds.labels(method=method, route=route).observe(seconds)


def get_metrics() -> tuple[bytes, str]:
    """Render every registered metric in the OpenMetrics text format."""
    return generate_latest(), CONTENT_TYPE_LATEST
