"""
Prometheus metrics for application monitoring.
"""
import time

from fastapi import Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE,
    generate_latest as generate_latest_openmetrics,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Inventory metrics
stock_reservations_total = Counter(
    'stock_reservations_total',
    'Reservation attempts by result',
    ['result']  # created | updated | rejected
)

stock_releases_total = Counter(
    'stock_releases_total',
    'Reservations released by holders'
)

stock_confirmations_total = Counter(
    'stock_confirmations_total',
    'Stock confirmations by mode',
    ['mode']  # reserved | direct | clamped | duplicate
)

expired_reservations_swept_total = Counter(
    'expired_reservations_swept_total',
    'Expired reservations released by the sweeper'
)

stock_adjustments_total = Counter(
    'stock_adjustments_total',
    'Administrative stock adjustments',
    ['direction']  # add | subtract
)

# Payment metrics
payment_reconciliation_total = Counter(
    'payment_reconciliation_total',
    'Payment reconciliation outcomes',
    ['outcome']
)

gateway_lookup_duration_seconds = Histogram(
    'gateway_lookup_duration_seconds',
    'Payment gateway lookup latency in seconds',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

orders_finalized_total = Counter(
    'orders_finalized_total',
    'Orders confirmed after payment or cash-on-delivery checkout',
    ['payment_method']
)


def _endpoint_label(request: Request) -> str:
    """Route template (``/admin/inventory/{variant_id}``) so ids don't explode label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(time.perf_counter() - start_time)


def get_metrics_response(openmetrics: bool = False) -> Response:
    """Render all registered metrics in Prometheus or OpenMetrics text format."""
    if openmetrics:
        return Response(content=generate_latest_openmetrics(), media_type=OPENMETRICS_CONTENT_TYPE)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
