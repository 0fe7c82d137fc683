import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests handled",
    ["service", "method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["service", "method", "path"],
)
ORDERS_CREATED = Counter("orders_created_total", "Order placement attempts by outcome", ["outcome"])
ORDER_TRANSITIONS = Counter(
    "order_transitions_total",
    "Applied order status transitions",
    ["from_status", "to_status", "actor"],
)
DELIVERY_REQUESTS_OPENED = Counter("delivery_requests_opened_total", "Delivery requests opened")
DELIVERY_ACCEPTS = Counter(
    "delivery_accept_attempts_total",
    "Courier accept attempts by outcome",
    ["outcome"],
)
NOTIFICATIONS_FAILED = Counter("notifications_failed_total", "Events the notification service did not take")


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, service_name: str):
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        # route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUEST_LATENCY.labels(self.service_name, request.method, path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(self.service_name, request.method, path, str(response.status_code)).inc()
        return response


def metrics_endpoint() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
