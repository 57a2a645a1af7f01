"""Prometheus metrics shared by the API and the auth services."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "authbackend_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "authbackend_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
AUTH_EVENTS = Counter(
    "authbackend_auth_events_total",
    "Credential lifecycle outcomes",
    ["event"],
)
