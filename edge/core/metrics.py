from prometheus_client import (
    Counter,
    Summary,
    Gauge,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST
)

registry = CollectorRegistry()

REQUEST_COUNT = Counter(
    "edge_requests_total",
    "Total number of requests handled by the edge router",
    ["method", "upstream", "status"],
    registry=registry
)

REQUEST_DURATION = Summary(
    "edge_request_duration_seconds",
    "Time spent waiting on the upstream response head",
    ["upstream"],
    registry=registry
)

ACTIVE_REQUESTS = Gauge(
    "edge_concurrent_requests",
    "Current number of requests in flight to an upstream",
    registry=registry
)

UPSTREAM_ERRORS = Counter(
    "edge_upstream_errors_total",
    "Upstream failures by kind (timeout, connect, transport)",
    ["upstream", "kind"],
    registry=registry
)


def render_prometheus_metrics() -> tuple[bytes, str]:
    return generate_latest(registry), CONTENT_TYPE_LATEST
