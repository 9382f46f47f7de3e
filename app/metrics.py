from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

# source: admin_grant | voucher | webhook | identity | fallback
ENTITLEMENT_EVENTS = Counter(
    "entitlement_events_total",
    "Entitlement writes and rejections by source",
    ["source", "outcome"],
)
