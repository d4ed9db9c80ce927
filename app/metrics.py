from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a 5xx",
    ["method", "path", "status"],
)

CHECKOUT_RESULTS = Counter(
    "checkout_results_total",
    "Checkout attempts by outcome",
    ["outcome"],
)
GATEWAY_RETRIES = Counter(
    "gateway_retries_total",
    "Retried outbound payment gateway calls",
    ["operation"],
)
WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Inbound gateway webhooks by outcome",
    ["outcome"],
)
CONSISTENCY_ERRORS = Counter(
    "reconciliation_consistency_errors_total",
    "Orders flagged for manual review during reconciliation",
)
