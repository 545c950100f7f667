"""Prometheus metrics for attempts, reconciliation outcomes and processor performance"""

from prometheus_client import Counter, Histogram

# Attempt metrics
attempt_counter = Counter(
    "settle_attempt_total",
    "Payment attempt workflow outcomes",
    ["operation", "outcome"],  # create|retry|cancel|refund|sweep, created|reused|failed|...
)

obligation_transition_counter = Counter(
    "settle_obligation_transition_total",
    "Obligation status transitions",
    ["to_status"],
)

# Webhook metrics
webhook_counter = Counter(
    "settle_webhook_total",
    "Inbound processor notifications by reconciliation outcome",
    ["outcome"],  # processed | duplicate | unresolved | ignored | failed | ...
)

webhook_signature_failure_counter = Counter(
    "settle_webhook_signature_failures_total",
    "Inbound notifications failing signature verification",
)

# Processor API metrics
gateway_latency_histogram = Histogram(
    "settle_gateway_latency_seconds",
    "Payment processor response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "settle_gateway_failures_total",
    "Failed payment processor calls",
    ["operation", "retryable"],
)

concurrent_update_retry_counter = Counter(
    "settle_concurrent_update_retries_total",
    "Units of work re-run after an optimistic concurrency conflict",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_attempt(operation: str, outcome: str) -> None:
    attempt_counter.labels(operation=operation, outcome=outcome).inc()


def record_webhook(outcome: str) -> None:
    webhook_counter.labels(outcome=outcome).inc()
