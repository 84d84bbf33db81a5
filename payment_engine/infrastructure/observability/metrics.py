"""Prometheus metrics for transaction outcomes, fraud flags and gateway health"""

from prometheus_client import Counter, Histogram, Gauge

# Transaction metrics
transaction_counter = Counter(
    "payment_transactions_total",
    "Transactions reaching a terminal status",
    ["status", "kind"],  # succeeded | failed | dropped
)

rejection_counter = Counter(
    "payment_rejections_total",
    "Transactions rejected or failed, by error kind",
    ["error_kind"],
)

attempts_histogram = Histogram(
    "payment_transaction_attempts",
    "Provider attempts per submitted transaction",
    buckets=[1, 2, 3, 4, 5, 8],
)

# Fraud metrics
fraud_flag_counter = Counter(
    "payment_fraud_flags_total",
    "Transactions flagged as suspicious",
    ["signal"],  # attempt_rate | amount_anomaly
)

account_block_counter = Counter(
    "payment_account_blocks_total",
    "Accounts blocked after repeated security incidents",
)

# Gateway metrics
gateway_in_flight_gauge = Gauge(
    "payment_gateway_in_flight",
    "Requests currently in flight per gateway",
    ["gateway"],
)

failover_counter = Counter(
    "payment_gateway_failovers_total",
    "Failovers away from a gateway",
    ["from_gateway", "reason"],  # capacity | exhausted
)

provider_latency_histogram = Histogram(
    "payment_provider_latency_seconds",
    "Provider submit response time",
    ["gateway"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

provider_failure_counter = Counter(
    "payment_provider_failures_total",
    "Failed provider attempts",
    ["gateway", "reason"],  # transient | capacity | declined
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_outcome(status: str, kind: str, error_kind: str | None, attempt_count: int) -> None:
    """Record terminal transaction metrics"""
    transaction_counter.labels(status=status, kind=kind).inc()
    if error_kind:
        rejection_counter.labels(error_kind=error_kind).inc()

    # Rejections never reach a provider; only submitted transactions count attempts
    if attempt_count > 0:
        attempts_histogram.observe(attempt_count)
