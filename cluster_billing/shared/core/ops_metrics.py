"""
Operational metrics for the billing pipeline.

Exposed through prometheus_client; the API process serves them on /metrics.
"""

from prometheus_client import Counter, Histogram

# --- Aggregation ---
BILLING_WINDOWS_TOTAL = Counter(
    "cluster_billing_windows_total",
    "Billing windows computed by the aggregation engine",
    ["status"],  # success, failure
)

BILLING_WINDOW_DURATION = Histogram(
    "cluster_billing_window_duration_seconds",
    "Duration of a full billing window computation",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
)

ALLOCATION_FETCH_DURATION = Histogram(
    "cluster_billing_allocation_fetch_duration_seconds",
    "Latency of OpenCost allocation requests",
    ["aggregate", "cache"],  # cache: hit, miss
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

METRICS_QUERY_FAILURES = Counter(
    "cluster_billing_metrics_query_failures_total",
    "Prometheus queries that failed or returned an unexpected shape",
    ["kind"],  # scalar, vector
)

# --- Persistence ---
SNAPSHOTS_WRITTEN = Counter(
    "cluster_billing_snapshots_written_total",
    "Billing snapshot writes",
    ["status"],  # success, failure
)

# --- API ---
API_ERRORS_TOTAL = Counter(
    "cluster_billing_api_errors_total",
    "API errors by path and status code",
    ["path", "method", "status_code"],
)
