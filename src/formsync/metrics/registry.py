"""
Prometheus metrics for the delivery pipeline.
Exposed by `formsync dispatch --loop` when FORMSYNC_METRICS_PORT is set.
"""

from prometheus_client import Counter, Histogram


# --- Cache ---

CACHE_REQUESTS_TOTAL = Counter(
    "formsync_cache_requests_total",
    "Cache lookups by outcome",
    ["outcome"],  # hit | miss | error
)

# --- Queue / dispatch ---

QUEUE_CLAIMED_TOTAL = Counter(
    "formsync_queue_claimed_total",
    "Queue items claimed for delivery",
    ["source"],  # batch | sweep
)

DELIVERY_TOTAL = Counter(
    "formsync_delivery_total",
    "Delivery attempts by integration and outcome",
    ["integration", "outcome"],  # completed | recovered | deferred | failed | aborted
)

DELIVERY_LATENCY_MS = Histogram(
    "formsync_delivery_latency_ms",
    "Outbound delivery latency in milliseconds",
    ["integration"],
    buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000],
)

# --- Recovery ---

RECOVERY_TOTAL = Counter(
    "formsync_recovery_total",
    "Recovery decisions by error kind and outcome",
    ["kind", "outcome"],
)

SWEEP_DISCARDED_TOTAL = Counter(
    "formsync_sweep_discarded_total",
    "Scheduled retries discarded at the attempt cap",
)
