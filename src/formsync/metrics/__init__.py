from .registry import (
    CACHE_REQUESTS_TOTAL,
    DELIVERY_LATENCY_MS,
    DELIVERY_TOTAL,
    QUEUE_CLAIMED_TOTAL,
    RECOVERY_TOTAL,
    SWEEP_DISCARDED_TOTAL,
)

__all__ = [
    "CACHE_REQUESTS_TOTAL",
    "DELIVERY_LATENCY_MS",
    "DELIVERY_TOTAL",
    "QUEUE_CLAIMED_TOTAL",
    "RECOVERY_TOTAL",
    "SWEEP_DISCARDED_TOTAL",
]
