from .backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from .layer import (
    LOG_STATS_PREFIX,
    LOGS_PREFIX,
    QUEUE_STATS_KEY,
    CacheLayer,
    CacheStats,
    CacheTTL,
    field_mappings_key,
    form_fields_key,
    log_stats_key,
    settings_key,
)

__all__ = [
    "CacheBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "CacheLayer",
    "CacheStats",
    "CacheTTL",
    "QUEUE_STATS_KEY",
    "LOG_STATS_PREFIX",
    "LOGS_PREFIX",
    "settings_key",
    "form_fields_key",
    "field_mappings_key",
    "log_stats_key",
]
