"""
Namespaced cache with TTLs, negative caching and prefix invalidation.

The cache is a disposable projection of the stores. Every backend failure is
logged and reported as a miss (reads) or ``False`` (writes) so callers always
fall through to the authoritative store.

Prefix invalidation has two explicit strategies:

- ``"index"`` (default): each ``set`` records the key in a per-group index kept
  by the backend; ``delete_by_prefix`` deletes only the indexed keys that match.
- ``"flush"``: ``delete_by_prefix`` flushes the whole group, evicting unrelated
  values as well. No index is maintained.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, TypeVar

from loguru import logger

from formsync.cache.backends import CacheBackend
from formsync.metrics.registry import CACHE_REQUESTS_TOTAL
from formsync_client.models import LogFilters
from formsync_client.utils import json_default

T = TypeVar("T")
Invalidation = Literal["index", "flush"]

_MISSING = object()


class CacheTTL:
    """Default lifetimes in seconds by data class."""

    SETTINGS = 7200
    FORM_FIELDS = 3600
    FIELD_MAPPINGS = 3600
    STATS = 900
    NEGATIVE = 1800


# --- key convention shared with the stores ---

QUEUE_STATS_KEY = "queue_stats"
LOG_STATS_PREFIX = "log_stats_"
LOGS_PREFIX = "logs_"


def settings_key(integration_id: str) -> str:
    return f"settings_{integration_id}"


def form_fields_key(form_id: int) -> str:
    return f"form_fields_{form_id}"


def field_mappings_key(form_id: int, integration_id: str) -> str:
    return f"field_mappings_{form_id}_{integration_id}"


def log_stats_key(filters: Optional[LogFilters]) -> str:
    token = (filters or LogFilters()).cache_token()
    return LOG_STATS_PREFIX + hashlib.md5(token.encode()).hexdigest()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class CacheLayer:
    def __init__(
        self,
        backend: CacheBackend,
        group: str = "formsync",
        invalidation: Invalidation = "index",
    ):
        if invalidation not in ("index", "flush"):
            raise ValueError(f"Unknown invalidation strategy: {invalidation!r}")
        self._backend = backend
        self._group = group
        self._invalidation = invalidation
        self._stats = CacheStats()

    @property
    def invalidation(self) -> str:
        return self._invalidation

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        self._stats.errors += 1
        CACHE_REQUESTS_TOTAL.labels(outcome="error").inc()
        logger.warning(f"Cache {op} failed for {self._group}:{key}: {type(exc).__name__}: {exc}")

    # ---------- primitives ----------

    def get(self, key: str) -> tuple[Any, bool]:
        """Return ``(value, found)``. Absent, expired and unreadable entries are misses."""
        try:
            raw = self._backend.get(self._group, key)
        except Exception as e:
            self._failed("get", key, e)
            return None, False
        value = _MISSING
        if raw is not None:
            try:
                value = json.loads(raw)["v"]
            except (TypeError, ValueError, KeyError):
                logger.warning(f"Discarding undecodable cache entry {self._group}:{key}")
        if value is _MISSING:
            self._stats.misses += 1
            CACHE_REQUESTS_TOTAL.labels(outcome="miss").inc()
            return None, False
        self._stats.hits += 1
        CACHE_REQUESTS_TOTAL.labels(outcome="hit").inc()
        return value, True

    def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            raw = json.dumps({"v": value}, default=json_default)
            self._backend.set(self._group, key, raw, ttl)
            if self._invalidation == "index":
                self._backend.track(self._group, key)
        except Exception as e:
            self._failed("set", key, e)
            return False
        self._stats.sets += 1
        return True

    def delete(self, key: str) -> bool:
        try:
            self._backend.delete(self._group, key)
            if self._invalidation == "index":
                self._backend.untrack(self._group, key)
        except Exception as e:
            self._failed("delete", key, e)
            return False
        return True

    def delete_by_prefix(self, prefix: str) -> bool:
        try:
            if self._invalidation == "flush":
                evicted = self._backend.flush(self._group)
                logger.debug(
                    f"Flushed cache group {self._group} ({evicted} entries) for prefix {prefix!r}"
                )
                return True
            pruned = self._backend.prune(self._group)
            if pruned:
                logger.debug(f"Pruned {pruned} expired keys from the {self._group} index")
            for key in self._backend.tracked(self._group):
                if key.startswith(prefix):
                    self._backend.delete(self._group, key)
                    self._backend.untrack(self._group, key)
        except Exception as e:
            self._failed("delete_by_prefix", prefix, e)
            return False
        return True

    def get_or_compute(
        self,
        key: str,
        ttl: int,
        fn: Callable[[], T],
        negative_ttl: Optional[int] = None,
    ) -> T:
        """Cached value of ``fn()``.

        A ``None`` result is cached for ``negative_ttl`` seconds and then served
        as found; without ``negative_ttl`` it is not cached at all. Concurrent
        misses may each call ``fn``.

        ``fn`` must read the authoritative store and raise when it cannot; an
        exception propagates and nothing is cached.
        """
        value, found = self.get(key)
        if found:
            return value
        value = fn()
        if value is None:
            if negative_ttl:
                self.set(key, None, negative_ttl)
        else:
            self.set(key, value, ttl)
        return value

    # ---------- admin ----------

    def flush(self) -> bool:
        try:
            self._backend.flush(self._group)
        except Exception as e:
            self._failed("flush", "*", e)
            return False
        return True

    def stats(self) -> CacheStats:
        return CacheStats(**vars(self._stats))

    def healthy(self) -> bool:
        try:
            return self._backend.ping()
        except Exception as e:
            self._failed("ping", "*", e)
            return False
