"""
Key/value backends for the cache layer.

Backends store opaque strings per ``(group, key)`` with a TTL and keep an
optional per-group key index. They may raise on failure; the cache layer is
responsible for turning failures into misses.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Protocol

import redis
from loguru import logger


class CacheBackend(Protocol):
    """Minimal primitives the cache layer needs from a store."""

    def get(self, group: str, key: str) -> Optional[str]: ...

    def set(self, group: str, key: str, value: str, ttl: int) -> None: ...

    def delete(self, group: str, key: str) -> bool: ...

    def flush(self, group: str) -> int: ...

    def track(self, group: str, key: str) -> None: ...

    def untrack(self, group: str, key: str) -> None: ...

    def tracked(self, group: str) -> set[str]: ...

    def prune(self, group: str) -> int:
        """Drop indexed keys whose value has expired; returns how many."""
        ...

    def ping(self) -> bool: ...


class MemoryCacheBackend:
    """Process-local backend. Expiry is checked lazily against ``clock``."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[tuple[str, str], tuple[str, Optional[float]]] = {}
        self._index: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def get(self, group: str, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get((group, key))
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[(group, key)]
                return None
            return value

    def set(self, group: str, key: str, value: str, ttl: int) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else None
        with self._lock:
            self._data[(group, key)] = (value, expires_at)

    def delete(self, group: str, key: str) -> bool:
        with self._lock:
            return self._data.pop((group, key), None) is not None

    def flush(self, group: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k[0] == group]
            for k in doomed:
                del self._data[k]
            self._index.pop(group, None)
        return len(doomed)

    def track(self, group: str, key: str) -> None:
        with self._lock:
            self._index.setdefault(group, set()).add(key)

    def untrack(self, group: str, key: str) -> None:
        with self._lock:
            self._index.get(group, set()).discard(key)

    def tracked(self, group: str) -> set[str]:
        with self._lock:
            return set(self._index.get(group, set()))

    def prune(self, group: str) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                k
                for k, (_, expires_at) in self._data.items()
                if k[0] == group and expires_at is not None and now >= expires_at
            ]
            for k in expired:
                del self._data[k]
            index = self._index.get(group, set())
            gone = {key for key in index if (group, key) not in self._data}
            index -= gone
        return len(gone)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._data)


class RedisCacheBackend:
    """Shared backend on Redis.

    Values live at ``{prefix}{group}:{key}``. The key index of a group is a
    Redis set at ``{prefix}{group}#index``, outside the value namespace, so no
    caller key can overwrite it.
    """

    INDEX_SUFFIX = "#index"

    def __init__(self, client: redis.Redis, key_prefix: str = "formsync:"):
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "formsync:", **kwargs) -> "RedisCacheBackend":
        client = redis.Redis.from_url(url, decode_responses=True, **kwargs)
        logger.info(f"Redis cache backend enabled (prefix={key_prefix})")
        return cls(client, key_prefix=key_prefix)

    def _key(self, group: str, key: str) -> str:
        return f"{self._prefix}{group}:{key}"

    def _index_key(self, group: str) -> str:
        return f"{self._prefix}{group}{self.INDEX_SUFFIX}"

    def get(self, group: str, key: str) -> Optional[str]:
        value = self._redis.get(self._key(group, key))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    def set(self, group: str, key: str, value: str, ttl: int) -> None:
        if ttl > 0:
            self._redis.setex(self._key(group, key), ttl, value)
        else:
            self._redis.set(self._key(group, key), value)

    def delete(self, group: str, key: str) -> bool:
        return bool(self._redis.delete(self._key(group, key)))

    def flush(self, group: str) -> int:
        keys = list(self._redis.scan_iter(match=f"{self._prefix}{group}:*"))
        evicted = int(self._redis.delete(*keys)) if keys else 0
        self._redis.delete(self._index_key(group))
        return evicted

    def track(self, group: str, key: str) -> None:
        self._redis.sadd(self._index_key(group), key)

    def untrack(self, group: str, key: str) -> None:
        self._redis.srem(self._index_key(group), key)

    def tracked(self, group: str) -> set[str]:
        members = self._redis.smembers(self._index_key(group))
        return {m.decode() if isinstance(m, bytes) else m for m in members}

    def prune(self, group: str) -> int:
        members = sorted(self.tracked(group))
        if not members:
            return 0
        pipe = self._redis.pipeline()
        for key in members:
            pipe.exists(self._key(group, key))
        gone = [key for key, alive in zip(members, pipe.execute()) if not alive]
        if gone:
            self._redis.srem(self._index_key(group), *gone)
        return len(gone)

    def ping(self) -> bool:
        return bool(self._redis.ping())
