"""
Cached read services over the stores.

Each service owns the cache keys of the data it shadows and invalidates them
on every write it performs. Values are cached as plain JSON structures and
re-validated into models on the way out.

Cached values are always computed from raising store reads, so a store
failure is never cached. Settings, form fields and mappings feed delivery and
let StoreError through; log and queue statistics are dashboard reads and
degrade to empty results, uncached.
"""

from __future__ import annotations

import hashlib
from typing import Any, Optional, Sequence

from loguru import logger

from formsync.cache.layer import (
    LOG_STATS_PREFIX,
    LOGS_PREFIX,
    QUEUE_STATS_KEY,
    CacheLayer,
    CacheTTL,
    field_mappings_key,
    form_fields_key,
    log_stats_key,
    settings_key,
)
from formsync_client.client import degrade_on_store_error
from formsync_client.logs import LogStore
from formsync_client.models import (
    FieldMapping,
    LogEntry,
    LogFilters,
    LogLevel,
    LogStats,
    QueueStatistics,
)
from formsync_client.queue import WorkQueueStore
from formsync_client.settings import FieldMappingStore, FormMetaStore, SettingsStore


class SettingsService:
    def __init__(self, store: SettingsStore, cache: CacheLayer, ttl: int = CacheTTL.SETTINGS):
        self._store = store
        self._cache = cache
        self._ttl = ttl

    def get(self, integration_id: str) -> dict[str, Any]:
        return self._cache.get_or_compute(
            settings_key(integration_id), self._ttl, lambda: self._store.fetch(integration_id)
        )

    def save(self, integration_id: str, settings: dict[str, Any]) -> int:
        count = self._store.save(integration_id, settings)
        self._cache.delete(settings_key(integration_id))
        return count


class FormService:
    def __init__(
        self,
        meta: FormMetaStore,
        cache: CacheLayer,
        ttl: int = CacheTTL.FORM_FIELDS,
        negative_ttl: int = CacheTTL.NEGATIVE,
    ):
        self._meta = meta
        self._cache = cache
        self._ttl = ttl
        self._negative_ttl = negative_ttl

    def get_form_fields(self, form_id: int) -> Optional[list[dict]]:
        """Field definitions, or None for an unknown form (remembered for ``negative_ttl``)."""
        return self._cache.get_or_compute(
            form_fields_key(form_id),
            self._ttl,
            lambda: self._meta.form_fields(form_id),
            negative_ttl=self._negative_ttl,
        )

    def save_form_fields(self, form_id: int, fields: list[dict]) -> bool:
        ok = self._meta.save_form_fields(form_id, fields)
        self._cache.delete(form_fields_key(form_id))
        return ok


class MappingService:
    def __init__(
        self, store: FieldMappingStore, cache: CacheLayer, ttl: int = CacheTTL.FIELD_MAPPINGS
    ):
        self._store = store
        self._cache = cache
        self._ttl = ttl

    def get(self, form_id: int, integration_id: str) -> list[FieldMapping]:
        rows = self._cache.get_or_compute(
            field_mappings_key(form_id, integration_id),
            self._ttl,
            lambda: [
                m.model_dump(mode="json") for m in self._store.fetch(form_id, integration_id)
            ],
        )
        return [FieldMapping.model_validate(r) for r in rows]

    def save(self, form_id: int, integration_id: str, mappings: Sequence[FieldMapping]) -> int:
        count = self._store.replace(form_id, integration_id, mappings)
        self._cache.delete(field_mappings_key(form_id, integration_id))
        return count


class AuditLogger:
    """Best-effort writer for the integration log.

    A failing append never reaches the delivery attempt that triggered it;
    the entry goes to the process log instead.
    """

    def __init__(self, store: LogStore, cache: CacheLayer, stats_ttl: int = CacheTTL.STATS):
        self._store = store
        self._cache = cache
        self._stats_ttl = stats_ttl

    def log(
        self,
        level: LogLevel,
        integration_id: str,
        message: str,
        form_id: int = 0,
        submission_id: Optional[int] = None,
        data: Optional[dict] = None,
    ) -> Optional[int]:
        try:
            entry = LogEntry(
                form_id=form_id or 0,
                submission_id=submission_id,
                integration_id=integration_id,
                status=LogLevel(level).value,
                message=message,
                data=data or {},
            )
            entry_id = self._store.append(entry)
        except Exception as exc:
            logger.error(
                f"Integration log append failed ({type(exc).__name__}: {exc}); "
                f"[{level}] {integration_id} form={form_id}: {message}"
            )
            return None
        self._cache.delete_by_prefix(LOGS_PREFIX)
        self._cache.delete_by_prefix(LOG_STATS_PREFIX)
        return entry_id

    def info(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]:
        return self.log(LogLevel.INFO, integration_id, message, **kwargs)

    def success(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]:
        return self.log(LogLevel.SUCCESS, integration_id, message, **kwargs)

    def warning(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]:
        return self.log(LogLevel.WARNING, integration_id, message, **kwargs)

    def error(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]:
        return self.log(LogLevel.ERROR, integration_id, message, **kwargs)

    @degrade_on_store_error(list)
    def query(
        self, filters: Optional[LogFilters] = None, limit: int = 50, offset: int = 0
    ) -> list[LogEntry]:
        token = f"{(filters or LogFilters()).cache_token()}|{limit}|{offset}"
        key = LOGS_PREFIX + hashlib.md5(token.encode()).hexdigest()
        rows = self._cache.get_or_compute(
            key,
            self._stats_ttl,
            lambda: [e.model_dump(mode="json") for e in self._store.fetch(filters, limit, offset)],
        )
        return [LogEntry.model_validate(r) for r in rows]

    @degrade_on_store_error(LogStats)
    def stats(self, filters: Optional[LogFilters] = None) -> LogStats:
        data = self._cache.get_or_compute(
            log_stats_key(filters),
            self._stats_ttl,
            lambda: self._store.fetch_stats(filters).model_dump(mode="json"),
        )
        return LogStats.model_validate(data)


class QueueMonitor:
    def __init__(self, queue: WorkQueueStore, cache: CacheLayer, ttl: int = CacheTTL.STATS):
        self._queue = queue
        self._cache = cache
        self._ttl = ttl

    @degrade_on_store_error(QueueStatistics)
    def statistics(self) -> QueueStatistics:
        data = self._cache.get_or_compute(
            QUEUE_STATS_KEY, self._ttl, lambda: self._queue.fetch_statistics().model_dump()
        )
        return QueueStatistics.model_validate(data)

    def invalidate(self) -> None:
        self._cache.delete(QUEUE_STATS_KEY)

    def retry_all_failed(self) -> int:
        count = self._queue.retry_all_failed()
        self.invalidate()
        return count

    def purge(self, older_than_days: int) -> int:
        count = self._queue.purge_terminal(older_than_days)
        self.invalidate()
        return count
