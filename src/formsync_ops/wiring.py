"""
Builds the pipeline object graph from runtime settings.

Every component receives its collaborators through its constructor; this is
the only place that knows how they fit together.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger

from formsync.adapters import JsonApiAdapter
from formsync.cache import CacheBackend, CacheLayer, MemoryCacheBackend, RedisCacheBackend
from formsync.dispatcher import Dispatcher
from formsync.recovery import ErrorClassifier, RecoveryEngine
from formsync.services import (
    AuditLogger,
    FormService,
    MappingService,
    QueueMonitor,
    SettingsService,
)
from formsync.transport import ApiClient
from formsync_client import (
    AnalyticsStore,
    Database,
    FieldMappingStore,
    FormMetaStore,
    LogStore,
    SettingsCipher,
    SettingsStore,
    WorkQueueStore,
)
from formsync_ops.config import Settings


@dataclass
class Pipeline:
    db: Database
    cache: CacheLayer
    queue: WorkQueueStore
    logs: LogStore
    analytics: AnalyticsStore
    settings: SettingsService
    forms: FormService
    mappings: MappingService
    audit: AuditLogger
    monitor: QueueMonitor
    recovery: RecoveryEngine
    api: ApiClient
    dispatcher: Dispatcher

    def close(self) -> None:
        self.api.close()
        self.db.close()


def build_cache_backend(settings: Settings) -> CacheBackend:
    if settings.REDIS_URL:
        return RedisCacheBackend.from_url(settings.REDIS_URL, key_prefix=f"{settings.CACHE_GROUP}:")
    logger.info("REDIS_URL not set; using process-local cache")
    return MemoryCacheBackend()


def build_pipeline(
    settings: Settings,
    *,
    db: Optional[Database] = None,
    cache_backend: Optional[CacheBackend] = None,
    http_client: Optional[httpx.Client] = None,
) -> Pipeline:
    if not settings.SECRET_KEY:
        raise ValueError("FORMSYNC_SECRET_KEY must be set to encrypt integration credentials")
    db = db or Database(
        {
            "dsn": settings.database_url,
            "pool_min": settings.POOL_MIN,
            "pool_max": settings.POOL_MAX,
            "statement_timeout_ms": settings.STATEMENT_TIMEOUT_MS,
        }
    )
    cache = CacheLayer(
        cache_backend or build_cache_backend(settings),
        group=settings.CACHE_GROUP,
        invalidation=settings.CACHE_INVALIDATION,
    )

    queue = WorkQueueStore(db)
    logs = LogStore(db)
    analytics = AnalyticsStore(db)
    cipher = SettingsCipher.from_secret(settings.SECRET_KEY)

    settings_service = SettingsService(SettingsStore(db, cipher), cache)
    mappings = MappingService(FieldMappingStore(db), cache)
    audit = AuditLogger(logs, cache)
    monitor = QueueMonitor(queue, cache)
    recovery = RecoveryEngine(
        queue,
        audit,
        ErrorClassifier(),
        max_attempts=settings.MAX_ATTEMPTS,
        rate_limit_wait=settings.RATE_LIMIT_WAIT,
        network_wait=settings.NETWORK_WAIT,
        defer_seconds=settings.DEFER_SECONDS,
    )
    api = ApiClient(default_timeout=settings.DEFAULT_TIMEOUT, client=http_client)
    adapters = {i: JsonApiAdapter(i) for i in settings.integration_ids}

    dispatcher = Dispatcher(
        queue,
        recovery,
        settings_service,
        audit,
        api,
        adapters,
        mappings=mappings,
        analytics=analytics,
        monitor=monitor,
        batch_size=settings.BATCH_SIZE,
        default_timeout=settings.DEFAULT_TIMEOUT,
        stale_after=settings.STALE_CLAIM_SECONDS,
    )
    return Pipeline(
        db=db,
        cache=cache,
        queue=queue,
        logs=logs,
        analytics=analytics,
        settings=settings_service,
        forms=FormService(FormMetaStore(db), cache),
        mappings=mappings,
        audit=audit,
        monitor=monitor,
        recovery=recovery,
        api=api,
        dispatcher=dispatcher,
    )
