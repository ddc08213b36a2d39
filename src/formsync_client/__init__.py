"""
formsync store client

Postgres-backed stores for the integration delivery pipeline: the work queue,
the integration log, settings, field mappings, form meta and analytics.

Usage:
    from formsync_client import Database, WorkQueueStore, QueueItem

    db = Database({"dsn": "postgresql://..."})
    queue = WorkQueueStore(db)
    queue.enqueue(QueueItem(form_id=1, list_id="L1", payload={"email": "a@x.com"}))
    batch = queue.claim_batch(50)
"""

from .analytics import AnalyticsStore
from .client import Database
from .errors import (
    FatalIntegrationError,
    FormSyncError,
    IntegrationError,
    StoreError,
    TransientIntegrationError,
    ValidationError,
)
from .logs import LogStore
from .models import (
    AnalyticsEvent,
    FieldMapping,
    LogEntry,
    LogFilters,
    LogLevel,
    LogStats,
    Operation,
    QueueItem,
    QueueStatistics,
    QueueStatus,
    calculate_priority,
)
from .queue import WorkQueueStore
from .settings import FieldMappingStore, FormMetaStore, SettingsCipher, SettingsStore

__version__ = "1.0.0"
__all__ = [
    "Database",
    "WorkQueueStore",
    "LogStore",
    "SettingsStore",
    "SettingsCipher",
    "FieldMappingStore",
    "FormMetaStore",
    "AnalyticsStore",
    "QueueItem",
    "QueueStatus",
    "QueueStatistics",
    "Operation",
    "LogEntry",
    "LogFilters",
    "LogLevel",
    "LogStats",
    "FieldMapping",
    "AnalyticsEvent",
    "calculate_priority",
    "FormSyncError",
    "ValidationError",
    "StoreError",
    "IntegrationError",
    "TransientIntegrationError",
    "FatalIntegrationError",
]
