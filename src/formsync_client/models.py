"""
Pydantic data models for the formsync store client.

Rows read back from Postgres are validated into these models; filters are
plain models so unset fields can be told apart from explicit values.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class QueueStatus(str, Enum):
    """Lifecycle states of a queued delivery."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED})


class Operation(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    UPDATE = "update"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class QueueItem(BaseModel):
    """One attempted delivery of a subscriber record to an external list."""

    id: Optional[int] = None
    form_id: int
    submission_id: Optional[int] = None
    integration_id: str = "mailchimp"
    list_id: str
    operation: Operation = Operation.SUBSCRIBE
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 0
    retry_count: int = Field(default=0, ge=0)
    error_message: Optional[str] = None
    remote_batch_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "QueueItem":
        data = dict(row)
        data["payload"] = data.pop("subscriber_data", None) or {}
        return cls.model_validate(data)


class QueueStatistics(BaseModel):
    """Point-in-time counts per queue status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0


class LogEntry(BaseModel):
    """Immutable record of one integration event."""

    id: Optional[int] = None
    form_id: int = 0
    submission_id: Optional[int] = None
    integration_id: str
    status: str = LogLevel.INFO.value
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def _lower_status(cls, v: str) -> str:
        return v.lower().strip()


class LogFilters(BaseModel):
    """Optional filters for log queries. Unset filters match everything."""

    integration_id: Optional[str] = None
    form_id: Optional[int] = None
    status: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    def cache_token(self) -> str:
        """Stable string for cache keys."""
        return self.model_dump_json(exclude_none=True)


class LogStats(BaseModel):
    """Aggregates over the log; total always equals both breakdown sums."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_date: dict[str, int] = Field(default_factory=dict)


class IntegrationSetting(BaseModel):
    integration_id: str
    setting_key: str
    setting_value: Any = None
    setting_type: str = "string"
    is_encrypted: bool = False


class FieldMapping(BaseModel):
    form_id: int
    integration_id: str
    form_field: str
    integration_field: str
    field_type: str = "text"
    is_required: bool = False
    mapping_order: int = 0


class AnalyticsEvent(BaseModel):
    id: Optional[int] = None
    form_id: int
    audience_id: str
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


def calculate_priority(double_optin: bool = False, vip: bool = False) -> int:
    """Priority for a new queue item: double opt-in is time sensitive, VIP forms jump ahead."""
    priority = 0
    if double_optin:
        priority += 10
    if vip:
        priority += 20
    return priority


def day_key(value: date | datetime | str) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
