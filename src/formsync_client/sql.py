from __future__ import annotations

from enum import Enum
from typing import Sequence

from psycopg import sql as psql


class Table(str, Enum):
    """Every table formsync touches. Identifiers are only ever built from this set."""

    INTEGRATION_LOGS = "integration_logs"
    INTEGRATION_SETTINGS = "integration_settings"
    FIELD_MAPPINGS = "field_mappings"
    BATCH_QUEUE = "batch_queue"
    ANALYTICS_EVENTS = "analytics_events"
    FORM_META = "form_meta"


def table_ident(table: Table) -> psql.Identifier:
    if not isinstance(table, Table):
        raise ValueError(f"Unknown table: {table!r}")
    return psql.Identifier(table.value)


def count_rows(table: Table) -> psql.Composed:
    return psql.SQL("SELECT COUNT(*) FROM {}").format(table_ident(table))


def where_clause(fragments: Sequence[str]) -> str:
    """Join fixed predicate fragments; values always travel as named parameters."""
    if not fragments:
        return ""
    return " WHERE " + " AND ".join(fragments)


HEALTH = "SELECT 1"

SCHEMA_VERSION = "SELECT version_num FROM alembic_version LIMIT 1"

TABLE_EXISTS = "SELECT to_regclass(%(name)s) IS NOT NULL"

# ---------------------------------------------------------------- batch_queue

QUEUE_COLS = (
    "id, form_id, submission_id, integration_id, list_id, operation, subscriber_data, "
    "status, priority, retry_count, error_message, remote_batch_id, scheduled_at, "
    "created_at, updated_at"
)

ENQUEUE = (
    "INSERT INTO batch_queue "
    "(form_id, submission_id, integration_id, list_id, operation, subscriber_data, "
    "status, priority, retry_count) "
    "VALUES (%(form_id)s, %(submission_id)s, %(integration_id)s, %(list_id)s, %(operation)s, "
    "%(subscriber_data)s, 'pending', %(priority)s, 0) "
    "RETURNING id"
)

# Claim-and-lock in one statement: concurrent callers skip rows another
# transaction has already locked, so no item is handed out twice.
CLAIM_BATCH = (
    "UPDATE batch_queue SET status = 'processing', updated_at = NOW() "
    "WHERE id IN ("
    "SELECT id FROM batch_queue "
    "WHERE status IN ('pending', 'retrying') "
    "AND (scheduled_at IS NULL OR scheduled_at <= NOW()) "
    "ORDER BY priority DESC, created_at ASC, id ASC "
    "LIMIT %(limit)s "
    "FOR UPDATE SKIP LOCKED"
    ") "
    f"RETURNING {QUEUE_COLS}"
)

CLAIM_DUE_RETRIES = (
    "UPDATE batch_queue SET status = 'processing', updated_at = NOW() "
    "WHERE id IN ("
    "SELECT id FROM batch_queue "
    "WHERE status = 'retrying' "
    "AND scheduled_at IS NOT NULL AND scheduled_at <= NOW() "
    "ORDER BY scheduled_at ASC, priority DESC, id ASC "
    "LIMIT %(limit)s "
    "FOR UPDATE SKIP LOCKED"
    ") "
    f"RETURNING {QUEUE_COLS}"
)

# A claim whose worker died mid-delivery; the lost attempt counts toward the cap.
RECLAIM_STALE = (
    "UPDATE batch_queue SET status = 'retrying', retry_count = retry_count + 1, "
    "scheduled_at = NOW(), error_message = %(reason)s, updated_at = NOW() "
    "WHERE status = 'processing' "
    "AND updated_at < NOW() - make_interval(secs => %(seconds)s) "
    "RETURNING id"
)

MARK_STATUS = (
    "UPDATE batch_queue "
    "SET status = %(status)s, error_message = COALESCE(%(error_message)s, error_message), "
    "updated_at = NOW() "
    "WHERE id = ANY(%(ids)s) AND status NOT IN ('completed', 'failed')"
)

INCREMENT_RETRY = (
    "UPDATE batch_queue SET retry_count = %(retry_count)s, updated_at = NOW() "
    "WHERE id = %(id)s AND retry_count < %(retry_count)s"
)

SCHEDULE_RETRY = (
    "UPDATE batch_queue "
    "SET status = 'retrying', retry_count = GREATEST(retry_count, %(retry_count)s), "
    "scheduled_at = %(scheduled_at)s, error_message = %(error_message)s, updated_at = NOW() "
    "WHERE id = %(id)s AND status NOT IN ('completed', 'failed')"
)

SET_REMOTE_BATCH_ID = (
    "UPDATE batch_queue SET remote_batch_id = %(remote_batch_id)s, updated_at = NOW() "
    "WHERE id = %(id)s"
)

GET_QUEUE_ITEM = f"SELECT {QUEUE_COLS} FROM batch_queue WHERE id = %(id)s"

QUEUE_STATISTICS = (
    "SELECT COUNT(*) AS total, "
    "COUNT(*) FILTER (WHERE status = 'pending') AS pending, "
    "COUNT(*) FILTER (WHERE status = 'processing') AS processing, "
    "COUNT(*) FILTER (WHERE status = 'completed') AS completed, "
    "COUNT(*) FILTER (WHERE status = 'failed') AS failed, "
    "COUNT(*) FILTER (WHERE status = 'retrying') AS retrying "
    "FROM batch_queue"
)

PENDING_COUNT = "SELECT COUNT(*) FROM batch_queue WHERE status IN ('pending', 'retrying')"

RETRY_ALL_FAILED = (
    "UPDATE batch_queue "
    "SET status = 'pending', retry_count = 0, error_message = NULL, scheduled_at = NULL, "
    "updated_at = NOW() "
    "WHERE status = 'failed'"
)

PURGE_TERMINAL = (
    "DELETE FROM batch_queue "
    "WHERE status IN ('completed', 'failed') "
    "AND created_at < NOW() - make_interval(days => %(days)s)"
)

# ----------------------------------------------------------- integration_logs

LOG_COLS = (
    "id, form_id, submission_id, integration_id, status, message, data, created_at, updated_at"
)

APPEND_LOG = (
    "INSERT INTO integration_logs "
    "(form_id, submission_id, integration_id, status, message, data) "
    "VALUES (%(form_id)s, %(submission_id)s, %(integration_id)s, %(status)s, %(message)s, "
    "%(data)s) "
    "RETURNING id"
)

DELETE_OLD_LOGS = (
    "DELETE FROM integration_logs WHERE created_at < NOW() - make_interval(days => %(days)s)"
)

# ------------------------------------------------------- integration_settings

UPSERT_SETTING = (
    "INSERT INTO integration_settings "
    "(integration_id, setting_key, setting_value, setting_type, is_encrypted) "
    "VALUES (%(integration_id)s, %(setting_key)s, %(setting_value)s, %(setting_type)s, "
    "%(is_encrypted)s) "
    "ON CONFLICT (integration_id, setting_key) DO UPDATE SET "
    "setting_value = EXCLUDED.setting_value, setting_type = EXCLUDED.setting_type, "
    "is_encrypted = EXCLUDED.is_encrypted, updated_at = NOW()"
)

GET_SETTINGS = (
    "SELECT integration_id, setting_key, setting_value, setting_type, is_encrypted "
    "FROM integration_settings WHERE integration_id = %(integration_id)s "
    "ORDER BY setting_key"
)

# ------------------------------------------------------------- field_mappings

DELETE_FIELD_MAPPINGS = (
    "DELETE FROM field_mappings WHERE form_id = %(form_id)s AND integration_id = %(integration_id)s"
)

INSERT_FIELD_MAPPING = (
    "INSERT INTO field_mappings "
    "(form_id, integration_id, form_field, integration_field, field_type, is_required, "
    "mapping_order) "
    "VALUES (%(form_id)s, %(integration_id)s, %(form_field)s, %(integration_field)s, "
    "%(field_type)s, %(is_required)s, %(mapping_order)s)"
)

GET_FIELD_MAPPINGS = (
    "SELECT form_id, integration_id, form_field, integration_field, field_type, is_required, "
    "mapping_order FROM field_mappings "
    "WHERE form_id = %(form_id)s AND integration_id = %(integration_id)s "
    "ORDER BY mapping_order ASC, form_field ASC"
)

# ------------------------------------------------------------------ form_meta

GET_FORM_META = (
    "SELECT meta_value FROM form_meta WHERE form_id = %(form_id)s AND meta_key = %(meta_key)s"
)

UPSERT_FORM_META = (
    "INSERT INTO form_meta (form_id, meta_key, meta_value) "
    "VALUES (%(form_id)s, %(meta_key)s, %(meta_value)s) "
    "ON CONFLICT (form_id, meta_key) DO UPDATE SET "
    "meta_value = EXCLUDED.meta_value, updated_at = NOW()"
)

# ----------------------------------------------------------- analytics_events

INSERT_ANALYTICS_EVENT = (
    "INSERT INTO analytics_events (form_id, audience_id, event_type, event_data) "
    "VALUES (%(form_id)s, %(audience_id)s, %(event_type)s, %(event_data)s) "
    "RETURNING id"
)

DELETE_OLD_ANALYTICS = (
    "DELETE FROM analytics_events WHERE created_at < NOW() - make_interval(days => %(days)s)"
)
