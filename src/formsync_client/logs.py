"""
Append-only integration log with filtered reads and aggregate statistics.
"""

from __future__ import annotations

from collections import defaultdict

from loguru import logger
from psycopg.types.json import Jsonb

from . import sql as q
from .client import Database, degrade_on_store_error
from .errors import ValidationError
from .models import LogEntry, LogFilters, LogStats, day_key
from .utils import scrub_context


def _filter_predicates(filters: LogFilters) -> tuple[list[str], dict]:
    fragments: list[str] = []
    params: dict = {}
    if filters.integration_id:
        fragments.append("integration_id = %(integration_id)s")
        params["integration_id"] = filters.integration_id
    if filters.form_id is not None:
        fragments.append("form_id = %(form_id)s")
        params["form_id"] = filters.form_id
    if filters.status:
        fragments.append("status = %(status)s")
        params["status"] = filters.status.lower()
    if filters.date_from is not None:
        fragments.append("created_at >= %(date_from)s")
        params["date_from"] = filters.date_from
    if filters.date_to is not None:
        fragments.append("created_at <= %(date_to)s")
        params["date_to"] = filters.date_to
    return fragments, params


class LogStore:
    def __init__(self, db: Database):
        self._db = db

    def append(self, entry: LogEntry) -> int:
        if not entry.integration_id or not entry.integration_id.strip():
            raise ValidationError("integration_id is required")
        with self._db.cursor() as cur:
            cur.execute(
                q.APPEND_LOG,
                {
                    "form_id": entry.form_id,
                    "submission_id": entry.submission_id,
                    "integration_id": entry.integration_id,
                    "status": entry.status,
                    "message": entry.message,
                    "data": Jsonb(scrub_context(entry.data)),
                },
            )
            row = cur.fetchone()
        return int(row["id"])

    @degrade_on_store_error(list)
    def query(
        self, filters: LogFilters | None = None, limit: int = 50, offset: int = 0
    ) -> list[LogEntry]:
        """Newest entries first."""
        return self.fetch(filters, limit, offset)

    def fetch(
        self, filters: LogFilters | None = None, limit: int = 50, offset: int = 0
    ) -> list[LogEntry]:
        fragments, params = _filter_predicates(filters or LogFilters())
        params.update({"limit": max(0, limit), "offset": max(0, offset)})
        stmt = (
            f"SELECT {q.LOG_COLS} FROM integration_logs"
            f"{q.where_clause(fragments)} "
            "ORDER BY created_at DESC, id DESC LIMIT %(limit)s OFFSET %(offset)s"
        )
        with self._db.cursor() as cur:
            cur.execute(stmt, params)
            rows = cur.fetchall()
        return [LogEntry.model_validate(r) for r in rows]

    @degrade_on_store_error(LogStats)
    def stats(self, filters: LogFilters | None = None) -> LogStats:
        return self.fetch_stats(filters)

    def fetch_stats(self, filters: LogFilters | None = None) -> LogStats:
        """Totals by status and by day, built from a single grouped read.

        Deriving every figure from the same result set keeps
        ``total == sum(by_status) == sum(by_date)``.
        """
        fragments, params = _filter_predicates(filters or LogFilters())
        stmt = (
            "SELECT status, DATE(created_at) AS day, COUNT(*) AS count "
            f"FROM integration_logs{q.where_clause(fragments)} "
            "GROUP BY status, DATE(created_at) "
            "ORDER BY day DESC, count DESC"
        )
        with self._db.cursor() as cur:
            cur.execute(stmt, params)
            rows = cur.fetchall()
        return aggregate_stats(rows)

    def delete_older_than(self, days: int) -> int:
        if days < 0:
            raise ValidationError("days cannot be negative")
        with self._db.cursor() as cur:
            cur.execute(q.DELETE_OLD_LOGS, {"days": days})
            count = cur.rowcount
        logger.info(f"Deleted {count} log entries older than {days} days")
        return count

    def count(self) -> int:
        return self._db.row_count(q.Table.INTEGRATION_LOGS)


def aggregate_stats(rows) -> LogStats:
    by_status: dict[str, int] = defaultdict(int)
    by_date: dict[str, int] = defaultdict(int)
    total = 0
    for r in rows:
        c = int(r["count"])
        by_status[r["status"]] += c
        by_date[day_key(r["day"])] += c
        total += c
    return LogStats(total=total, by_status=dict(by_status), by_date=dict(by_date))
