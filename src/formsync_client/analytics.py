from __future__ import annotations

from typing import Optional

from psycopg.types.json import Jsonb

from . import sql as q
from .client import Database, degrade_on_store_error
from .errors import ValidationError
from .models import AnalyticsEvent
from .utils import scrub_context


class AnalyticsStore:
    """Append-only delivery analytics per form and audience."""

    def __init__(self, db: Database):
        self._db = db

    def record(self, event: AnalyticsEvent) -> int:
        if not event.event_type:
            raise ValidationError("event_type is required")
        with self._db.cursor() as cur:
            cur.execute(
                q.INSERT_ANALYTICS_EVENT,
                {
                    "form_id": event.form_id,
                    "audience_id": event.audience_id,
                    "event_type": event.event_type,
                    "event_data": Jsonb(scrub_context(event.event_data)),
                },
            )
            row = cur.fetchone()
        return int(row["id"])

    @degrade_on_store_error(dict)
    def summary(
        self, form_id: Optional[int] = None, audience_id: Optional[str] = None
    ) -> dict[str, int]:
        fragments: list[str] = []
        params: dict = {}
        if form_id is not None:
            fragments.append("form_id = %(form_id)s")
            params["form_id"] = form_id
        if audience_id:
            fragments.append("audience_id = %(audience_id)s")
            params["audience_id"] = audience_id
        stmt = (
            "SELECT event_type, COUNT(*) AS count FROM analytics_events"
            f"{q.where_clause(fragments)} GROUP BY event_type ORDER BY count DESC"
        )
        with self._db.cursor() as cur:
            cur.execute(stmt, params)
            rows = cur.fetchall()
        return {r["event_type"]: int(r["count"]) for r in rows}

    def cleanup(self, days: int = 90) -> int:
        with self._db.cursor() as cur:
            cur.execute(q.DELETE_OLD_ANALYTICS, {"days": days})
            return cur.rowcount
