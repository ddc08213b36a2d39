"""
Work queue store: the persistent table of pending deliveries.

All mutations of ``batch_queue`` go through this class so that status and
retry-counter invariants live in one place.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from loguru import logger
from psycopg.types.json import Jsonb

from . import sql as q
from .client import Database, degrade_on_store_error
from .errors import ValidationError
from .models import QueueItem, QueueStatistics, QueueStatus


def _ordered(items: list[QueueItem]) -> list[QueueItem]:
    # RETURNING does not preserve the subquery's ORDER BY
    return sorted(
        items,
        key=lambda i: (
            -i.priority,
            i.created_at.timestamp() if i.created_at else 0.0,
            i.id or 0,
        ),
    )


class WorkQueueStore:
    def __init__(self, db: Database):
        self._db = db

    # ---------- writes ----------

    def enqueue(self, item: QueueItem) -> int:
        if not item.list_id or not item.list_id.strip():
            raise ValidationError("list_id is required")
        if not item.payload:
            raise ValidationError("payload is required")

        with self._db.cursor() as cur:
            cur.execute(
                q.ENQUEUE,
                {
                    "form_id": item.form_id,
                    "submission_id": item.submission_id,
                    "integration_id": item.integration_id,
                    "list_id": item.list_id,
                    "operation": item.operation.value,
                    "subscriber_data": Jsonb(item.payload),
                    "priority": item.priority,
                },
            )
            row = cur.fetchone()
        item_id = int(row["id"])
        logger.debug(
            f"Enqueued item {item_id} form={item.form_id} list={item.list_id} "
            f"priority={item.priority}"
        )
        return item_id

    @degrade_on_store_error(list)
    def claim_batch(self, max_size: int) -> list[QueueItem]:
        """Atomically move up to ``max_size`` eligible items to processing and return them."""
        if max_size <= 0:
            return []
        with self._db.cursor() as cur:
            cur.execute(q.CLAIM_BATCH, {"limit": max_size})
            rows = cur.fetchall()
        return _ordered([QueueItem.from_row(r) for r in rows])

    @degrade_on_store_error(list)
    def claim_due_retries(self, max_size: int) -> list[QueueItem]:
        """Claim scheduled retries whose time has come."""
        if max_size <= 0:
            return []
        with self._db.cursor() as cur:
            cur.execute(q.CLAIM_DUE_RETRIES, {"limit": max_size})
            rows = cur.fetchall()
        return [QueueItem.from_row(r) for r in rows]

    def mark_status(
        self,
        ids: Sequence[int],
        status: QueueStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        ids = [int(i) for i in ids]
        if not ids:
            return True
        status = QueueStatus(status)
        with self._db.cursor() as cur:
            cur.execute(
                q.MARK_STATUS,
                {"ids": ids, "status": status.value, "error_message": error_message},
            )
            moved = cur.rowcount
        if moved != len(ids):
            logger.debug(f"mark_status {status.value}: {moved}/{len(ids)} rows moved")
        return True

    def increment_retry(self, item_id: int, new_count: int) -> bool:
        if new_count < 0:
            raise ValidationError("retry_count cannot be negative")
        with self._db.cursor() as cur:
            cur.execute(q.INCREMENT_RETRY, {"id": item_id, "retry_count": new_count})
            return cur.rowcount == 1

    def schedule_retry(
        self,
        item_id: int,
        new_count: int,
        scheduled_at: datetime,
        error_message: Optional[str] = None,
    ) -> bool:
        """Put an item back as retrying, claimable once ``scheduled_at`` has passed."""
        with self._db.cursor() as cur:
            cur.execute(
                q.SCHEDULE_RETRY,
                {
                    "id": item_id,
                    "retry_count": new_count,
                    "scheduled_at": scheduled_at,
                    "error_message": error_message,
                },
            )
            return cur.rowcount == 1

    def set_remote_batch_id(self, item_id: int, remote_id: str) -> bool:
        with self._db.cursor() as cur:
            cur.execute(q.SET_REMOTE_BATCH_ID, {"id": item_id, "remote_batch_id": remote_id})
            return cur.rowcount == 1

    def reclaim_stale(self, older_than_seconds: int) -> list[int]:
        """Put items left in processing longer than ``older_than_seconds`` back as retrying."""
        if older_than_seconds <= 0:
            raise ValidationError("older_than_seconds must be positive")
        with self._db.cursor() as cur:
            cur.execute(
                q.RECLAIM_STALE,
                {
                    "seconds": older_than_seconds,
                    "reason": f"Claim expired after {older_than_seconds}s in processing",
                },
            )
            ids = [int(r["id"]) for r in cur.fetchall()]
        if ids:
            logger.warning(f"Reclaimed {len(ids)} stale queue items: {ids}")
        return ids

    def retry_all_failed(self) -> int:
        with self._db.cursor() as cur:
            cur.execute(q.RETRY_ALL_FAILED)
            count = cur.rowcount
        logger.info(f"Reset {count} failed queue items to pending")
        return count

    def purge_terminal(self, older_than_days: int) -> int:
        if older_than_days < 0:
            raise ValidationError("older_than_days cannot be negative")
        with self._db.cursor() as cur:
            cur.execute(q.PURGE_TERMINAL, {"days": older_than_days})
            count = cur.rowcount
        logger.info(f"Purged {count} terminal queue items older than {older_than_days} days")
        return count

    # ---------- reads ----------

    @degrade_on_store_error(lambda: None)
    def get(self, item_id: int) -> Optional[QueueItem]:
        with self._db.cursor() as cur:
            cur.execute(q.GET_QUEUE_ITEM, {"id": item_id})
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    @degrade_on_store_error(QueueStatistics)
    def statistics(self) -> QueueStatistics:
        return self.fetch_statistics()

    def fetch_statistics(self) -> QueueStatistics:
        with self._db.cursor() as cur:
            cur.execute(q.QUEUE_STATISTICS)
            row = cur.fetchone()
        if not row:
            return QueueStatistics()
        return QueueStatistics(**{k: int(v or 0) for k, v in row.items()})

    @degrade_on_store_error(int)
    def pending_count(self) -> int:
        with self._db.cursor() as cur:
            cur.execute(q.PENDING_COUNT)
            row = cur.fetchone()
        return int(row["count"]) if row else 0
