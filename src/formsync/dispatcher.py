"""
Delivery dispatcher: claims queue items and pushes them to their integration.

Per item:
    success  -> completed, remote batch id stored, success log entry
    failure  -> recovery engine (recovered / deferred / given up)
    aborted  -> a store or configuration error broke off the attempt; the
                item is released back to the queue through the recovery engine

A claimed item never stays in processing because of a failure on another
item. Claims orphaned by a dead worker are returned by ``reclaim_stale``.

The dispatcher never touches SQL; every row change goes through the queue
store or the recovery engine.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from loguru import logger

from formsync.adapters import IntegrationAdapter, map_fields
from formsync.metrics.registry import (
    DELIVERY_LATENCY_MS,
    DELIVERY_TOTAL,
    QUEUE_CLAIMED_TOTAL,
)
from formsync.recovery.engine import (
    RecoveryContext,
    RecoveryEngine,
    RecoveryOutcome,
    SweepReport,
)
from formsync.services import AuditLogger, MappingService, QueueMonitor, SettingsService
from formsync.transport import ApiClient, ApiResponse
from formsync_client.analytics import AnalyticsStore
from formsync_client.errors import (
    FatalIntegrationError,
    FormSyncError,
    IntegrationError,
    StoreError,
    ValidationError,
)
from formsync_client.models import AnalyticsEvent, QueueItem, QueueStatus
from formsync_client.queue import WorkQueueStore

COMPLETED = "completed"
DEFERRED = "deferred"
FAILED = "failed"
ABORTED = "aborted"

DEFAULT_STALE_AFTER = 300


@dataclass
class DispatchReport:
    claimed: int = 0
    completed: int = 0
    deferred: int = 0
    failed: int = 0
    aborted: int = 0

    def add(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


class Dispatcher:
    def __init__(
        self,
        queue: WorkQueueStore,
        recovery: RecoveryEngine,
        settings: SettingsService,
        audit: AuditLogger,
        api: ApiClient,
        adapters: Mapping[str, IntegrationAdapter],
        *,
        mappings: Optional[MappingService] = None,
        analytics: Optional[AnalyticsStore] = None,
        monitor: Optional[QueueMonitor] = None,
        batch_size: int = 50,
        default_timeout: float = 30.0,
        stale_after: int = DEFAULT_STALE_AFTER,
    ):
        self._queue = queue
        self._recovery = recovery
        self._settings = settings
        self._audit = audit
        self._api = api
        self._adapters = dict(adapters)
        self._mappings = mappings
        self._analytics = analytics
        self._monitor = monitor
        self.batch_size = batch_size
        self._default_timeout = default_timeout
        self.stale_after = stale_after

    def run_once(self, max_size: Optional[int] = None) -> DispatchReport:
        """Claim one batch and deliver every item in it."""
        report = DispatchReport()
        items = self._queue.claim_batch(max_size or self.batch_size)
        report.claimed = len(items)
        if not items:
            return report
        QUEUE_CLAIMED_TOTAL.labels(source="batch").inc(len(items))

        for item in items:
            report.add(self.deliver_or_release(item))

        if self._monitor is not None:
            self._monitor.invalidate()
        logger.info(
            f"Dispatch: claimed={report.claimed} completed={report.completed} "
            f"deferred={report.deferred} failed={report.failed} aborted={report.aborted}"
        )
        return report

    def sweep_retries(self, limit: Optional[int] = None) -> SweepReport:
        """Redeliver scheduled retries whose time has come."""
        report = self._recovery.sweep(self.deliver_or_release, limit or self.batch_size)
        if report.claimed:
            QUEUE_CLAIMED_TOTAL.labels(source="sweep").inc(report.claimed)
            if self._monitor is not None:
                self._monitor.invalidate()
        return report

    def reclaim_stale(self) -> int:
        """Return claims older than ``stale_after`` seconds to the queue."""
        ids = self._queue.reclaim_stale(self.stale_after)
        if ids and self._monitor is not None:
            self._monitor.invalidate()
        return len(ids)

    def run_forever(
        self, poll_interval: float = 5.0, stop_event: Optional[threading.Event] = None
    ) -> None:
        """Worker loop. Sleeps ``poll_interval`` whenever a pass finds no work."""
        stop = stop_event or threading.Event()
        logger.info(f"Dispatcher started (batch_size={self.batch_size}, poll={poll_interval}s)")
        while not stop.is_set():
            try:
                self.reclaim_stale()
                report = self.run_once()
                swept = self.sweep_retries()
            except StoreError as e:
                logger.error(f"Dispatch pass failed: {type(e).__name__}: {e}")
                stop.wait(poll_interval)
                continue
            if report.claimed == 0 and swept.claimed == 0:
                stop.wait(poll_interval)
        logger.info("Dispatcher stopped")

    # ---------- per item ----------

    def deliver_or_release(self, item: QueueItem) -> str:
        """Deliver one claimed item; a local failure releases it instead of stranding it."""
        try:
            return self.deliver(item)
        except FormSyncError as e:
            return self._release(item, e)

    def deliver(self, item: QueueItem) -> str:
        """Deliver one claimed item and return its outcome for this pass.

        Store errors propagate; use ``deliver_or_release`` inside a batch.
        """
        integration_id = item.integration_id

        if item.retry_count >= self._recovery.max_attempts:
            self._recovery.give_up(
                item,
                FatalIntegrationError(item.error_message or "Retry limit reached"),
                integration_id,
            )
            return self._failed(item)

        adapter = self._adapters.get(integration_id)
        if adapter is None:
            self._recovery.give_up(
                item,
                FatalIntegrationError(f"No adapter registered for integration {integration_id}"),
                integration_id,
            )
            return self._failed(item)

        settings = self._settings.get(integration_id)
        timeout = _timeout_setting(settings, self._default_timeout)

        try:
            outbound = self._mapped(item)
            response = self._attempt(adapter, outbound, settings, timeout)
        except ValidationError as e:
            self._recovery.give_up(item, FatalIntegrationError(str(e)), integration_id)
            return self._failed(item)
        except IntegrationError as e:
            context = RecoveryContext(
                item=item,
                timeout=timeout,
                retry=lambda ctx: self._attempt(adapter, outbound, settings, ctx.timeout),
            )
            result = self._recovery.recover(e, integration_id, context)
            if result.outcome is RecoveryOutcome.RECOVERED:
                return self._completed(item, adapter, result.response, recovered=True)
            if result.outcome is RecoveryOutcome.DEFERRED:
                DELIVERY_TOTAL.labels(integration=integration_id, outcome=DEFERRED).inc()
                return DEFERRED
            return self._failed(item, result.message)

        return self._completed(item, adapter, response)

    def _mapped(self, item: QueueItem) -> QueueItem:
        """The item with its payload renamed through the form's field mappings, if any."""
        if self._mappings is None:
            return item
        mappings = self._mappings.get(item.form_id, item.integration_id)
        if not mappings:
            return item
        return item.model_copy(update={"payload": map_fields(item.payload, mappings)})

    def _release(self, item: QueueItem, error: FormSyncError) -> str:
        logger.error(f"Delivery of item {item.id} aborted: {type(error).__name__}: {error}")
        try:
            result = self._recovery.release(item, error, item.integration_id)
        except StoreError as e:
            logger.error(
                f"Item {item.id} stays in processing until reclaimed "
                f"after {self.stale_after}s: {e}"
            )
            DELIVERY_TOTAL.labels(integration=item.integration_id, outcome=ABORTED).inc()
            return ABORTED
        if result.outcome is RecoveryOutcome.GIVEN_UP:
            return self._failed(item, result.message)
        DELIVERY_TOTAL.labels(integration=item.integration_id, outcome=DEFERRED).inc()
        return DEFERRED

    def _attempt(
        self,
        adapter: IntegrationAdapter,
        item: QueueItem,
        settings: dict[str, Any],
        timeout: float,
    ) -> ApiResponse:
        request = adapter.build_request(item, settings)
        start = time.perf_counter()
        response = self._api.send(
            request.method,
            request.url,
            headers=request.headers,
            json=request.json,
            timeout=timeout,
        )
        DELIVERY_LATENCY_MS.labels(integration=item.integration_id).observe(
            (time.perf_counter() - start) * 1000
        )
        if not response.success:
            raise self._recovery.classifier.to_integration_error(
                response.error or f"HTTP {response.status_code}", response.status_code or None
            )
        return response

    def _completed(
        self,
        item: QueueItem,
        adapter: IntegrationAdapter,
        response: ApiResponse,
        recovered: bool = False,
    ) -> str:
        self._queue.mark_status([item.id], QueueStatus.COMPLETED)
        remote_id = adapter.remote_batch_id(response.body) if response is not None else None
        if remote_id:
            self._queue.set_remote_batch_id(item.id, remote_id)
        self._audit.success(
            item.integration_id,
            f"Delivered to list {item.list_id}",
            form_id=item.form_id,
            submission_id=item.submission_id,
            data={
                "queue_item_id": item.id,
                "remote_batch_id": remote_id,
                "attempts": item.retry_count + 1,
                "recovered": recovered,
            },
        )
        self._record_event(item, "delivery_success", {"recovered": recovered})
        outcome = "recovered" if recovered else COMPLETED
        DELIVERY_TOTAL.labels(integration=item.integration_id, outcome=outcome).inc()
        return COMPLETED

    def _failed(self, item: QueueItem, message: str = "") -> str:
        self._record_event(item, "delivery_error", {"message": message})
        DELIVERY_TOTAL.labels(integration=item.integration_id, outcome=FAILED).inc()
        return FAILED

    def _record_event(self, item: QueueItem, event_type: str, data: dict) -> None:
        if self._analytics is None:
            return
        try:
            self._analytics.record(
                AnalyticsEvent(
                    form_id=item.form_id,
                    audience_id=item.list_id,
                    event_type=event_type,
                    event_data={"queue_item_id": item.id, **data},
                )
            )
        except StoreError as e:
            logger.warning(f"Analytics event {event_type} for item {item.id} not recorded: {e}")


def _timeout_setting(settings: dict[str, Any], default: float) -> float:
    try:
        value = float(settings.get("timeout") or default)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default
