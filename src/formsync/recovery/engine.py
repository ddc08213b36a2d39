"""
Recovery engine: decides what happens to a queue item after a failed delivery.

The engine keeps no attempt counter of its own. Every failed attempt raises
the item's ``retry_count`` in the work queue, and the same cap (3 by default)
applies to immediate retries, deferred retries and the scheduled-retry sweep.

Strategies by error kind:

- rate limit: wait ``rate_limit_wait`` seconds, then defer ``defer_seconds``
- timeout: double the context timeout and retry immediately once
- network: wait ``network_wait`` seconds and retry immediately once
- other recoverable: defer, due immediately
- fatal, or attempt cap reached: give up (item failed, error logged)

A failed immediate retry counts as a new attempt and is deferred to the next
claim rather than retried again in place. An attempt broken off by a local
failure (store unreachable, missing configuration) goes through ``release``:
it counts as an attempt and is deferred, or given up at the cap.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from formsync.metrics.registry import RECOVERY_TOTAL, SWEEP_DISCARDED_TOTAL
from formsync.recovery.classifier import (
    ErrorClassifier,
    ErrorKind,
    error_message,
    error_status,
    user_message,
)
from formsync_client.errors import FatalIntegrationError, IntegrationError
from formsync_client.models import QueueItem, QueueStatus
from formsync_client.queue import WorkQueueStore
from formsync_client.utils import redact_secrets, utc_now

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = 30.0


class RecoveryOutcome(str, Enum):
    RECOVERED = "recovered"
    DEFERRED = "deferred"
    GIVEN_UP = "given_up"


class AuditSink(Protocol):
    """Best-effort integration log writer."""

    def warning(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]: ...

    def error(self, integration_id: str, message: str, **kwargs: Any) -> Optional[int]: ...


@dataclass
class RecoveryContext:
    """State of one delivery attempt handed to the engine.

    Attributes:
        item: The queue item being delivered (its retry_count is kept current)
        timeout: Outbound timeout in seconds; doubled on timeout recovery
        retry: Re-sends the item with this context. Returns the response on
            success and raises IntegrationError on failure.
    """

    item: QueueItem
    timeout: float = DEFAULT_TIMEOUT
    retry: Optional[Callable[["RecoveryContext"], Any]] = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryResult:
    outcome: RecoveryOutcome
    kind: ErrorKind
    attempts: int
    message: str = ""
    error: Optional[FatalIntegrationError] = None
    scheduled_at: Optional[datetime] = None
    response: Any = None


@dataclass
class SweepReport:
    claimed: int = 0
    executed: int = 0
    discarded: int = 0


class RecoveryEngine:
    def __init__(
        self,
        queue: WorkQueueStore,
        audit: AuditSink,
        classifier: Optional[ErrorClassifier] = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rate_limit_wait: float = 2.0,
        network_wait: float = 1.0,
        defer_seconds: int = 300,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._queue = queue
        self._audit = audit
        self._classifier = classifier or ErrorClassifier()
        self.max_attempts = max_attempts
        self._rate_limit_wait = rate_limit_wait
        self._network_wait = network_wait
        self._defer_seconds = defer_seconds
        self._sleep = sleep
        self._clock = clock

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    def _count_attempt(self, item: QueueItem) -> int:
        attempts = item.retry_count + 1
        self._queue.increment_retry(item.id, attempts)
        item.retry_count = attempts
        return attempts

    def recover(
        self, error: BaseException, integration_id: str, context: RecoveryContext
    ) -> RecoveryResult:
        item = context.item
        kind = self._classifier.kind(error)
        attempts = self._count_attempt(item)
        logger.debug(
            f"Recovering item {item.id} ({integration_id}): kind={kind.value} "
            f"attempt={attempts}/{self.max_attempts}"
        )

        if kind is ErrorKind.FATAL or attempts >= self.max_attempts:
            return self.give_up(item, error, integration_id, kind)

        if kind is ErrorKind.RATE_LIMIT:
            self._sleep(self._rate_limit_wait)
            return self._defer(item, error, integration_id, kind, self._defer_seconds)

        if kind in (ErrorKind.TIMEOUT, ErrorKind.NETWORK) and context.retry is not None:
            if kind is ErrorKind.TIMEOUT:
                context.timeout *= 2
            else:
                self._sleep(self._network_wait)
            try:
                response = context.retry(context)
            except IntegrationError as retry_error:
                attempts = self._count_attempt(item)
                retry_kind = self._classifier.kind(retry_error)
                if retry_kind is ErrorKind.FATAL or attempts >= self.max_attempts:
                    return self.give_up(item, retry_error, integration_id, retry_kind)
                return self._defer(item, retry_error, integration_id, retry_kind, 0)
            RECOVERY_TOTAL.labels(kind=kind.value, outcome=RecoveryOutcome.RECOVERED.value).inc()
            logger.info(f"Item {item.id} recovered after {kind.value} on immediate retry")
            return RecoveryResult(
                outcome=RecoveryOutcome.RECOVERED,
                kind=kind,
                attempts=item.retry_count,
                response=response,
            )

        return self._defer(item, error, integration_id, kind, 0)

    def release(
        self, item: QueueItem, error: BaseException, integration_id: str
    ) -> RecoveryResult:
        """Return an item whose attempt broke off on a local failure (store, config).

        The attempt counts toward the cap; below it the item is deferred due now.
        """
        attempts = self._count_attempt(item)
        if attempts >= self.max_attempts:
            return self.give_up(item, error, integration_id, ErrorKind.TEMPORARY)
        return self._defer(item, error, integration_id, ErrorKind.TEMPORARY, 0)

    def _defer(
        self,
        item: QueueItem,
        error: BaseException,
        integration_id: str,
        kind: ErrorKind,
        delay_seconds: int,
    ) -> RecoveryResult:
        raw = redact_secrets(error_message(error))
        scheduled_at = self._clock() + timedelta(seconds=delay_seconds)
        self._queue.schedule_retry(item.id, item.retry_count, scheduled_at, raw)
        self._audit.warning(
            integration_id,
            f"Delivery deferred: {raw}",
            form_id=item.form_id,
            submission_id=item.submission_id,
            data={
                "queue_item_id": item.id,
                "attempts": item.retry_count,
                "kind": kind.value,
                "scheduled_at": scheduled_at.isoformat(),
            },
        )
        RECOVERY_TOTAL.labels(kind=kind.value, outcome=RecoveryOutcome.DEFERRED.value).inc()
        return RecoveryResult(
            outcome=RecoveryOutcome.DEFERRED,
            kind=kind,
            attempts=item.retry_count,
            message=user_message(error_status(error), raw),
            scheduled_at=scheduled_at,
        )

    def give_up(
        self,
        item: QueueItem,
        error: BaseException,
        integration_id: str,
        kind: ErrorKind = ErrorKind.FATAL,
    ) -> RecoveryResult:
        """Mark the item failed for good and log the last underlying message."""
        status = error_status(error)
        raw = redact_secrets(error_message(error))
        fatal = FatalIntegrationError(raw, status)
        self._queue.mark_status([item.id], QueueStatus.FAILED, raw)
        self._audit.error(
            integration_id,
            f"Delivery failed: {raw}",
            form_id=item.form_id,
            submission_id=item.submission_id,
            data={
                "queue_item_id": item.id,
                "attempts": item.retry_count,
                "kind": kind.value,
                "status_code": status,
            },
        )
        RECOVERY_TOTAL.labels(kind=kind.value, outcome=RecoveryOutcome.GIVEN_UP.value).inc()
        logger.warning(
            f"Gave up on item {item.id} after {item.retry_count} attempt(s): {raw}"
        )
        return RecoveryResult(
            outcome=RecoveryOutcome.GIVEN_UP,
            kind=kind,
            attempts=item.retry_count,
            message=user_message(status, raw),
            error=fatal,
        )

    def sweep(self, executor: Callable[[QueueItem], Any], limit: int = 50) -> SweepReport:
        """Run scheduled retries that are due.

        Entries whose attempt counter has reached the cap are discarded and
        never executed again.
        """
        report = SweepReport()
        items = self._queue.claim_due_retries(limit)
        report.claimed = len(items)
        for item in items:
            if item.retry_count >= self.max_attempts:
                reason = item.error_message or "Retry limit reached"
                self._queue.mark_status([item.id], QueueStatus.FAILED, reason)
                self._audit.error(
                    item.integration_id,
                    f"Scheduled retry discarded after {item.retry_count} attempts: {reason}",
                    form_id=item.form_id,
                    submission_id=item.submission_id,
                    data={"queue_item_id": item.id, "attempts": item.retry_count},
                )
                SWEEP_DISCARDED_TOTAL.inc()
                report.discarded += 1
                continue
            executor(item)
            report.executed += 1
        if report.claimed:
            logger.info(
                f"Retry sweep: claimed={report.claimed} executed={report.executed} "
                f"discarded={report.discarded}"
            )
        return report
