"""Delivery pipeline: dedup gate, executor, dead-letter hand-off, and replay.

:meth:`NotificationPipeline.deliver` is the single path every triggered
notification takes::

    should_send? -> render -> execute(send) -> record_sent | enqueue(DLQ)

:meth:`NotificationPipeline.replay` re-attempts one dead-letter entry, either
on operator request (admin API) or from the optional periodic reprocessor.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dosewatch.core.correlation import correlation_scope
from dosewatch.core.telemetry import pipeline_span
from dosewatch.notifications.dead_letter import (
    DeadLetterQueue,
    DeadLetterWriteError,
    DLQStatus,
    EntryConflictError,
    InvalidTransitionError,
    Resolution,
)
from dosewatch.notifications.dedup import Deduplicator
from dosewatch.notifications.errors import DeliveryError, ErrorCategory
from dosewatch.notifications.messages import render
from dosewatch.notifications.models import NotificationCandidate
from dosewatch.notifications.records import RecordStore
from dosewatch.notifications.retry import DeliveryExecutor, RetryPolicy, RetryResult
from dosewatch.transport.base import ChatSender

logger = logging.getLogger(__name__)

MANUAL_RETRY_NOTES = "Manually retried via admin interface"
AUTO_RETRY_NOTES = "Delivered by automatic dead-letter reprocessing"
UNREACHABLE_NOTES = "Recipient no longer reachable"


class DeliveryStatus(enum.StrEnum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


class MissingRecipientError(ValueError):
    """The subject has no chat link to deliver to."""


@dataclass(frozen=True)
class DeliveryReport:
    status: DeliveryStatus
    attempts: int = 0
    message_id: str | None = None
    error: DeliveryError | None = None
    dlq_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ReplayResult:
    entry_id: uuid.UUID
    success: bool
    message_id: str | None = None
    error: DeliveryError | None = None
    status: DLQStatus | None = None


@dataclass
class ReprocessReport:
    attempted: int = 0
    resolved: int = 0
    failed: int = 0
    discarded: int = 0
    skipped: int = 0


class NotificationPipeline:
    """Wires the deduplicator, delivery executor and dead-letter queue together.

    Parameters
    ----------
    sender:
        The chat transport.
    dedup:
        Duplicate suppression gate.
    dlq:
        Destination for notifications that could not be delivered.
    executor:
        Retry loop recording delivery metrics.
    records:
        Collaborator used to resolve the current chat link on replay.
    policy:
        Retry policy for triggered deliveries.  Replays always make exactly
        one attempt with the same timeout.
    """

    def __init__(
        self,
        *,
        sender: ChatSender,
        dedup: Deduplicator,
        dlq: DeadLetterQueue,
        executor: DeliveryExecutor,
        records: RecordStore,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.sender = sender
        self.dedup = dedup
        self.dlq = dlq
        self.executor = executor
        self.records = records
        self.policy = policy or RetryPolicy()

    def _replay_policy(self) -> RetryPolicy:
        return dataclasses.replace(self.policy, max_attempts=1)

    async def _send(
        self,
        candidate: NotificationCandidate,
        recipient: str,
        policy: RetryPolicy,
    ) -> RetryResult:
        message = render(candidate)
        context: dict[str, Any] = {
            "subject_id": str(candidate.subject_id),
            "kind": str(candidate.kind),
        }
        if candidate.protocol_id:
            context["protocol_id"] = str(candidate.protocol_id)
        return await self.executor.execute(
            lambda: self.sender.send(recipient, message),
            policy,
            context,
        )

    async def deliver(
        self,
        candidate: NotificationCandidate,
        *,
        now: datetime | None = None,
    ) -> DeliveryReport:
        """Deliver one triggered notification.

        Raises
        ------
        DeadLetterWriteError
            When delivery failed and the failure could not be dead-lettered.
        """
        with correlation_scope(candidate.correlation_id), pipeline_span(
            "deliver", kind=str(candidate.kind)
        ):
            key = candidate.dedup_key
            if not await self.dedup.should_send(key, now=now):
                return DeliveryReport(DeliveryStatus.DUPLICATE)

            if not candidate.recipient:
                raise MissingRecipientError(f"No chat link for subject {candidate.subject_id}")

            result = await self._send(candidate, candidate.recipient, self.policy)

            if result.success:
                await self.dedup.record_sent(
                    key,
                    {
                        "message_id": result.message_id,
                        "attempts": result.attempts,
                        "correlation_id": candidate.correlation_id,
                    },
                    now=now,
                )
                logger.info(
                    "Notification delivered",
                    extra={
                        "subject_id": str(candidate.subject_id),
                        "kind": str(candidate.kind),
                        "attempts": result.attempts,
                    },
                )
                return DeliveryReport(
                    DeliveryStatus.SENT,
                    attempts=result.attempts,
                    message_id=result.message_id,
                )

            error = result.error or DeliveryError(ErrorCategory.UNKNOWN, None, "Unknown failure")
            try:
                dlq_id = await self.dlq.enqueue(
                    candidate,
                    error,
                    retry_count=result.attempts - 1,
                    correlation_id=candidate.correlation_id,
                )
            except DeadLetterWriteError:
                logger.error(
                    "Failed notification lost: dead-letter write failed",
                    extra={
                        "subject_id": str(candidate.subject_id),
                        "kind": str(candidate.kind),
                        "payload": candidate.to_payload(),
                        "error_category": str(error.category),
                    },
                )
                raise
            return DeliveryReport(
                DeliveryStatus.DEAD_LETTERED,
                attempts=result.attempts,
                error=error,
                dlq_id=dlq_id,
            )

    async def replay(self, entry_id: uuid.UUID, *, automatic: bool = False) -> ReplayResult:
        """Re-attempt one dead-letter entry with a single send.

        Manual replays may take over an entry stuck in ``retrying``; automatic
        replays only claim ``pending`` entries.

        Raises
        ------
        EntryNotFoundError
            Unknown *entry_id*.
        InvalidTransitionError
            The entry is already resolved or discarded.
        EntryConflictError
            Another worker claimed the entry first.
        MissingRecipientError
            Manual replay for a subject without a chat link.
        """
        entry = await self.dlq.require(entry_id)
        with correlation_scope(entry.correlation_id or None), pipeline_span(
            "replay", kind=str(entry.kind), automatic=automatic
        ):
            if not entry.status.is_live:
                raise InvalidTransitionError(f"Notification already {entry.status}")
            if automatic and entry.status is not DLQStatus.PENDING:
                raise EntryConflictError(f"Entry {entry_id} is {entry.status}, not pending")

            recipient = await self.records.get_recipient(entry.subject_id)
            chat_id = recipient.chat_id if recipient else None
            if not chat_id:
                if not automatic:
                    raise MissingRecipientError("User has no Telegram chat linked")
                await self.dlq.resolve(entry_id, Resolution.DISCARDED, UNREACHABLE_NOTES)
                return ReplayResult(entry_id, success=False, status=DLQStatus.DISCARDED)

            if entry.status is DLQStatus.PENDING and not await self.dlq.mark_for_retry(entry_id):
                raise EntryConflictError(f"Entry {entry_id} was claimed by another worker")

            candidate = dataclasses.replace(entry.candidate(), recipient=chat_id)
            result = await self._send(candidate, chat_id, self._replay_policy())

            if result.success:
                await self.dlq.resolve(
                    entry_id,
                    Resolution.SUCCESS if automatic else Resolution.MANUAL,
                    AUTO_RETRY_NOTES if automatic else MANUAL_RETRY_NOTES,
                )
                await self.dedup.record_sent(
                    candidate.dedup_key,
                    {"message_id": result.message_id, "dlq_id": str(entry_id)},
                )
                logger.info(
                    "Dead-letter entry delivered",
                    extra={"dlq_id": str(entry_id), "automatic": automatic},
                )
                return ReplayResult(
                    entry_id,
                    success=True,
                    message_id=result.message_id,
                    status=DLQStatus.RESOLVED,
                )

            error = result.error or DeliveryError(ErrorCategory.UNKNOWN, None, "Unknown failure")
            if automatic and error.category is ErrorCategory.INVALID_CHAT:
                await self.dlq.resolve(entry_id, Resolution.DISCARDED, UNREACHABLE_NOTES)
                return ReplayResult(
                    entry_id, success=False, error=error, status=DLQStatus.DISCARDED
                )

            await self.dlq.record_retry_failure(entry_id, error)
            return ReplayResult(entry_id, success=False, error=error, status=DLQStatus.PENDING)

    async def reprocess_dead_letters(self, limit: int = 50) -> ReprocessReport:
        """Automatically replay pending entries still under the retry ceiling."""
        report = ReprocessReport()
        entries = await self.dlq.pending_for_auto_retry(limit)
        for entry in entries:
            report.attempted += 1
            try:
                outcome = await self.replay(entry.id, automatic=True)
            except (EntryConflictError, InvalidTransitionError):
                report.skipped += 1
                continue
            except Exception:
                logger.exception("Dead-letter reprocessing failed", extra={"dlq_id": str(entry.id)})
                report.failed += 1
                continue
            if outcome.success:
                report.resolved += 1
            elif outcome.status is DLQStatus.DISCARDED:
                report.discarded += 1
            else:
                report.failed += 1
        logger.info("Dead-letter reprocessing finished", extra=dataclasses.asdict(report))
        return report
