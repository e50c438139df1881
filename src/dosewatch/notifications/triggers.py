"""Trigger evaluation: decide which notifications are due right now.

Every pass walks the recipients that have a chat link.  Local wall-clock time
is always derived from an aware UTC instant through :class:`zoneinfo.ZoneInfo`,
so daylight-saving transitions never shift or repeat a scheduled slot.

Failures are isolated: an error for one recipient (or one protocol of a
recipient) is logged and counted, and evaluation continues with the rest.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dosewatch.config import DEFAULT_TIMEZONE
from dosewatch.core.correlation import correlation_scope, current_id, new_id, with_context
from dosewatch.core.telemetry import pipeline_span
from dosewatch.notifications.models import (
    EvaluationReport,
    NotificationCandidate,
    NotificationKind,
)
from dosewatch.notifications.pipeline import (
    DeliveryReport,
    DeliveryStatus,
    NotificationPipeline,
)
from dosewatch.notifications.records import MedicationProtocol, Recipient, RecordStore

logger = logging.getLogger(__name__)

RecipientCheck = Callable[[Recipient, datetime, EvaluationReport], Awaitable[None]]


def slot_wall_time(slot: str, local_date: date, tz: ZoneInfo) -> str:
    """Wall-clock ``HH:MM`` at which *slot* occurs on *local_date*.

    A slot inside a spring-forward gap does not exist that day; it is moved
    forward by the gap (02:30 becomes 03:30).  Every other slot maps to itself.
    """
    hours, minutes = slot.split(":")
    wall = datetime.combine(local_date, time(int(hours), int(minutes)), tzinfo=tz)
    return wall.astimezone(UTC).astimezone(tz).strftime("%H:%M")


def due_slots(schedule: tuple[str, ...], local_now: datetime, tz: ZoneInfo) -> list[str]:
    """Scheduled slots whose wall-clock time is the current local minute."""
    hhmm = local_now.strftime("%H:%M")
    return [s for s in schedule if slot_wall_time(s, local_now.date(), tz) == hhmm]


def _reminded_at_wall_time(protocol: MedicationProtocol, local_now: datetime) -> bool:
    """True when the last reminder went out at this same local date and minute.

    On a fall-back day the repeated hour shows the same wall-clock slot twice.
    """
    notified = protocol.last_notified_at
    if notified is None:
        return False
    local = notified.astimezone(local_now.tzinfo)
    return local.replace(second=0, microsecond=0, tzinfo=None) == local_now.replace(
        second=0, microsecond=0, tzinfo=None
    )


class TriggerEvaluator:
    """Turns schedules and stock into notification candidates and delivers them.

    Parameters
    ----------
    records:
        Record-keeping collaborator.
    pipeline:
        Delivery path for each candidate.
    default_timezone:
        Used for recipients without a (valid) configured zone.
    max_concurrency:
        Upper bound on recipients evaluated concurrently within one pass.
    soft_reminder_after, soft_reminder_tolerance:
        A soft reminder is due when the primary reminder went out between
        ``after`` and ``after + tolerance`` ago.
    low_stock_days:
        Stock lasting this many days or fewer triggers a stock alert.
    """

    def __init__(
        self,
        records: RecordStore,
        pipeline: NotificationPipeline,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        max_concurrency: int = 8,
        soft_reminder_after: timedelta = timedelta(minutes=30),
        soft_reminder_tolerance: timedelta = timedelta(minutes=5),
        low_stock_days: int = 7,
    ) -> None:
        self._records = records
        self._pipeline = pipeline
        self._default_tz = ZoneInfo(default_timezone)
        self._max_concurrency = max_concurrency
        self._soft_after = soft_reminder_after
        self._soft_tolerance = soft_reminder_tolerance
        self._low_stock_days = low_stock_days

    # -- helpers ------------------------------------------------------------

    def _zone(self, recipient: Recipient) -> ZoneInfo:
        if not recipient.timezone:
            return self._default_tz
        try:
            return ZoneInfo(recipient.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown timezone for recipient, using default",
                extra={"subject_id": str(recipient.subject_id), "timezone": recipient.timezone},
            )
            return self._default_tz

    @staticmethod
    def _tally(report: EvaluationReport, delivery: DeliveryReport) -> None:
        report.candidates += 1
        if delivery.status is DeliveryStatus.SENT:
            report.sent += 1
        elif delivery.status is DeliveryStatus.DUPLICATE:
            report.skipped_duplicate += 1
        else:
            report.dead_lettered += 1

    async def _run(
        self, stage: str, check: RecipientCheck, now: datetime | None
    ) -> EvaluationReport:
        """Apply *check* to every linked recipient with bounded concurrency."""
        now = now or datetime.now(UTC)
        report = EvaluationReport()
        with correlation_scope() as pass_id, pipeline_span(stage):
            recipients = await self._records.list_recipients()
            report.recipients = len(recipients)
            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _guarded(recipient: Recipient) -> EvaluationReport:
                local = EvaluationReport()
                async with semaphore:
                    try:
                        await with_context(lambda: check(recipient, now, local))
                    except Exception as exc:
                        local.errors += 1
                        local.failures.append(f"{recipient.subject_id}: {exc}")
                        logger.exception(
                            "Evaluation failed for recipient",
                            extra={"subject_id": str(recipient.subject_id), "stage": stage},
                        )
                return local

            for partial in await asyncio.gather(*(_guarded(r) for r in recipients)):
                report.merge(partial)

            logger.info(
                "Evaluation pass finished",
                extra={
                    "stage": stage,
                    "pass_id": pass_id,
                    "recipients": report.recipients,
                    "candidates": report.candidates,
                    "sent": report.sent,
                    "skipped_duplicate": report.skipped_duplicate,
                    "skipped_taken": report.skipped_taken,
                    "dead_lettered": report.dead_lettered,
                    "errors": report.errors,
                },
            )
        return report

    def _candidate(
        self,
        recipient: Recipient,
        kind: NotificationKind,
        payload: dict,
        protocol: MedicationProtocol | None = None,
    ) -> NotificationCandidate:
        return NotificationCandidate(
            subject_id=recipient.subject_id,
            kind=kind,
            payload=payload,
            correlation_id=current_id() or new_id(),
            protocol_id=protocol.id if protocol else None,
            recipient=recipient.chat_id,
        )

    # -- dose reminders -----------------------------------------------------

    async def evaluate(self, now: datetime | None = None) -> EvaluationReport:
        """Run one reminder pass (dose reminders and soft reminders)."""
        return await self._run("tick", self._check_reminders, now)

    async def _check_reminders(
        self, recipient: Recipient, now: datetime, report: EvaluationReport
    ) -> None:
        tz = self._zone(recipient)
        local_now = now.astimezone(tz)
        hhmm = local_now.strftime("%H:%M")
        logger.debug(
            "Checking reminders",
            extra={"subject_id": str(recipient.subject_id), "local_time": hhmm, "tz": tz.key},
        )

        for protocol in await self._records.active_protocols(recipient.subject_id):
            try:
                for slot in due_slots(protocol.time_schedule, local_now, tz):
                    if _reminded_at_wall_time(protocol, local_now):
                        continue
                    await self._dose_reminder(recipient, protocol, slot, now, tz, report)
                if self._soft_reminder_window(protocol, now):
                    await self._soft_reminder(recipient, protocol, now, report)
            except Exception as exc:
                report.errors += 1
                report.failures.append(f"{recipient.subject_id}/{protocol.id}: {exc}")
                logger.exception(
                    "Reminder check failed for protocol",
                    extra={
                        "subject_id": str(recipient.subject_id),
                        "protocol_id": str(protocol.id),
                    },
                )

    async def _dose_reminder(
        self,
        recipient: Recipient,
        protocol: MedicationProtocol,
        slot: str,
        now: datetime,
        tz: ZoneInfo,
        report: EvaluationReport,
    ) -> None:
        if await self._records.dose_taken_for_slot(protocol, slot, now.astimezone(tz).date(), tz):
            report.skipped_taken += 1
            logger.debug(
                "Dose already taken",
                extra={"protocol_id": str(protocol.id), "slot": slot},
            )
            return

        candidate = self._candidate(
            recipient,
            NotificationKind.DOSE_REMINDER,
            {
                "medicine_name": protocol.medicine_name,
                "dosage": protocol.dosage_per_intake,
                "slot": slot,
                "notes": protocol.notes,
                "titration_stage": protocol.titration_stage,
                "titration_total": protocol.titration_total,
                "protocol_id": str(protocol.id),
            },
            protocol,
        )
        delivery = await self._pipeline.deliver(candidate, now=now)
        self._tally(report, delivery)
        if delivery.status is DeliveryStatus.SENT:
            await self._records.mark_notified(protocol.id, now)

    def _soft_reminder_window(self, protocol: MedicationProtocol, now: datetime) -> bool:
        notified = protocol.last_notified_at
        if notified is None:
            return False
        latest = now - self._soft_after
        earliest = latest - self._soft_tolerance
        if not (earliest < notified <= latest):
            return False
        soft = protocol.last_soft_reminder_at
        return soft is None or soft <= earliest

    async def _soft_reminder(
        self,
        recipient: Recipient,
        protocol: MedicationProtocol,
        now: datetime,
        report: EvaluationReport,
    ) -> None:
        since = protocol.last_notified_at
        if since is None or await self._records.doses_logged_since(protocol.id, since):
            return

        candidate = self._candidate(
            recipient,
            NotificationKind.SOFT_REMINDER,
            {
                "medicine_name": protocol.medicine_name,
                "dosage": protocol.dosage_per_intake,
                "protocol_id": str(protocol.id),
                "notified_at": since.isoformat(),
            },
            protocol,
        )
        delivery = await self._pipeline.deliver(candidate, now=now)
        self._tally(report, delivery)
        if delivery.status is DeliveryStatus.SENT:
            await self._records.mark_soft_reminded(protocol.id, now)

    # -- daily digest -------------------------------------------------------

    async def evaluate_daily_digest(self, now: datetime | None = None) -> EvaluationReport:
        """Send each recipient a summary of today's adherence."""
        return await self._run("daily_digest", self._check_daily_digest, now)

    async def _check_daily_digest(
        self, recipient: Recipient, now: datetime, report: EvaluationReport
    ) -> None:
        tz = self._zone(recipient)
        today = now.astimezone(tz).date()
        protocols = await self._records.active_protocols(recipient.subject_id)
        expected = sum(len(p.time_schedule) for p in protocols)
        taken = await self._records.doses_taken_on(recipient.subject_id, today, tz)
        percentage = round(taken / expected * 100) if expected else 0

        candidate = self._candidate(
            recipient,
            NotificationKind.DAILY_DIGEST,
            {
                "date": today.isoformat(),
                "taken": taken,
                "expected": expected,
                "percentage": percentage,
            },
        )
        self._tally(report, await self._pipeline.deliver(candidate, now=now))

    # -- stock alerts -------------------------------------------------------

    async def evaluate_stock_alerts(self, now: datetime | None = None) -> EvaluationReport:
        """Alert recipients whose medicines run out within the low-stock horizon."""
        return await self._run("stock_alerts", self._check_stock, now)

    async def _check_stock(
        self, recipient: Recipient, now: datetime, report: EvaluationReport
    ) -> None:
        empty: list[dict] = []
        low: list[dict] = []
        for level in await self._records.stock_levels(recipient.subject_id):
            days = level.days_remaining
            if days is None:
                continue
            if days <= 0:
                empty.append({"name": level.medicine_name, "days": days})
            elif days <= self._low_stock_days:
                low.append({"name": level.medicine_name, "days": days})

        if not empty and not low:
            return

        candidate = self._candidate(
            recipient,
            NotificationKind.STOCK_ALERT,
            {"empty": empty, "low": low},
        )
        self._tally(report, await self._pipeline.deliver(candidate, now=now))
