"""Tests for trigger evaluation: reminders, DST, soft reminders, digest, stock."""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from dosewatch.notifications.errors import DeliveryError, ErrorCategory
from dosewatch.notifications.models import DedupKey, NotificationKind, SendResult
from dosewatch.notifications.records import StockLevel
from dosewatch.notifications.triggers import due_slots, slot_wall_time

pytestmark = pytest.mark.unit

NEW_YORK = ZoneInfo("America/New_York")


def _minutes(start: datetime, end: datetime):
    while start < end:
        yield start
        start += timedelta(minutes=1)


def _fired_slots(sender) -> Counter:
    fired: Counter = Counter()
    for _, message in sender.sent:
        for line in message.text.splitlines():
            if "Scheduled: " in line:
                fired[line.split("Scheduled: ", 1)[1]] += 1
    return fired


# ---------------------------------------------------------------------------
# Slot helpers
# ---------------------------------------------------------------------------


class TestSlotWallTime:
    def test_ordinary_slot_maps_to_itself(self):
        assert slot_wall_time("08:00", date(2026, 3, 8), NEW_YORK) == "08:00"

    def test_gap_slot_moves_forward(self):
        assert slot_wall_time("02:30", date(2026, 3, 8), NEW_YORK) == "03:30"

    def test_repeated_slot_maps_to_itself(self):
        assert slot_wall_time("01:30", date(2026, 11, 1), NEW_YORK) == "01:30"

    def test_due_slots(self):
        local_now = datetime(2026, 3, 8, 3, 30, tzinfo=NEW_YORK)
        assert due_slots(("02:30", "03:30", "08:00"), local_now, NEW_YORK) == ["02:30", "03:30"]


# ---------------------------------------------------------------------------
# Dose reminders
# ---------------------------------------------------------------------------


class TestDoseReminders:
    async def test_fires_at_local_slot(self, runtime, records, sender):
        recipient = records.add_recipient(chat_id="555", timezone="America/Sao_Paulo")
        protocol = records.add_protocol(recipient, "08:00", "20:00", medicine_name="Lithium")

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 11, 0, tzinfo=UTC))

        assert report.recipients == 1
        assert report.sent == 1
        (chat_id, message), = sender.sent
        assert chat_id == "555"
        assert "Lithium" in message.text
        assert message.reply_markup["inline_keyboard"][0][0]["callback_data"].startswith(
            f"take_:{protocol.id}"
        )
        assert records.notified[0][0] == protocol.id

    async def test_silent_outside_slot(self, runtime, records, sender):
        recipient = records.add_recipient(timezone="America/Sao_Paulo")
        records.add_protocol(recipient, "08:00")

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 11, 1, tzinfo=UTC))
        assert report.candidates == 0
        assert sender.sent == []

    async def test_skipped_when_dose_already_taken(self, runtime, records, sender):
        recipient = records.add_recipient()
        protocol = records.add_protocol(recipient, "08:00")
        records.taken_slots.add((protocol.id, "08:00", date(2026, 3, 1)))

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))
        assert report.skipped_taken == 1
        assert sender.sent == []

    async def test_repeat_evaluation_in_same_minute_sends_once(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "08:00")
        now = datetime(2026, 3, 1, 8, 0, 5, tzinfo=UTC)

        await runtime.evaluator.evaluate(now)
        await runtime.evaluator.evaluate(now + timedelta(seconds=30))
        assert len(sender.sent) == 1

    async def test_recent_send_is_deduplicated(self, runtime, records, sender):
        recipient = records.add_recipient()
        protocol = records.add_protocol(recipient, "08:00")
        now = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
        await runtime.dedup.record_sent(
            DedupKey.build(recipient.subject_id, NotificationKind.DOSE_REMINDER, protocol.id),
            now=now - timedelta(minutes=2),
        )

        report = await runtime.evaluator.evaluate(now)
        assert report.skipped_duplicate == 1
        assert sender.sent == []

    async def test_failed_delivery_is_dead_lettered(self, runtime, records, sender, pool):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "08:00")
        sender.queue(
            SendResult.failed(
                DeliveryError(ErrorCategory.INVALID_CHAT, "403", "Forbidden: bot was blocked")
            )
        )

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))
        assert report.dead_lettered == 1
        assert len(pool.dlq_rows) == 1
        assert records.notified == []

    async def test_unknown_timezone_uses_default(self, runtime, records, sender):
        recipient = records.add_recipient(timezone="Not/AZone")
        records.add_protocol(recipient, "08:00")

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))
        assert report.sent == 1

    async def test_recipients_without_chat_are_ignored(self, runtime, records, sender):
        recipient = records.add_recipient(chat_id=None)
        records.add_protocol(recipient, "08:00")

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))
        assert report.recipients == 0
        assert sender.sent == []


# ---------------------------------------------------------------------------
# Daylight-saving transitions
# ---------------------------------------------------------------------------


class TestDaylightSaving:
    async def test_spring_forward_fires_each_slot_once(self, runtime, records, sender):
        recipient = records.add_recipient(timezone="America/New_York")
        records.add_protocol(recipient, "01:30", "02:30", "08:00")

        # 2026-03-08: clocks jump from 02:00 EST to 03:00 EDT.
        start = datetime(2026, 3, 8, 4, 0, tzinfo=UTC)
        for now in _minutes(start, start + timedelta(hours=10)):
            await runtime.evaluator.evaluate(now)

        fired = _fired_slots(sender)
        assert fired["01:30"] == 1
        assert fired["02:30"] == 1
        assert fired["08:00"] == 1
        # 01:30 EST, then 02:30 shifted onto 03:30 EDT, then 08:00 EDT.
        assert [at for _, at in records.notified] == [
            datetime(2026, 3, 8, 6, 30, tzinfo=UTC),
            datetime(2026, 3, 8, 7, 30, tzinfo=UTC),
            datetime(2026, 3, 8, 12, 0, tzinfo=UTC),
        ]

    async def test_fall_back_fires_repeated_slot_once(self, runtime, records, sender):
        recipient = records.add_recipient(timezone="America/New_York")
        records.add_protocol(recipient, "01:30", "08:00")

        # 2026-11-01: clocks fall back from 02:00 EDT to 01:00 EST, so 01:30 happens twice.
        start = datetime(2026, 11, 1, 4, 0, tzinfo=UTC)
        for now in _minutes(start, start + timedelta(hours=10)):
            await runtime.evaluator.evaluate(now)

        fired = _fired_slots(sender)
        assert fired["01:30"] == 1
        assert fired["08:00"] == 1
        assert [at for _, at in records.notified] == [
            datetime(2026, 11, 1, 5, 30, tzinfo=UTC),
            datetime(2026, 11, 1, 13, 0, tzinfo=UTC),
        ]


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    async def test_one_broken_recipient_does_not_stop_others(self, runtime, records, sender):
        broken = records.add_recipient(chat_id="1")
        healthy = records.add_recipient(chat_id="2")
        records.add_protocol(broken, "08:00")
        records.add_protocol(healthy, "08:00")
        records.broken.add(broken.subject_id)

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))

        assert report.recipients == 2
        assert report.errors == 1
        assert report.sent == 1
        assert str(broken.subject_id) in report.failures[0]
        assert [chat for chat, _ in sender.sent] == ["2"]

    async def test_one_bad_protocol_does_not_stop_siblings(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "8am", medicine_name="Broken")
        records.add_protocol(recipient, "08:00", medicine_name="Fine")

        report = await runtime.evaluator.evaluate(datetime(2026, 3, 1, 8, 0, tzinfo=UTC))
        assert report.errors == 1
        assert report.sent == 1
        assert "Fine" in sender.sent[0][1].text


# ---------------------------------------------------------------------------
# Soft reminders
# ---------------------------------------------------------------------------


class TestSoftReminder:
    NOW = datetime(2026, 3, 1, 8, 32, tzinfo=UTC)

    async def test_fires_when_dose_not_logged(self, runtime, records, sender):
        recipient = records.add_recipient()
        protocol = records.add_protocol(
            recipient, "08:00", last_notified_at=self.NOW - timedelta(minutes=32)
        )

        report = await runtime.evaluator.evaluate(self.NOW)
        assert report.sent == 1
        assert "Reminder" in sender.sent[0][1].text
        buttons = sender.sent[0][1].reply_markup["inline_keyboard"][0]
        assert buttons[1]["callback_data"] == f"skip_:{protocol.id}"
        assert records.soft_reminded == [(protocol.id, self.NOW)]

    async def test_silent_when_dose_logged(self, runtime, records, sender):
        recipient = records.add_recipient()
        protocol = records.add_protocol(
            recipient, "08:00", last_notified_at=self.NOW - timedelta(minutes=32)
        )
        records.doses_since[protocol.id] = 1

        await runtime.evaluator.evaluate(self.NOW)
        assert sender.sent == []

    async def test_silent_outside_window(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "08:00", last_notified_at=self.NOW - timedelta(minutes=10))

        await runtime.evaluator.evaluate(self.NOW)
        assert sender.sent == []

    async def test_sent_only_once(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "08:00", last_notified_at=self.NOW - timedelta(minutes=31))

        await runtime.evaluator.evaluate(self.NOW)
        await runtime.evaluator.evaluate(self.NOW + timedelta(minutes=1))
        await runtime.evaluator.evaluate(self.NOW + timedelta(minutes=2))
        assert len(sender.sent) == 1


# ---------------------------------------------------------------------------
# Daily digest and stock alerts
# ---------------------------------------------------------------------------


class TestDailyDigest:
    async def test_reports_adherence(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.add_protocol(recipient, "08:00", "20:00")
        records.add_protocol(recipient, "12:00", "18:00")
        records.taken_on[(recipient.subject_id, date(2026, 3, 1))] = 3

        report = await runtime.evaluator.evaluate_daily_digest(
            datetime(2026, 3, 1, 23, 0, tzinfo=UTC)
        )
        assert report.sent == 1
        text = sender.sent[0][1].text
        assert "3/4" in text
        assert "75%" in text

    async def test_no_protocols_reports_zero(self, runtime, records, sender):
        records.add_recipient()
        await runtime.evaluator.evaluate_daily_digest(datetime(2026, 3, 1, 23, 0, tzinfo=UTC))
        assert "0/0" in sender.sent[0][1].text


class TestStockAlerts:
    async def test_alerts_for_empty_and_low_stock(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.stock[recipient.subject_id] = [
            StockLevel(uuid.uuid4(), "Lithium", quantity=0, daily_usage=2),
            StockLevel(uuid.uuid4(), "Sertraline", quantity=10, daily_usage=2),
            StockLevel(uuid.uuid4(), "Vitamin D", quantity=100, daily_usage=1),
            StockLevel(uuid.uuid4(), "As needed", quantity=3, daily_usage=0),
        ]

        report = await runtime.evaluator.evaluate_stock_alerts(
            datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        )
        assert report.sent == 1
        text = sender.sent[0][1].text
        assert "Lithium" in text
        assert "Sertraline" in text
        assert "~5 day" in text
        assert "Vitamin D" not in text
        assert "As needed" not in text

    async def test_no_alert_when_stock_is_fine(self, runtime, records, sender):
        recipient = records.add_recipient()
        records.stock[recipient.subject_id] = [
            StockLevel(uuid.uuid4(), "Vitamin D", quantity=100, daily_usage=1),
        ]
        report = await runtime.evaluator.evaluate_stock_alerts(
            datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        )
        assert report.candidates == 0
        assert sender.sent == []
