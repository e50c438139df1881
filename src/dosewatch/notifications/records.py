"""Read/write access to the medication record-keeping tables.

These tables (``user_settings``, ``protocols``, ``medicines``,
``medicine_logs``, ``stock``) belong to the surrounding application.  The
pipeline only reads schedules, chat links, time zones, dose logs and stock,
and stamps ``last_notified_at`` / ``last_soft_reminder_at`` on protocols.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    subject_id: uuid.UUID
    chat_id: str | None
    timezone: str | None = None


@dataclass(frozen=True)
class MedicationProtocol:
    id: uuid.UUID
    subject_id: uuid.UUID
    medicine_id: uuid.UUID
    medicine_name: str
    time_schedule: tuple[str, ...]
    dosage_per_intake: float = 1.0
    notes: str | None = None
    titration_stage: int | None = None
    titration_total: int | None = None
    last_notified_at: datetime | None = None
    last_soft_reminder_at: datetime | None = None

    @property
    def daily_usage(self) -> float:
        return len(self.time_schedule) * self.dosage_per_intake

    @classmethod
    def from_row(cls, row: Any) -> MedicationProtocol:
        titration = row["titration_schedule"] or []
        return cls(
            id=row["id"],
            subject_id=row["user_id"],
            medicine_id=row["medicine_id"],
            medicine_name=row["medicine_name"],
            time_schedule=tuple(row["time_schedule"] or ()),
            dosage_per_intake=float(row["dosage_per_intake"] or 0),
            notes=row["notes"],
            titration_stage=(row["current_stage_index"] or 0) + 1 if titration else None,
            titration_total=len(titration) if titration else None,
            last_notified_at=row["last_notified_at"],
            last_soft_reminder_at=row["last_soft_reminder_at"],
        )


@dataclass(frozen=True)
class StockLevel:
    medicine_id: uuid.UUID
    medicine_name: str
    quantity: float
    daily_usage: float

    @property
    def days_remaining(self) -> int | None:
        """Whole days the stock lasts, or None when nothing is consumed."""
        if self.daily_usage <= 0:
            return None
        return math.floor(self.quantity / self.daily_usage)


class RecordStore(Protocol):
    """Collaborator interface consumed by the trigger evaluator and admin API."""

    async def list_recipients(self) -> list[Recipient]: ...

    async def get_recipient(self, subject_id: uuid.UUID) -> Recipient | None: ...

    async def active_protocols(self, subject_id: uuid.UUID) -> list[MedicationProtocol]: ...

    async def dose_taken_for_slot(
        self,
        protocol: MedicationProtocol,
        slot: str,
        local_date: date,
        tz: ZoneInfo,
    ) -> bool: ...

    async def doses_logged_since(self, protocol_id: uuid.UUID, since: datetime) -> int: ...

    async def mark_notified(self, protocol_id: uuid.UUID, at: datetime) -> None: ...

    async def mark_soft_reminded(self, protocol_id: uuid.UUID, at: datetime) -> None: ...

    async def doses_taken_on(
        self, subject_id: uuid.UUID, local_date: date, tz: ZoneInfo
    ) -> int: ...

    async def stock_levels(self, subject_id: uuid.UUID) -> list[StockLevel]: ...


def _slot_minutes(slot: str) -> int:
    hours, minutes = slot.split(":")
    return int(hours) * 60 + int(minutes)


def closest_slot(schedule: tuple[str, ...] | list[str], local_time: time) -> str | None:
    """Return the scheduled ``HH:MM`` nearest to *local_time* (first wins on ties)."""
    if not schedule:
        return None
    minutes = local_time.hour * 60 + local_time.minute
    return min(schedule, key=lambda slot: abs(_slot_minutes(slot) - minutes))


def local_day_bounds(local_date: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Aware start (inclusive) and end (exclusive) of *local_date* in *tz*."""
    start = datetime.combine(local_date, time.min, tzinfo=tz)
    end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


_PROTOCOL_COLUMNS = """
    p.id, p.user_id, p.medicine_id, m.name AS medicine_name, p.time_schedule,
    p.dosage_per_intake, p.notes, p.titration_schedule, p.current_stage_index,
    p.last_notified_at, p.last_soft_reminder_at
"""


class PostgresRecordStore:
    """:class:`RecordStore` over the application's PostgreSQL tables."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def list_recipients(self) -> list[Recipient]:
        rows = await self._pool.fetch(
            """
            SELECT user_id, telegram_chat_id, timezone
            FROM user_settings
            WHERE telegram_chat_id IS NOT NULL
            ORDER BY user_id
            """
        )
        return [
            Recipient(r["user_id"], str(r["telegram_chat_id"]), r["timezone"]) for r in rows
        ]

    async def get_recipient(self, subject_id: uuid.UUID) -> Recipient | None:
        row = await self._pool.fetchrow(
            "SELECT user_id, telegram_chat_id, timezone FROM user_settings WHERE user_id = $1",
            subject_id,
        )
        if row is None:
            return None
        chat_id = row["telegram_chat_id"]
        return Recipient(row["user_id"], str(chat_id) if chat_id else None, row["timezone"])

    async def active_protocols(self, subject_id: uuid.UUID) -> list[MedicationProtocol]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_PROTOCOL_COLUMNS}
            FROM protocols p
            JOIN medicines m ON m.id = p.medicine_id
            WHERE p.user_id = $1 AND p.active
            ORDER BY p.id
            """,
            subject_id,
        )
        return [MedicationProtocol.from_row(r) for r in rows]

    async def dose_taken_for_slot(
        self,
        protocol: MedicationProtocol,
        slot: str,
        local_date: date,
        tz: ZoneInfo,
    ) -> bool:
        """True when a log on *local_date* is closest to *slot* among the schedule."""
        start, end = local_day_bounds(local_date, tz)
        rows = await self._pool.fetch(
            """
            SELECT taken_at FROM medicine_logs
            WHERE protocol_id = $1 AND taken_at >= $2 AND taken_at < $3
            """,
            protocol.id,
            start,
            end,
        )
        for row in rows:
            local_taken = row["taken_at"].astimezone(tz)
            if closest_slot(protocol.time_schedule, local_taken.time()) == slot:
                return True
        return False

    async def doses_logged_since(self, protocol_id: uuid.UUID, since: datetime) -> int:
        count = await self._pool.fetchval(
            "SELECT count(*) FROM medicine_logs WHERE protocol_id = $1 AND taken_at >= $2",
            protocol_id,
            since,
        )
        return int(count or 0)

    async def mark_notified(self, protocol_id: uuid.UUID, at: datetime) -> None:
        await self._pool.execute(
            "UPDATE protocols SET last_notified_at = $2 WHERE id = $1",
            protocol_id,
            at,
        )

    async def mark_soft_reminded(self, protocol_id: uuid.UUID, at: datetime) -> None:
        await self._pool.execute(
            "UPDATE protocols SET last_soft_reminder_at = $2 WHERE id = $1",
            protocol_id,
            at,
        )

    async def doses_taken_on(self, subject_id: uuid.UUID, local_date: date, tz: ZoneInfo) -> int:
        start, end = local_day_bounds(local_date, tz)
        count = await self._pool.fetchval(
            """
            SELECT count(*) FROM medicine_logs
            WHERE user_id = $1 AND taken_at >= $2 AND taken_at < $3
            """,
            subject_id,
            start,
            end,
        )
        return int(count or 0)

    async def stock_levels(self, subject_id: uuid.UUID) -> list[StockLevel]:
        """Stock and daily usage for medicines with at least one active protocol."""
        rows = await self._pool.fetch(
            """
            SELECT
                m.id AS medicine_id,
                m.name AS medicine_name,
                COALESCE((SELECT sum(s.quantity) FROM stock s WHERE s.medicine_id = m.id), 0)
                    AS quantity,
                COALESCE(sum(cardinality(p.time_schedule) * p.dosage_per_intake), 0)
                    AS daily_usage
            FROM medicines m
            JOIN protocols p ON p.medicine_id = m.id AND p.active
            WHERE m.user_id = $1
            GROUP BY m.id, m.name
            ORDER BY m.name
            """,
            subject_id,
        )
        return [
            StockLevel(
                medicine_id=r["medicine_id"],
                medicine_name=r["medicine_name"],
                quantity=float(r["quantity"]),
                daily_usage=float(r["daily_usage"]),
            )
            for r in rows
        ]
