"""Shared fixtures for dosewatch unit tests.

Covers:
- MockPool: an in-memory stand-in for the asyncpg pool that understands the
  ``notification_log`` and ``failed_notification_queue`` queries
- FakeSender and FakeRecordStore collaborators
- A runtime fixture assembling the real pipeline over those fakes, with
  jitter off and backoff sleeps recorded instead of awaited
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from dosewatch.config import DosewatchConfig, parse_config
from dosewatch.core.metrics import MetricsCollector
from dosewatch.notifications.messages import OutboundMessage
from dosewatch.notifications.models import NotificationCandidate, NotificationKind, SendResult
from dosewatch.notifications.records import MedicationProtocol, Recipient, StockLevel
from dosewatch.notifications.retry import DeliveryExecutor, RetryPolicy
from dosewatch.runtime import Runtime, assemble

_LIVE = ("pending", "retrying")
_CLOSED = ("resolved", "discarded")

# ---------------------------------------------------------------------------
# In-memory pool
# ---------------------------------------------------------------------------


class MockPool:
    """Dispatches on SQL substrings, mimicking the two notification tables.

    Every method yields to the event loop once before touching state, so
    concurrent callers interleave the way they would against a real pool,
    while each statement stays atomic like a single SQL statement.
    """

    def __init__(self) -> None:
        self.notification_log: list[dict[str, Any]] = []
        self.dlq_rows: dict[uuid.UUID, dict[str, Any]] = {}
        # Queries containing any of these fragments raise ConnectionError.
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, str, tuple]] = []
        self._seq = 0

    # -- helpers ------------------------------------------------------------

    def _now(self) -> datetime:
        self._seq += 1
        return datetime.now(UTC) + timedelta(microseconds=self._seq)

    async def _enter(self, method: str, query: str, args: tuple) -> None:
        await asyncio.sleep(0)
        self.calls.append((method, query, args))
        for fragment in self.fail_on:
            if fragment in query:
                raise ConnectionError(f"database unavailable ({fragment})")

    def _row(self, row: dict[str, Any]) -> dict[str, Any]:
        return dict(row)

    def _dlq_live(self, subject_id, protocol_id, kind) -> dict[str, Any] | None:
        for row in self.dlq_rows.values():
            if (
                row["status"] in _LIVE
                and row["subject_id"] == subject_id
                and row["protocol_id"] == protocol_id
                and row["kind"] == kind
            ):
                return row
        return None

    def add_dlq_row(self, **overrides: Any) -> dict[str, Any]:
        """Insert a dead-letter row directly; returns the stored row."""
        now = self._now()
        subject_id = overrides.pop("subject_id", uuid.uuid4())
        kind = str(overrides.pop("kind", NotificationKind.DAILY_DIGEST))
        row = {
            "id": uuid.uuid4(),
            "subject_id": subject_id,
            "protocol_id": None,
            "kind": kind,
            "payload": json.dumps(
                {
                    "subject_id": str(subject_id),
                    "kind": kind,
                    "protocol_id": None,
                    "recipient": "1001",
                    "correlation_id": "seeded",
                    "data": {"date": "2026-03-01", "taken": 1, "expected": 2, "percentage": 50},
                }
            ),
            "error_code": "ETIMEDOUT",
            "error_message": "timed out",
            "error_category": "network_error",
            "retry_count": 0,
            "correlation_id": "seeded",
            "status": "pending",
            "created_at": now,
            "updated_at": now,
            "resolved_at": None,
            "resolution_notes": None,
        }
        row.update(overrides)
        self.dlq_rows[row["id"]] = row
        return row

    # -- asyncpg surface ----------------------------------------------------

    async def fetchval(self, query: str, *args: Any) -> Any:
        await self._enter("fetchval", query, args)

        if "FROM notification_log" in query and "SELECT 1" in query:
            subject_id, kind, protocol_id, cutoff = args
            for row in self.notification_log:
                if (
                    row["subject_id"] == subject_id
                    and row["kind"] == kind
                    and row["protocol_id"] == protocol_id
                    and row["sent_at"] > cutoff
                ):
                    return 1
            return None

        if "INSERT INTO notification_log" in query:
            subject_id, kind, protocol_id, bucket, sent_at, metadata = args
            for row in self.notification_log:
                if (row["subject_id"], row["kind"], row["protocol_id"], row["window_bucket"]) == (
                    subject_id,
                    kind,
                    protocol_id,
                    bucket,
                ):
                    return None
            row_id = uuid.uuid4()
            self.notification_log.append(
                {
                    "id": row_id,
                    "subject_id": subject_id,
                    "kind": kind,
                    "protocol_id": protocol_id,
                    "window_bucket": bucket,
                    "sent_at": sent_at,
                    "metadata": json.loads(metadata),
                }
            )
            return row_id

        if "INSERT INTO failed_notification_queue" in query:
            (
                subject_id,
                protocol_id,
                kind,
                payload,
                error_code,
                error_message,
                error_category,
                retry_count,
                correlation_id,
            ) = args
            fields = {
                "payload": payload,
                "error_code": error_code,
                "error_message": error_message,
                "error_category": error_category,
                "retry_count": retry_count,
                "correlation_id": correlation_id,
            }
            live = self._dlq_live(subject_id, protocol_id, kind)
            if live is not None:
                live.update(fields, status="pending", updated_at=self._now())
                return live["id"]
            row = self.add_dlq_row(
                subject_id=subject_id, protocol_id=protocol_id, kind=kind, **fields
            )
            return row["id"]

        if "SET status = 'retrying'" in query:
            row = self.dlq_rows.get(args[0])
            if row is None or row["status"] != "pending":
                return None
            row.update(status="retrying", updated_at=self._now())
            return row["id"]

        if "SET status = $2" in query:
            entry_id, status, notes = args
            row = self.dlq_rows.get(entry_id)
            if row is None or row["status"] not in _LIVE:
                return None
            now = self._now()
            row.update(status=status, resolved_at=now, resolution_notes=notes, updated_at=now)
            return row["id"]

        if "retry_count = retry_count + 1" in query:
            entry_id, error_code, error_message, error_category = args
            row = self.dlq_rows.get(entry_id)
            if row is None or row["status"] not in _LIVE:
                return None
            row.update(
                retry_count=row["retry_count"] + 1,
                error_code=error_code,
                error_message=error_message,
                error_category=error_category,
                status="pending",
                updated_at=self._now(),
            )
            return row["retry_count"]

        if "min(created_at)" in query:
            live = [r["created_at"] for r in self.dlq_rows.values() if r["status"] in _LIVE]
            return min(live) if live else None

        if "count(*) FROM failed_notification_queue" in query:
            rows = list(self.dlq_rows.values())
            if "status = $1" in query:
                return sum(1 for r in rows if r["status"] == args[0])
            if "status IN ('pending', 'retrying')" in query:
                return sum(1 for r in rows if r["status"] in _LIVE)
            return len(rows)

        raise AssertionError(f"Unexpected fetchval: {query}")

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        await self._enter("fetchrow", query, args)
        if "FROM failed_notification_queue WHERE id = $1" in query:
            row = self.dlq_rows.get(args[0])
            return self._row(row) if row is not None else None
        raise AssertionError(f"Unexpected fetchrow: {query}")

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        await self._enter("fetch", query, args)
        rows = list(self.dlq_rows.values())

        if "GROUP BY status, error_category" in query:
            counts: dict[tuple[str, str], int] = {}
            for r in rows:
                key = (r["status"], r["error_category"])
                counts[key] = counts.get(key, 0) + 1
            return [
                {"status": status, "error_category": category, "n": n}
                for (status, category), n in counts.items()
            ]

        if "retry_count < $1" in query:
            ceiling, limit = args
            due = [r for r in rows if r["status"] == "pending" and r["retry_count"] < ceiling]
            due.sort(key=lambda r: r["created_at"])
            return [self._row(r) for r in due[:limit]]

        if "subject_id = $1" in query:
            subject_id, *rest = args
            selected = [r for r in rows if r["subject_id"] == subject_id]
            if "status = $2" in query:
                status, limit = rest
                selected = [r for r in selected if r["status"] == status]
            else:
                (limit,) = rest
            selected.sort(key=lambda r: r["created_at"], reverse=True)
            return [self._row(r) for r in selected[:limit]]

        if "ORDER BY created_at DESC" in query:
            if "status = $1" in query:
                status, limit, offset = args
                rows = [r for r in rows if r["status"] == status]
            else:
                limit, offset = args
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            return [self._row(r) for r in rows[offset : offset + limit]]

        raise AssertionError(f"Unexpected fetch: {query}")

    async def execute(self, query: str, *args: Any) -> str:
        await self._enter("execute", query, args)

        if "DELETE FROM notification_log" in query:
            (cutoff,) = args
            before = len(self.notification_log)
            self.notification_log = [r for r in self.notification_log if r["sent_at"] >= cutoff]
            return f"DELETE {before - len(self.notification_log)}"

        if "DELETE FROM failed_notification_queue" in query:
            (cutoff,) = args
            doomed = [
                key
                for key, r in self.dlq_rows.items()
                if r["status"] in _CLOSED
                and r["resolved_at"] is not None
                and r["resolved_at"] < cutoff
            ]
            for key in doomed:
                del self.dlq_rows[key]
            return f"DELETE {len(doomed)}"

        raise AssertionError(f"Unexpected execute: {query}")

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class FakeSender:
    """Chat sender replaying a script of results and exceptions.

    Once the script runs out every send succeeds with an increasing message id.
    """

    def __init__(self) -> None:
        self.script: list[SendResult | BaseException] = []
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.closed = False
        self._next_id = 100

    def queue(self, *outcomes: SendResult | BaseException) -> None:
        self.script.extend(outcomes)

    async def send(self, recipient: str, message: OutboundMessage) -> SendResult:
        self.sent.append((recipient, message))
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        self._next_id += 1
        return SendResult.ok(self._next_id)

    async def close(self) -> None:
        self.closed = True


class FakeRecordStore:
    """In-memory record-keeping collaborator."""

    def __init__(self) -> None:
        self.recipients: list[Recipient] = []
        self.protocols: dict[uuid.UUID, list[MedicationProtocol]] = {}
        self.taken_slots: set[tuple[uuid.UUID, str, date]] = set()
        self.doses_since: dict[uuid.UUID, int] = {}
        self.taken_on: dict[tuple[uuid.UUID, date], int] = {}
        self.stock: dict[uuid.UUID, list[StockLevel]] = {}
        self.broken: set[uuid.UUID] = set()
        self.notified: list[tuple[uuid.UUID, datetime]] = []
        self.soft_reminded: list[tuple[uuid.UUID, datetime]] = []

    def add_recipient(
        self,
        chat_id: str | None = "1001",
        timezone: str | None = None,
        subject_id: uuid.UUID | None = None,
    ) -> Recipient:
        recipient = Recipient(subject_id or uuid.uuid4(), chat_id, timezone)
        self.recipients.append(recipient)
        return recipient

    def add_protocol(
        self, recipient: Recipient, *schedule: str, **fields: Any
    ) -> MedicationProtocol:
        protocol = MedicationProtocol(
            id=fields.pop("id", uuid.uuid4()),
            subject_id=recipient.subject_id,
            medicine_id=fields.pop("medicine_id", uuid.uuid4()),
            medicine_name=fields.pop("medicine_name", "Sertraline"),
            time_schedule=tuple(schedule),
            **fields,
        )
        self.protocols.setdefault(recipient.subject_id, []).append(protocol)
        return protocol

    async def list_recipients(self) -> list[Recipient]:
        return [r for r in self.recipients if r.chat_id]

    async def get_recipient(self, subject_id: uuid.UUID) -> Recipient | None:
        return next((r for r in self.recipients if r.subject_id == subject_id), None)

    async def active_protocols(self, subject_id: uuid.UUID) -> list[MedicationProtocol]:
        if subject_id in self.broken:
            raise RuntimeError("protocol table unavailable")
        return list(self.protocols.get(subject_id, []))

    async def dose_taken_for_slot(
        self, protocol: MedicationProtocol, slot: str, local_date: date, tz: ZoneInfo
    ) -> bool:
        return (protocol.id, slot, local_date) in self.taken_slots

    async def doses_logged_since(self, protocol_id: uuid.UUID, since: datetime) -> int:
        return self.doses_since.get(protocol_id, 0)

    def _stamp(self, protocol_id: uuid.UUID, **fields: Any) -> None:
        for protocols in self.protocols.values():
            for i, protocol in enumerate(protocols):
                if protocol.id == protocol_id:
                    protocols[i] = dataclasses.replace(protocol, **fields)

    async def mark_notified(self, protocol_id: uuid.UUID, at: datetime) -> None:
        self.notified.append((protocol_id, at))
        self._stamp(protocol_id, last_notified_at=at)

    async def mark_soft_reminded(self, protocol_id: uuid.UUID, at: datetime) -> None:
        self.soft_reminded.append((protocol_id, at))
        self._stamp(protocol_id, last_soft_reminder_at=at)

    async def doses_taken_on(self, subject_id: uuid.UUID, local_date: date, tz: ZoneInfo) -> int:
        return self.taken_on.get((subject_id, local_date), 0)

    async def stock_levels(self, subject_id: uuid.UUID) -> list[StockLevel]:
        return list(self.stock.get(subject_id, []))


class SleepRecorder:
    """Backoff sleep that records the requested delay and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pool() -> MockPool:
    return MockPool()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def records() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def config() -> DosewatchConfig:
    return parse_config(
        {
            "chat": {"bot_token": "123:test"},
            "retry": {"jitter": False},
            "api": {"admin_token": "s3cret"},
            "scheduler": {"default_timezone": "UTC"},
        }
    )


@pytest.fixture
def runtime(
    config: DosewatchConfig,
    pool: MockPool,
    sender: FakeSender,
    records: FakeRecordStore,
    sleeps: SleepRecorder,
) -> Runtime:
    """The production component graph over in-memory fakes."""
    metrics = MetricsCollector()
    executor = DeliveryExecutor(metrics, RetryPolicy.from_config(config.retry), sleep=sleeps)
    return assemble(
        config,
        pool=pool,
        sender=sender,
        records=records,
        metrics=metrics,
        executor=executor,
    )


@pytest.fixture
def make_candidate():
    """Factory for notification candidates with sensible defaults."""

    def _make(
        kind: NotificationKind = NotificationKind.DOSE_REMINDER,
        *,
        subject_id: uuid.UUID | None = None,
        protocol_id: uuid.UUID | None = None,
        recipient: str | None = "1001",
        payload: dict[str, Any] | None = None,
        correlation_id: str = "corr-test",
    ) -> NotificationCandidate:
        if protocol_id is None and kind.protocol_scoped:
            protocol_id = uuid.uuid4()
        return NotificationCandidate(
            subject_id=subject_id or uuid.uuid4(),
            kind=kind,
            payload=payload
            or {"medicine_name": "Sertraline", "dosage": 1, "slot": "08:00"},
            correlation_id=correlation_id,
            protocol_id=protocol_id,
            recipient=recipient,
        )

    return _make
