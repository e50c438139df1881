"""Dead-letter queue for notifications that could not be delivered.

Rows live in ``failed_notification_queue``.  The table's partial unique index
on ``(subject_id, protocol_id, kind) NULLS NOT DISTINCT WHERE status IN
('pending', 'retrying')`` is the idempotency boundary: a new failure for the
same logical notification updates the live row instead of adding one, even
when overlapping evaluator ticks enqueue concurrently.

Status lifecycle::

    (created) -> pending -> retrying -> resolved
                        \\-> retrying -> discarded
    pending  -> discarded
    retrying -> pending       (a retry attempt failed; retry_count + 1)

Every mutation refreshes the live backlog gauge on the metrics collector.
"""

from __future__ import annotations

import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from dosewatch.core.metrics import MetricsCollector
from dosewatch.db import affected_rows
from dosewatch.notifications.errors import DeliveryError, ErrorCategory, ErrorClass
from dosewatch.notifications.models import NotificationCandidate, NotificationKind

logger = logging.getLogger(__name__)

DEFAULT_AUTO_RETRY_CEILING = 5
DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100
DEFAULT_DISCARD_NOTES = "Manually discarded via admin interface"


class DLQStatus(enum.StrEnum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    DISCARDED = "discarded"

    @property
    def is_live(self) -> bool:
        return self in (DLQStatus.PENDING, DLQStatus.RETRYING)


class Resolution(enum.StrEnum):
    SUCCESS = "success"
    DISCARDED = "discarded"
    MANUAL = "manual"

    @property
    def status(self) -> DLQStatus:
        if self is Resolution.DISCARDED:
            return DLQStatus.DISCARDED
        return DLQStatus.RESOLVED


class DeadLetterError(Exception):
    """Base class for dead-letter queue errors."""


class DeadLetterWriteError(DeadLetterError):
    """A failed notification could not be persisted."""


class EntryNotFoundError(DeadLetterError, LookupError):
    """No dead-letter entry has the requested id."""


class InvalidTransitionError(DeadLetterError, ValueError):
    """The entry's current status does not allow the requested transition."""


class EntryConflictError(DeadLetterError):
    """Another worker claimed the entry first."""


@dataclass(frozen=True)
class DLQEntry:
    id: uuid.UUID
    subject_id: uuid.UUID
    protocol_id: uuid.UUID | None
    kind: NotificationKind
    payload: dict[str, Any]
    error_code: str | None
    error_message: str | None
    error_category: ErrorCategory
    retry_count: int
    correlation_id: str | None
    status: DLQStatus
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    resolution_notes: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> DLQEntry:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            protocol_id=row["protocol_id"],
            kind=NotificationKind(row["kind"]),
            payload=dict(payload or {}),
            error_code=row["error_code"],
            error_message=row["error_message"],
            error_category=ErrorCategory(row["error_category"]),
            retry_count=row["retry_count"],
            correlation_id=row["correlation_id"],
            status=DLQStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolved_at=row["resolved_at"],
            resolution_notes=row["resolution_notes"],
        )

    def candidate(self) -> NotificationCandidate:
        """Rebuild the notification exactly as it was first attempted."""
        return NotificationCandidate.from_payload(self.payload)


@dataclass(frozen=True)
class DLQStats:
    by_status: dict[str, int] = field(default_factory=dict)
    by_category: dict[str, int] = field(default_factory=dict)
    oldest_unresolved_at: datetime | None = None
    oldest_unresolved_age_seconds: float | None = None

    @property
    def live(self) -> int:
        return self.by_status.get(DLQStatus.PENDING, 0) + self.by_status.get(
            DLQStatus.RETRYING, 0
        )

    @property
    def total(self) -> int:
        return sum(self.by_status.values())


_COLUMNS = """
    id, subject_id, protocol_id, kind, payload, error_code, error_message,
    error_category, retry_count, correlation_id, status, created_at,
    updated_at, resolved_at, resolution_notes
"""


class DeadLetterQueue:
    """Mediates reads and writes of ``failed_notification_queue`` rows.

    Parameters
    ----------
    pool:
        asyncpg connection pool.
    metrics:
        Collector whose DLQ size gauge is refreshed after every mutation.
    auto_retry_ceiling:
        Entries with ``retry_count`` at or above this are left for operators.
    """

    def __init__(
        self,
        pool: Any,
        metrics: MetricsCollector,
        auto_retry_ceiling: int = DEFAULT_AUTO_RETRY_CEILING,
    ) -> None:
        self._pool = pool
        self._metrics = metrics
        self._auto_retry_ceiling = auto_retry_ceiling

    # -- mutations ----------------------------------------------------------

    async def enqueue(
        self,
        candidate: NotificationCandidate,
        error: DeliveryError,
        retry_count: int,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        """Insert or refresh the live entry for *candidate*; return its id.

        Raises
        ------
        DeadLetterWriteError
            If the row could not be written.
        """
        key = candidate.dedup_key
        correlation_id = correlation_id or candidate.correlation_id
        try:
            entry_id = await self._pool.fetchval(
                f"""
                INSERT INTO failed_notification_queue (
                    subject_id, protocol_id, kind, payload, error_code,
                    error_message, error_category, retry_count, correlation_id, status
                )
                VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, '{DLQStatus.PENDING}')
                ON CONFLICT (subject_id, protocol_id, kind)
                    WHERE status IN ('pending', 'retrying')
                DO UPDATE SET
                    payload = EXCLUDED.payload,
                    error_code = EXCLUDED.error_code,
                    error_message = EXCLUDED.error_message,
                    error_category = EXCLUDED.error_category,
                    retry_count = EXCLUDED.retry_count,
                    correlation_id = EXCLUDED.correlation_id,
                    status = '{DLQStatus.PENDING}',
                    updated_at = now()
                RETURNING id
                """,
                key.subject_id,
                key.protocol_id,
                str(candidate.kind),
                json.dumps(candidate.to_payload(), default=str),
                error.code,
                error.message,
                str(error.category),
                retry_count,
                correlation_id,
            )
        except Exception as exc:
            logger.error(
                "Failed to write dead-letter entry",
                exc_info=True,
                extra={
                    "subject_id": str(candidate.subject_id),
                    "kind": str(candidate.kind),
                    "error_category": str(error.category),
                },
            )
            raise DeadLetterWriteError(
                f"Could not dead-letter {candidate.kind} for {candidate.subject_id}"
            ) from exc

        permanent_payload = error.category.error_class is ErrorClass.PERMANENT_PAYLOAD
        log = logger.error if permanent_payload else logger.info
        log(
            "Notification dead-lettered",
            extra={
                "dlq_id": str(entry_id),
                "subject_id": str(candidate.subject_id),
                "kind": str(candidate.kind),
                "error_category": str(error.category),
                "error_class": str(error.category.error_class),
                "retry_count": retry_count,
            },
        )
        await self._refresh_size()
        return entry_id

    async def mark_for_retry(self, entry_id: uuid.UUID) -> bool:
        """Claim a pending entry (pending -> retrying).  False if not pending."""
        claimed = await self._pool.fetchval(
            """
            UPDATE failed_notification_queue
            SET status = 'retrying', updated_at = now()
            WHERE id = $1 AND status = 'pending'
            RETURNING id
            """,
            entry_id,
        )
        await self._refresh_size()
        if claimed is None:
            logger.info("Dead-letter entry not claimable", extra={"dlq_id": str(entry_id)})
            return False
        return True

    async def resolve(
        self,
        entry_id: uuid.UUID,
        resolution: Resolution,
        notes: str = "",
    ) -> bool:
        """Close a live entry as resolved or discarded.  False if it was not live."""
        resolution = Resolution(resolution)
        updated = await self._pool.fetchval(
            """
            UPDATE failed_notification_queue
            SET status = $2, resolved_at = now(), resolution_notes = $3, updated_at = now()
            WHERE id = $1 AND status IN ('pending', 'retrying')
            RETURNING id
            """,
            entry_id,
            str(resolution.status),
            notes or None,
        )
        await self._refresh_size()
        if updated is None:
            return False
        logger.info(
            "Dead-letter entry closed",
            extra={
                "dlq_id": str(entry_id),
                "resolution": str(resolution),
                "status": str(resolution.status),
            },
        )
        return True

    async def discard(self, entry_id: uuid.UUID, reason: str | None = None) -> DLQEntry:
        """Discard a live entry on operator request.

        Raises
        ------
        EntryNotFoundError
            Unknown *entry_id*.
        InvalidTransitionError
            The entry is already resolved or discarded.
        """
        entry = await self.require(entry_id)
        if not entry.status.is_live:
            raise InvalidTransitionError(f"Notification already {entry.status}")
        notes = reason or DEFAULT_DISCARD_NOTES
        if not await self.resolve(entry_id, Resolution.DISCARDED, notes):
            raise InvalidTransitionError("Notification was closed concurrently")
        return await self.require(entry_id)

    async def record_retry_failure(self, entry_id: uuid.UUID, error: DeliveryError) -> bool:
        """Return a live entry to pending with ``retry_count + 1`` and the latest error."""
        retry_count = await self._pool.fetchval(
            """
            UPDATE failed_notification_queue
            SET retry_count = retry_count + 1,
                error_code = $2,
                error_message = $3,
                error_category = $4,
                status = 'pending',
                updated_at = now()
            WHERE id = $1 AND status IN ('pending', 'retrying')
            RETURNING retry_count
            """,
            entry_id,
            error.code,
            error.message,
            str(error.category),
        )
        await self._refresh_size()
        if retry_count is None:
            return False
        logger.info(
            "Dead-letter retry failed",
            extra={
                "dlq_id": str(entry_id),
                "retry_count": retry_count,
                "error_category": str(error.category),
            },
        )
        return True

    async def cleanup(self, days_to_keep: int = 30, *, now: datetime | None = None) -> int:
        """Delete resolved/discarded entries closed more than *days_to_keep* days ago."""
        now = now or datetime.now(UTC)
        result = await self._pool.execute(
            """
            DELETE FROM failed_notification_queue
            WHERE status IN ('resolved', 'discarded') AND resolved_at < $1
            """,
            now - timedelta(days=days_to_keep),
        )
        deleted = affected_rows(result)
        logger.info(
            "Cleaned up dead-letter queue",
            extra={"deleted": deleted, "days_to_keep": days_to_keep},
        )
        await self._refresh_size()
        return deleted

    # -- reads --------------------------------------------------------------

    async def get(self, entry_id: uuid.UUID) -> DLQEntry | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM failed_notification_queue WHERE id = $1",
            entry_id,
        )
        return DLQEntry.from_row(row) if row is not None else None

    async def require(self, entry_id: uuid.UUID) -> DLQEntry:
        """Like :meth:`get` but raises :class:`EntryNotFoundError`."""
        entry = await self.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Dead-letter entry not found: {entry_id}")
        return entry

    async def list_entries(
        self,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        status: DLQStatus | None = None,
    ) -> tuple[list[DLQEntry], int]:
        """Page through entries newest first.  Returns ``(entries, total)``."""
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        offset = max(offset, 0)

        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            params.append(str(DLQStatus(status)))
            conditions.append(f"status = ${len(params)}")
        where_clause = " AND ".join(conditions) if conditions else "TRUE"

        total = await self._pool.fetchval(
            f"SELECT count(*) FROM failed_notification_queue WHERE {where_clause}",
            *params,
        )
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM failed_notification_queue
            WHERE {where_clause}
            ORDER BY created_at DESC
            LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            """,
            *params,
            limit,
            offset,
        )
        return [DLQEntry.from_row(r) for r in rows], int(total or 0)

    async def list_for_subject(
        self,
        subject_id: uuid.UUID,
        limit: int = 10,
        status: DLQStatus | None = None,
    ) -> list[DLQEntry]:
        params: list[Any] = [subject_id]
        conditions = ["subject_id = $1"]
        if status is not None:
            params.append(str(DLQStatus(status)))
            conditions.append(f"status = ${len(params)}")
        params.append(min(max(limit, 1), MAX_LIST_LIMIT))
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM failed_notification_queue
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        return [DLQEntry.from_row(r) for r in rows]

    async def pending_for_auto_retry(self, limit: int = 50) -> list[DLQEntry]:
        """Pending entries still under the automatic reprocessing ceiling, oldest first."""
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM failed_notification_queue
            WHERE status = 'pending' AND retry_count < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            self._auto_retry_ceiling,
            limit,
        )
        return [DLQEntry.from_row(r) for r in rows]

    async def stats(self, *, now: datetime | None = None) -> DLQStats:
        now = now or datetime.now(UTC)
        rows = await self._pool.fetch(
            """
            SELECT status, error_category, count(*) AS n
            FROM failed_notification_queue
            GROUP BY status, error_category
            """
        )
        by_status: dict[str, int] = {}
        by_category: dict[str, int] = {}
        for row in rows:
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["n"]
            category = row["error_category"]
            by_category[category] = by_category.get(category, 0) + row["n"]

        oldest = await self._pool.fetchval(
            """
            SELECT min(created_at) FROM failed_notification_queue
            WHERE status IN ('pending', 'retrying')
            """
        )
        return DLQStats(
            by_status=by_status,
            by_category=by_category,
            oldest_unresolved_at=oldest,
            oldest_unresolved_age_seconds=(now - oldest).total_seconds() if oldest else None,
        )

    async def live_count(self) -> int:
        count = await self._pool.fetchval(
            """
            SELECT count(*) FROM failed_notification_queue
            WHERE status IN ('pending', 'retrying')
            """
        )
        return int(count or 0)

    async def _refresh_size(self) -> None:
        try:
            self._metrics.update_dlq_size(await self.live_count())
        except Exception:
            logger.warning("Failed to refresh DLQ size gauge", exc_info=True)
