"""Duplicate suppression for outbound notifications.

A notification is suppressed when a successful send for the same
:class:`~dosewatch.notifications.models.DedupKey` was logged inside the
deduplication window.  Two rules shape the contract:

- The check fails open.  If the datastore cannot answer, the notification is
  sent: a missed medication reminder is worse than an occasional duplicate.
- Logging a send is a separate call, made only after delivery is confirmed,
  so a failed delivery is never recorded as sent.

Concurrent ``record_sent`` calls for one key inside one window collapse into a
single ``notification_log`` row through the
``UNIQUE NULLS NOT DISTINCT (subject_id, kind, protocol_id, window_bucket)``
constraint; no application-level lock is taken.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from dosewatch.db import affected_rows
from dosewatch.notifications.models import DedupKey

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=5)


def window_bucket(ts: datetime, window: timedelta) -> datetime:
    """Floor *ts* to the start of its dedup window (epoch-aligned)."""
    size = int(window.total_seconds())
    epoch = int(ts.timestamp())
    return datetime.fromtimestamp(epoch - epoch % size, tz=UTC)


class Deduplicator:
    """Window-based duplicate check over the ``notification_log`` table.

    Parameters
    ----------
    pool:
        asyncpg connection pool (or anything with ``fetchval``/``execute``).
    window:
        How long a logged send suppresses an equivalent notification.
    """

    def __init__(self, pool: Any, window: timedelta = DEFAULT_WINDOW) -> None:
        self._pool = pool
        self._window = window

    @property
    def window(self) -> timedelta:
        return self._window

    async def should_send(self, key: DedupKey, *, now: datetime | None = None) -> bool:
        """Return False only when *key* was sent within the window."""
        now = now or datetime.now(UTC)
        try:
            found = await self._pool.fetchval(
                """
                SELECT 1 FROM notification_log
                WHERE subject_id = $1
                  AND kind = $2
                  AND protocol_id IS NOT DISTINCT FROM $3
                  AND sent_at > $4
                LIMIT 1
                """,
                key.subject_id,
                str(key.kind),
                key.protocol_id,
                now - self._window,
            )
        except Exception:
            logger.warning(
                "Dedup check failed, allowing send",
                exc_info=True,
                extra={
                    "subject_id": str(key.subject_id),
                    "kind": str(key.kind),
                    "protocol_id": str(key.protocol_id) if key.protocol_id else None,
                },
            )
            return True

        if found:
            logger.info(
                "Duplicate notification suppressed",
                extra={
                    "subject_id": str(key.subject_id),
                    "kind": str(key.kind),
                    "window_seconds": int(self._window.total_seconds()),
                },
            )
            return False
        return True

    async def record_sent(
        self,
        key: DedupKey,
        metadata: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Log a confirmed send.  Returns True when a new row was written.

        Errors are logged and swallowed: the message was already delivered and
        the worst outcome of a missing row is one duplicate later.
        """
        now = now or datetime.now(UTC)
        try:
            inserted = await self._pool.fetchval(
                """
                INSERT INTO notification_log
                    (subject_id, kind, protocol_id, window_bucket, sent_at, metadata)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (subject_id, kind, protocol_id, window_bucket) DO NOTHING
                RETURNING id
                """,
                key.subject_id,
                str(key.kind),
                key.protocol_id,
                window_bucket(now, self._window),
                now,
                json.dumps(metadata or {}, default=str),
            )
        except Exception:
            logger.error(
                "Failed to record sent notification",
                exc_info=True,
                extra={"subject_id": str(key.subject_id), "kind": str(key.kind)},
            )
            return False
        return inserted is not None

    async def cleanup(self, days_to_keep: int = 7, *, now: datetime | None = None) -> int:
        """Delete log rows older than *days_to_keep* days.  Returns rows deleted."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=days_to_keep)
        result = await self._pool.execute(
            "DELETE FROM notification_log WHERE sent_at < $1",
            cutoff,
        )
        deleted = affected_rows(result)
        logger.info(
            "Cleaned up notification log",
            extra={"deleted": deleted, "days_to_keep": days_to_keep},
        )
        return deleted

