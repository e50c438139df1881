"""Dead-letter queue API models.

The list envelope and the retry result keep the camelCase keys operators'
tooling already consumes (``pageSize``, ``totalPages``, ``messageId``);
entries themselves are snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dosewatch.notifications.dead_letter import DLQEntry, DLQStats, DLQStatus
from dosewatch.notifications.errors import ErrorCategory
from dosewatch.notifications.models import NotificationKind


class DeadLetterEntry(BaseModel):
    """One ``failed_notification_queue`` row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject_id: UUID
    protocol_id: UUID | None = None
    kind: NotificationKind
    payload: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    error_category: ErrorCategory
    retry_count: int = 0
    correlation_id: str | None = None
    status: DLQStatus
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    resolution_notes: str | None = None

    @classmethod
    def from_entry(cls, entry: DLQEntry) -> DeadLetterEntry:
        return cls.model_validate(entry)


class DeadLetterPage(BaseModel):
    """Paginated list of entries, newest first."""

    model_config = ConfigDict(populate_by_name=True)

    data: list[DeadLetterEntry]
    total: int
    page: int
    page_size: int = Field(serialization_alias="pageSize")
    total_pages: int = Field(serialization_alias="totalPages")


class RetryResponse(BaseModel):
    success: bool
    message: str | None = None
    message_id: str | None = Field(default=None, serialization_alias="messageId")
    error: str | None = None


class DiscardRequest(BaseModel):
    reason: str | None = None


class DiscardResponse(BaseModel):
    success: bool
    message: str
    entry: DeadLetterEntry


class DeadLetterStatsResponse(BaseModel):
    by_status: dict[str, int]
    by_category: dict[str, int]
    live: int
    total: int
    oldest_unresolved_at: datetime | None = None
    oldest_unresolved_age_seconds: float | None = None

    @classmethod
    def from_stats(cls, stats: DLQStats) -> DeadLetterStatsResponse:
        return cls(
            by_status=stats.by_status,
            by_category=stats.by_category,
            live=stats.live,
            total=stats.total,
            oldest_unresolved_at=stats.oldest_unresolved_at,
            oldest_unresolved_age_seconds=stats.oldest_unresolved_age_seconds,
        )
