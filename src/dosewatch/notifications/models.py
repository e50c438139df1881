"""Value types shared across the notification pipeline."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any

from dosewatch.notifications.errors import DeliveryError, ErrorCategory


class NotificationKind(enum.StrEnum):
    DOSE_REMINDER = "dose_reminder"
    SOFT_REMINDER = "soft_reminder"
    STOCK_ALERT = "stock_alert"
    DAILY_DIGEST = "daily_digest"
    ADHERENCE_REPORT = "adherence_report"
    TITRATION_ALERT = "titration_alert"
    MONTHLY_REPORT = "monthly_report"

    @property
    def protocol_scoped(self) -> bool:
        """Whether the dedup key includes the protocol id for this kind."""
        return self in _PROTOCOL_SCOPED


_PROTOCOL_SCOPED = frozenset(
    {
        NotificationKind.DOSE_REMINDER,
        NotificationKind.SOFT_REMINDER,
        NotificationKind.TITRATION_ALERT,
    }
)


@dataclass(frozen=True)
class DedupKey:
    """Identity of "the same logical notification"."""

    subject_id: uuid.UUID
    kind: NotificationKind
    protocol_id: uuid.UUID | None = None

    @classmethod
    def build(
        cls,
        subject_id: uuid.UUID,
        kind: NotificationKind,
        protocol_id: uuid.UUID | None = None,
    ) -> DedupKey:
        """Build a key, dropping *protocol_id* for kinds that are not protocol-scoped."""
        return cls(subject_id, kind, protocol_id if kind.protocol_scoped else None)


@dataclass(frozen=True)
class NotificationCandidate:
    """A notification the trigger evaluator decided is due.

    ``payload`` holds everything needed to render the message, so a dead-lettered
    candidate can be replayed verbatim without re-reading the collaborator.
    """

    subject_id: uuid.UUID
    kind: NotificationKind
    payload: dict[str, Any]
    correlation_id: str
    protocol_id: uuid.UUID | None = None
    recipient: str | None = None

    @property
    def dedup_key(self) -> DedupKey:
        return DedupKey.build(self.subject_id, self.kind, self.protocol_id)

    def to_payload(self) -> dict[str, Any]:
        """Serialise to the JSON document stored on a dead-letter row."""
        return {
            "subject_id": str(self.subject_id),
            "kind": str(self.kind),
            "protocol_id": str(self.protocol_id) if self.protocol_id else None,
            "recipient": self.recipient,
            "correlation_id": self.correlation_id,
            "data": self.payload,
        }

    @classmethod
    def from_payload(cls, doc: dict[str, Any]) -> NotificationCandidate:
        """Inverse of :meth:`to_payload`."""
        protocol_id = doc.get("protocol_id")
        return cls(
            subject_id=uuid.UUID(str(doc["subject_id"])),
            kind=NotificationKind(doc["kind"]),
            payload=dict(doc.get("data") or {}),
            correlation_id=str(doc.get("correlation_id") or ""),
            protocol_id=uuid.UUID(str(protocol_id)) if protocol_id else None,
            recipient=doc.get("recipient"),
        )


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single call to a chat sender."""

    success: bool
    message_id: str | None = None
    error: DeliveryError | None = None

    @classmethod
    def ok(cls, message_id: str | int | None) -> SendResult:
        return cls(success=True, message_id=str(message_id) if message_id is not None else None)

    @classmethod
    def failed(cls, error: DeliveryError) -> SendResult:
        return cls(success=False, error=error)


@dataclass(frozen=True)
class DeliveryOutcome:
    """Per-attempt record kept on a :class:`RetryResult`."""

    attempt: int
    success: bool
    latency_ms: float
    error_category: ErrorCategory | None = None
    message_id: str | None = None


@dataclass
class EvaluationReport:
    """Counters for one trigger evaluation pass."""

    recipients: int = 0
    candidates: int = 0
    sent: int = 0
    skipped_duplicate: int = 0
    skipped_taken: int = 0
    dead_lettered: int = 0
    errors: int = 0
    failures: list[str] = field(default_factory=list)

    def merge(self, other: EvaluationReport) -> None:
        self.recipients += other.recipients
        self.candidates += other.candidates
        self.sent += other.sent
        self.skipped_duplicate += other.skipped_duplicate
        self.skipped_taken += other.skipped_taken
        self.dead_lettered += other.dead_lettered
        self.errors += other.errors
        self.failures.extend(other.failures)
