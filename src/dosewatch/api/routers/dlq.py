"""Dead-letter queue admin endpoints: list, retry, discard.

- ``GET /api/dlq`` pages through entries newest first
- ``POST /api/dlq/{id}/retry`` makes one delivery attempt for an entry
- ``POST /api/dlq/{id}/discard`` closes an entry without delivering it
"""

from __future__ import annotations

import logging
import math
import uuid

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from dosewatch.api.auth import require_admin
from dosewatch.api.models.dlq import (
    DeadLetterEntry,
    DeadLetterPage,
    DeadLetterStatsResponse,
    DiscardRequest,
    DiscardResponse,
    RetryResponse,
)
from dosewatch.notifications.dead_letter import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    DeadLetterQueue,
    DLQStatus,
)
from dosewatch.notifications.pipeline import NotificationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dlq", tags=["dlq"], dependencies=[Depends(require_admin)])


def _get_dlq() -> DeadLetterQueue:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("DeadLetterQueue not initialized")


def _get_pipeline() -> NotificationPipeline:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("NotificationPipeline not initialized")


def _parse_id(entry_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(entry_id)
    except ValueError:
        raise ValueError(f"Invalid notification id: {entry_id}") from None


def _parse_status(status: str | None) -> DLQStatus | None:
    if status is None or status == "":
        return None
    try:
        return DLQStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in DLQStatus)
        raise ValueError(f"Invalid status '{status}'; expected one of: {allowed}") from None


@router.get("", response_model=DeadLetterPage)
async def list_dead_letters(
    limit: int = Query(DEFAULT_LIST_LIMIT, description="Page size, clamped to 1..100"),
    offset: int = Query(0, ge=0),
    status: str | None = Query(None, description="pending, retrying, resolved or discarded"),
    dlq: DeadLetterQueue = Depends(_get_dlq),
) -> DeadLetterPage:
    limit = min(max(limit, 1), MAX_LIST_LIMIT)
    entries, total = await dlq.list_entries(
        limit=limit, offset=offset, status=_parse_status(status)
    )
    return DeadLetterPage(
        data=[DeadLetterEntry.from_entry(e) for e in entries],
        total=total,
        page=offset // limit + 1,
        page_size=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/stats", response_model=DeadLetterStatsResponse)
async def dead_letter_stats(
    dlq: DeadLetterQueue = Depends(_get_dlq),
) -> DeadLetterStatsResponse:
    return DeadLetterStatsResponse.from_stats(await dlq.stats())


@router.get("/{entry_id}", response_model=DeadLetterEntry)
async def get_dead_letter(
    entry_id: str,
    dlq: DeadLetterQueue = Depends(_get_dlq),
) -> DeadLetterEntry:
    return DeadLetterEntry.from_entry(await dlq.require(_parse_id(entry_id)))


@router.post("/{entry_id}/retry", response_model=RetryResponse)
async def retry_dead_letter(
    entry_id: str,
    pipeline: NotificationPipeline = Depends(_get_pipeline),
):
    """Claim the entry and make a single delivery attempt.

    A failed attempt returns 500 with ``success: false``; the entry goes back
    to ``pending`` with its retry count incremented.
    """
    outcome = await pipeline.replay(_parse_id(entry_id))
    if outcome.success:
        logger.info("Manual dead-letter retry delivered", extra={"dlq_id": entry_id})
        return RetryResponse(
            success=True,
            message="Notification sent successfully",
            message_id=outcome.message_id,
        )

    error = outcome.error.message if outcome.error else "Delivery failed"
    logger.warning("Manual dead-letter retry failed", extra={"dlq_id": entry_id, "error": error})
    body = RetryResponse(success=False, error=error)
    return JSONResponse(
        status_code=500,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post("/{entry_id}/discard", response_model=DiscardResponse)
async def discard_dead_letter(
    entry_id: str,
    request: DiscardRequest | None = Body(None),
    dlq: DeadLetterQueue = Depends(_get_dlq),
) -> DiscardResponse:
    entry = await dlq.discard(_parse_id(entry_id), request.reason if request else None)
    return DiscardResponse(
        success=True,
        message="Notification discarded",
        entry=DeadLetterEntry.from_entry(entry),
    )
