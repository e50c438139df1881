"""Delivery metrics summary endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from dosewatch.api.auth import require_admin
from dosewatch.api.models.health import MetricsResponse
from dosewatch.core.metrics import MetricsCollector, summary_to_dict

router = APIRouter(prefix="/api", tags=["metrics"], dependencies=[Depends(require_admin)])


def _get_metrics() -> MetricsCollector:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("MetricsCollector not initialized")


@router.get("/metrics", response_model=MetricsResponse)
async def delivery_metrics(
    window: int = Query(5, ge=1, le=60, description="Window in minutes"),
    metrics: MetricsCollector = Depends(_get_metrics),
) -> MetricsResponse:
    return MetricsResponse.model_validate(summary_to_dict(metrics.summary(window)))
