"""Pipeline health endpoint.

Returns 200 for healthy, warning and unknown states and 503 only when a
check is critical.  The body always carries per-check detail.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from dosewatch.api.auth import require_admin
from dosewatch.api.models.health import HealthResponse
from dosewatch.config import HealthConfig
from dosewatch.core.metrics import MetricsCollector
from dosewatch.notifications.dead_letter import DeadLetterQueue
from dosewatch.notifications.health import evaluate_health

router = APIRouter(prefix="/api", tags=["health"], dependencies=[Depends(require_admin)])

_NO_CACHE = "no-cache, no-store, must-revalidate"


def _get_metrics() -> MetricsCollector:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("MetricsCollector not initialized")


def _get_dlq() -> DeadLetterQueue:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("DeadLetterQueue not initialized")


def _get_health_config() -> HealthConfig:
    return HealthConfig()


@router.get("/health", response_model=HealthResponse)
async def health(
    metrics: MetricsCollector = Depends(_get_metrics),
    dlq: DeadLetterQueue = Depends(_get_dlq),
    thresholds: HealthConfig = Depends(_get_health_config),
) -> JSONResponse:
    report = await evaluate_health(metrics, dlq, thresholds)
    body = HealthResponse.from_report(report)
    return JSONResponse(
        status_code=report.http_status,
        content=body.model_dump(mode="json"),
        headers={
            "X-Health-Status": str(report.status),
            "Cache-Control": _NO_CACHE,
        },
    )
