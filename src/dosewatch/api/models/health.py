"""Health and metrics API models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from dosewatch.notifications.health import HealthCheck, HealthReport, HealthStatus


class HealthCheckModel(BaseModel):
    status: HealthStatus
    value: Any = None
    threshold: float | int
    message: str
    minutes_since: int | None = None

    @classmethod
    def from_check(cls, check: HealthCheck) -> HealthCheckModel:
        return cls(
            status=check.status,
            value=check.value,
            threshold=check.threshold,
            message=check.message,
            minutes_since=check.minutes_since,
        )


class HealthResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    checks: dict[str, HealthCheckModel]
    metrics: dict[str, Any]

    @classmethod
    def from_report(cls, report: HealthReport) -> HealthResponse:
        return cls(
            status=report.status,
            timestamp=report.timestamp,
            checks={name: HealthCheckModel.from_check(c) for name, c in report.checks.items()},
            metrics=report.metrics,
        )


class LatencyModel(BaseModel):
    count: int
    avg: float
    p50: float
    p95: float
    p99: float


class LastFailureModel(BaseModel):
    at: datetime
    category: str
    retryable: bool


class MetricsResponse(BaseModel):
    window_minutes: int
    total_attempts: int
    successful: int
    failed: int
    retried: int
    error_rate: float
    rate_limit_hits: int
    latency: LatencyModel
    dlq_size: int
    dlq_updated_at: datetime | None = None
    last_successful_send: datetime | None = None
    last_failure: LastFailureModel | None = None
    error_breakdown: dict[str, int]
