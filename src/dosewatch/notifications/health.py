"""Aggregated health of the delivery pipeline.

Checks and thresholds (all configurable through ``[health]``):

- ``error_rate``: failed / attempts over the last few minutes, warning above 5%
- ``dlq_size``: live dead-letter backlog, warning above 50, critical above 100
- ``last_successful_send``: warning after 5 idle minutes, critical after 10,
  unknown when nothing was ever delivered
- ``rate_limit_hits``: provider throttling over the last hour, warning above 10

The overall status is the worst individual status (``unknown`` does not
degrade it).  Only ``critical`` maps to HTTP 503.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dosewatch.config import HealthConfig
from dosewatch.core.metrics import MetricsCollector
from dosewatch.notifications.dead_letter import DeadLetterQueue

logger = logging.getLogger(__name__)


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class HealthCheck:
    status: HealthStatus
    value: Any
    threshold: float | int
    message: str
    minutes_since: int | None = None


@dataclass
class HealthReport:
    status: HealthStatus
    timestamp: datetime
    checks: dict[str, HealthCheck] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return 503 if self.status is HealthStatus.CRITICAL else 200


async def evaluate_health(
    metrics: MetricsCollector,
    dlq: DeadLetterQueue,
    thresholds: HealthConfig | None = None,
    *,
    now: datetime | None = None,
) -> HealthReport:
    """Evaluate every check and fold them into one report."""
    thresholds = thresholds or HealthConfig()
    now = now or datetime.now(UTC)
    recent = metrics.summary(thresholds.window_minutes)
    hourly = metrics.summary(60)

    checks: dict[str, HealthCheck] = {}

    error_rate = HealthCheck(
        HealthStatus.HEALTHY,
        recent.error_rate,
        thresholds.error_rate_warning_percent,
        "Error rate within limits",
    )
    if recent.error_rate > thresholds.error_rate_warning_percent:
        error_rate.status = HealthStatus.WARNING
        error_rate.message = f"High error rate: {recent.error_rate:.1f}%"
    checks["error_rate"] = error_rate

    try:
        live = (await dlq.stats(now=now)).live
        metrics.update_dlq_size(live)
        dlq_check = HealthCheck(
            HealthStatus.HEALTHY, live, thresholds.dlq_critical, "Dead-letter backlog nominal"
        )
        if live > thresholds.dlq_critical:
            dlq_check.status = HealthStatus.CRITICAL
            dlq_check.message = f"{live} notifications waiting in the dead-letter queue"
        elif live > thresholds.dlq_warning:
            dlq_check.status = HealthStatus.WARNING
            dlq_check.message = f"{live} notifications in the dead-letter queue"
    except Exception:
        logger.warning("Could not read dead-letter stats for health check", exc_info=True)
        dlq_check = HealthCheck(
            HealthStatus.UNKNOWN,
            metrics.dlq_size,
            thresholds.dlq_critical,
            "Dead-letter queue unavailable",
        )
    checks["dlq_size"] = dlq_check

    last_success = recent.last_successful_send
    send_check = HealthCheck(
        HealthStatus.HEALTHY,
        last_success.isoformat() if last_success else None,
        thresholds.no_success_critical_minutes,
        "Recent deliveries detected",
    )
    if last_success is None:
        send_check.status = HealthStatus.UNKNOWN
        send_check.message = "No delivery recorded yet"
    else:
        minutes = (now - last_success).total_seconds() / 60
        send_check.minutes_since = round(minutes)
        if minutes > thresholds.no_success_critical_minutes:
            send_check.status = HealthStatus.CRITICAL
            send_check.message = f"No successful delivery for {round(minutes)} minutes"
        elif minutes > thresholds.no_success_warning_minutes:
            send_check.status = HealthStatus.WARNING
            send_check.message = f"Last successful delivery {round(minutes)} minutes ago"
    checks["last_successful_send"] = send_check

    rate_limits = HealthCheck(
        HealthStatus.HEALTHY,
        hourly.rate_limit_hits,
        thresholds.rate_limit_warning_per_hour,
        "Rate limiting within expectations",
    )
    if hourly.rate_limit_hits > thresholds.rate_limit_warning_per_hour:
        rate_limits.status = HealthStatus.WARNING
        rate_limits.message = f"{hourly.rate_limit_hits} rate-limit responses in the last hour"
    checks["rate_limit_hits"] = rate_limits

    statuses = {c.status for c in checks.values()}
    overall = HealthStatus.HEALTHY
    if HealthStatus.CRITICAL in statuses:
        overall = HealthStatus.CRITICAL
    elif HealthStatus.WARNING in statuses:
        overall = HealthStatus.WARNING

    if overall is not HealthStatus.HEALTHY:
        logger.warning(
            "Notification pipeline degraded",
            extra={
                "health_status": str(overall),
                "failing_checks": [k for k, c in checks.items() if c.status is overall],
            },
        )

    return HealthReport(
        status=overall,
        timestamp=now,
        checks=checks,
        metrics={
            "total_attempts": recent.total_attempts,
            "successful": recent.successful,
            "failed": recent.failed,
            "error_rate": recent.error_rate,
            "avg_delivery_time_ms": recent.latency.avg,
        },
    )
