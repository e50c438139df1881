"""Delivery metrics: a process-local rolling window plus OpenTelemetry mirrors.

:class:`MetricsCollector` keeps minute-granularity buckets of delivery counters
and latency samples.  It is the operational signal behind ``/api/health`` and
``/api/metrics``; it does not survive restarts and is not a source of truth.

One collector is constructed at process start and injected into every
component that records delivery outcomes (executor, dead-letter queue, health
evaluation).  Recording is best-effort: no public method ever raises.

Each recording is also mirrored to OpenTelemetry instruments.  Instruments are
created lazily from the global MeterProvider.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, ``init_metrics`` leaves the no-op
provider in place and all OTel recordings are silent.

Instruments
-----------
  dosewatch.delivery.success_total     Counter
  dosewatch.delivery.failure_total     Counter   (labels: category, retryable)
  dosewatch.delivery.retry_total       Counter   (label: attempt)
  dosewatch.delivery.rate_limit_total  Counter
  dosewatch.delivery.latency_ms        Histogram
  dosewatch.dlq.size                   UpDownCounter (gauge semantics)
"""

from __future__ import annotations

import logging
import math
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "dosewatch"

DEFAULT_RETENTION_MINUTES = 60
DEFAULT_SWEEP_INTERVAL_MINUTES = 10

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# OTel instruments
# ---------------------------------------------------------------------------


class DeliveryInstruments:
    """Lazily created OTel instruments for delivery outcomes.

    Instruments are resolved on first use so that tests which install an
    in-memory MeterProvider after import still capture recordings.
    """

    def __init__(self) -> None:
        self.__success: metrics.Counter | None = None
        self.__failure: metrics.Counter | None = None
        self.__retry: metrics.Counter | None = None
        self.__rate_limit: metrics.Counter | None = None
        self.__latency: metrics.Histogram | None = None
        self.__dlq_size: metrics.UpDownCounter | None = None
        self._last_dlq_size = 0

    @property
    def success(self) -> metrics.Counter:
        if self.__success is None:
            self.__success = get_meter().create_counter(
                name="dosewatch.delivery.success_total",
                description="Notifications delivered successfully",
                unit="notifications",
            )
        return self.__success

    @property
    def failure(self) -> metrics.Counter:
        if self.__failure is None:
            self.__failure = get_meter().create_counter(
                name="dosewatch.delivery.failure_total",
                description="Notifications that terminally failed delivery",
                unit="notifications",
            )
        return self.__failure

    @property
    def retry(self) -> metrics.Counter:
        if self.__retry is None:
            self.__retry = get_meter().create_counter(
                name="dosewatch.delivery.retry_total",
                description="Delivery retries scheduled after a retryable failure",
                unit="retries",
            )
        return self.__retry

    @property
    def rate_limit(self) -> metrics.Counter:
        if self.__rate_limit is None:
            self.__rate_limit = get_meter().create_counter(
                name="dosewatch.delivery.rate_limit_total",
                description="Provider throttling responses",
                unit="responses",
            )
        return self.__rate_limit

    @property
    def latency(self) -> metrics.Histogram:
        if self.__latency is None:
            self.__latency = get_meter().create_histogram(
                name="dosewatch.delivery.latency_ms",
                description="Latency of successful delivery attempts",
                unit="ms",
            )
        return self.__latency

    @property
    def dlq_size(self) -> metrics.UpDownCounter:
        if self.__dlq_size is None:
            self.__dlq_size = get_meter().create_up_down_counter(
                name="dosewatch.dlq.size",
                description="Live (pending + retrying) dead-letter entries",
                unit="entries",
            )
        return self.__dlq_size

    def set_dlq_size(self, size: int) -> None:
        """Move the DLQ gauge to *size* by adding the delta since the last call."""
        delta = size - self._last_dlq_size
        if delta:
            self.dlq_size.add(delta)
        self._last_dlq_size = size


# ---------------------------------------------------------------------------
# Rolling window
# ---------------------------------------------------------------------------


@dataclass
class _MinuteBucket:
    success: int = 0
    failure: int = 0
    retry: int = 0
    rate_limit: int = 0
    latencies: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class LatencySummary:
    count: int = 0
    avg: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True)
class FailureInfo:
    at: datetime
    category: str
    retryable: bool


@dataclass(frozen=True)
class MetricsSummary:
    """Aggregated view over the last ``window_minutes`` minute buckets."""

    window_minutes: int
    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    error_rate: float = 0.0
    rate_limit_hits: int = 0
    latency: LatencySummary = field(default_factory=LatencySummary)
    dlq_size: int = 0
    dlq_updated_at: datetime | None = None
    last_successful_send: datetime | None = None
    last_failure: FailureInfo | None = None
    error_breakdown: dict[str, int] = field(default_factory=dict)


def percentile(sorted_samples: list[float], p: float) -> float:
    """Return the *p*-th percentile of an ascending list (nearest-rank)."""
    if not sorted_samples:
        return 0.0
    index = max(math.ceil(p / 100 * len(sorted_samples)) - 1, 0)
    return sorted_samples[index]


def _minute(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MetricsCollector:
    """Thread-safe, never-raising delivery metrics window.

    Parameters
    ----------
    retention_minutes:
        Buckets older than this are evicted by :meth:`sweep`.
    sweep_interval_minutes:
        Recording triggers an opportunistic sweep at most this often.
    clock:
        Returns the current aware UTC time; injectable for tests.
    """

    def __init__(
        self,
        retention_minutes: int = DEFAULT_RETENTION_MINUTES,
        sweep_interval_minutes: int = DEFAULT_SWEEP_INTERVAL_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._retention = timedelta(minutes=retention_minutes)
        self._sweep_interval = timedelta(minutes=sweep_interval_minutes)
        self._clock = clock
        self._lock = threading.Lock()
        self._instruments = DeliveryInstruments()
        self._reset_state()

    def _reset_state(self) -> None:
        self._buckets: dict[datetime, _MinuteBucket] = {}
        self._error_breakdown: dict[str, int] = {}
        self._last_success: datetime | None = None
        self._last_failure: FailureInfo | None = None
        self._dlq_size = 0
        self._dlq_updated_at: datetime | None = None
        self._last_sweep = self._clock()

    def _bucket(self, now: datetime) -> _MinuteBucket:
        key = _minute(now)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _MinuteBucket()
        return bucket

    def _maybe_sweep(self, now: datetime) -> None:
        if now - self._last_sweep >= self._sweep_interval:
            self._evict(now)

    def _evict(self, now: datetime) -> int:
        cutoff = _minute(now) - self._retention
        stale = [key for key in self._buckets if key < cutoff]
        for key in stale:
            del self._buckets[key]
        self._last_sweep = now
        return len(stale)

    # -- recording ----------------------------------------------------------

    def record_success(self, latency_ms: float | None = None) -> None:
        """Record one successful delivery, optionally with its latency."""
        try:
            now = self._clock()
            with self._lock:
                bucket = self._bucket(now)
                bucket.success += 1
                if latency_ms is not None:
                    bucket.latencies.append(float(latency_ms))
                self._last_success = now
                self._maybe_sweep(now)
            self._instruments.success.add(1)
            if latency_ms is not None:
                self._instruments.latency.record(latency_ms)
        except Exception:
            logger.exception("Failed to record delivery success")

    def record_failure(self, category: str, retryable: bool) -> None:
        """Record one terminal delivery failure."""
        try:
            now = self._clock()
            category = str(category)
            suffix = "retryable" if retryable else "final"
            with self._lock:
                self._bucket(now).failure += 1
                key = f"{category}_{suffix}"
                self._error_breakdown[key] = self._error_breakdown.get(key, 0) + 1
                self._last_failure = FailureInfo(at=now, category=category, retryable=retryable)
                self._maybe_sweep(now)
            self._instruments.failure.add(
                1, {"category": category, "retryable": str(retryable).lower()}
            )
        except Exception:
            logger.exception("Failed to record delivery failure")

    def record_retry(self, attempt_number: int) -> None:
        """Record that attempt *attempt_number* failed and a retry was scheduled."""
        try:
            now = self._clock()
            with self._lock:
                self._bucket(now).retry += 1
                key = f"attempt_{attempt_number}"
                self._error_breakdown[key] = self._error_breakdown.get(key, 0) + 1
                self._maybe_sweep(now)
            self._instruments.retry.add(1, {"attempt": str(attempt_number)})
        except Exception:
            logger.exception("Failed to record delivery retry")

    def record_rate_limit_hit(self) -> None:
        try:
            now = self._clock()
            with self._lock:
                self._bucket(now).rate_limit += 1
                self._maybe_sweep(now)
            self._instruments.rate_limit.add(1)
        except Exception:
            logger.exception("Failed to record rate-limit hit")

    def update_dlq_size(self, size: int) -> None:
        """Set the live dead-letter backlog gauge (pending + retrying)."""
        try:
            with self._lock:
                self._dlq_size = int(size)
                self._dlq_updated_at = self._clock()
            self._instruments.set_dlq_size(int(size))
        except Exception:
            logger.exception("Failed to update DLQ size gauge")

    @property
    def dlq_size(self) -> int:
        return self._dlq_size

    # -- reading ------------------------------------------------------------

    def summary(self, window_minutes: int = 5) -> MetricsSummary:
        """Aggregate the buckets of the last *window_minutes* minutes.

        The current (partial) minute counts as the first minute of the window.
        """
        try:
            now = self._clock()
            window_start = _minute(now) - timedelta(minutes=max(window_minutes, 1) - 1)
            with self._lock:
                buckets = [b for key, b in self._buckets.items() if key >= window_start]
                successful = sum(b.success for b in buckets)
                failed = sum(b.failure for b in buckets)
                retried = sum(b.retry for b in buckets)
                rate_limit_hits = sum(b.rate_limit for b in buckets)
                samples = sorted(s for b in buckets for s in b.latencies)
                breakdown = dict(self._error_breakdown)
                last_success = self._last_success
                last_failure = self._last_failure
                dlq_size = self._dlq_size
                dlq_updated_at = self._dlq_updated_at

            total = successful + failed
            error_rate = round(failed / total * 100, 2) if total else 0.0
            latency = LatencySummary()
            if samples:
                latency = LatencySummary(
                    count=len(samples),
                    avg=round(sum(samples) / len(samples), 2),
                    p50=percentile(samples, 50),
                    p95=percentile(samples, 95),
                    p99=percentile(samples, 99),
                )
            return MetricsSummary(
                window_minutes=window_minutes,
                total_attempts=total,
                successful=successful,
                failed=failed,
                retried=retried,
                error_rate=error_rate,
                rate_limit_hits=rate_limit_hits,
                latency=latency,
                dlq_size=dlq_size,
                dlq_updated_at=dlq_updated_at,
                last_successful_send=last_success,
                last_failure=last_failure,
                error_breakdown=breakdown,
            )
        except Exception:
            logger.exception("Failed to compute metrics summary")
            return MetricsSummary(window_minutes=window_minutes)

    # -- maintenance --------------------------------------------------------

    def sweep(self) -> int:
        """Evict buckets older than the retention horizon; return how many."""
        try:
            now = self._clock()
            with self._lock:
                evicted = self._evict(now)
            if evicted:
                logger.debug("Evicted %d stale metric buckets", evicted)
            return evicted
        except Exception:
            logger.exception("Metrics sweep failed")
            return 0

    def reset(self) -> None:
        """Drop all recorded state (tests and manual operator reset)."""
        try:
            with self._lock:
                self._reset_state()
            logger.info("Delivery metrics reset")
        except Exception:
            logger.exception("Failed to reset metrics")


def summary_to_dict(summary: MetricsSummary) -> dict[str, Any]:
    """Render a :class:`MetricsSummary` as JSON-friendly primitives."""
    last_failure = None
    if summary.last_failure is not None:
        last_failure = {
            "at": summary.last_failure.at.isoformat(),
            "category": summary.last_failure.category,
            "retryable": summary.last_failure.retryable,
        }
    return {
        "window_minutes": summary.window_minutes,
        "total_attempts": summary.total_attempts,
        "successful": summary.successful,
        "failed": summary.failed,
        "retried": summary.retried,
        "error_rate": summary.error_rate,
        "rate_limit_hits": summary.rate_limit_hits,
        "latency": {
            "count": summary.latency.count,
            "avg": summary.latency.avg,
            "p50": summary.latency.p50,
            "p95": summary.latency.p95,
            "p99": summary.latency.p99,
        },
        "dlq_size": summary.dlq_size,
        "dlq_updated_at": summary.dlq_updated_at.isoformat() if summary.dlq_updated_at else None,
        "last_successful_send": (
            summary.last_successful_send.isoformat() if summary.last_successful_send else None
        ),
        "last_failure": last_failure,
        "error_breakdown": summary.error_breakdown,
    }
