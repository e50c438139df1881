"""Bounded delivery retry with exponential backoff and jitter.

Retry policy:
- Retry only retryable categories (network/timeout, rate-limit, upstream 5xx)
- Recipient and payload failures are final and fail fast
- ``delay(n) = min(base * 2**(n-1), max)``; with jitter the delay used is drawn
  uniformly from ``[0, delay(n)]``
- Every execution records exactly one terminal metric (success or failure)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from dosewatch.config import RetryConfig
from dosewatch.core.correlation import current_id
from dosewatch.core.metrics import MetricsCollector
from dosewatch.notifications.errors import (
    DeliveryError,
    ErrorCategory,
    classify_exception,
)
from dosewatch.notifications.models import DeliveryOutcome, SendResult

logger = logging.getLogger(__name__)

SendFn = Callable[[], Awaitable[SendResult]]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    """Maximum number of attempts, including the initial attempt."""

    base_delay_seconds: float = 1.0
    """Backoff before the first retry."""

    max_delay_seconds: float = 10.0
    """Cap on any single backoff."""

    jitter: bool = True
    """Draw the actual delay uniformly from ``[0, backoff_ceiling]``."""

    send_timeout_seconds: float = 15.0
    """Budget for a single send call; expiry counts as a network error."""

    def backoff_ceiling(self, attempt_number: int) -> float:
        """Deterministic backoff after failed attempt *attempt_number* (1-indexed)."""
        exponent = max(attempt_number - 1, 0)
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def calculate_backoff(self, attempt_number: int) -> float:
        """Backoff actually slept after failed attempt *attempt_number*."""
        ceiling = self.backoff_ceiling(attempt_number)
        if self.jitter:
            return random.uniform(0.0, ceiling)
        return ceiling

    def should_retry(self, error: DeliveryError, attempt_number: int) -> bool:
        if attempt_number >= self.max_attempts:
            return False
        return error.retryable

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            jitter=config.jitter,
            send_timeout_seconds=config.send_timeout_seconds,
        )


@dataclass
class RetryResult:
    """Outcome of :meth:`DeliveryExecutor.execute`."""

    success: bool
    attempts: int
    result: SendResult | None = None
    error: DeliveryError | None = None
    correlation_id: str | None = None
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    @property
    def message_id(self) -> str | None:
        return self.result.message_id if self.result else None


class DeliveryExecutor:
    """Runs a send function under a :class:`RetryPolicy`, recording metrics.

    Parameters
    ----------
    metrics:
        Collector receiving per-attempt and terminal outcomes.
    default_policy:
        Used when :meth:`execute` is called without a policy.
    sleep:
        Awaitable sleep used for backoff; injectable so tests need not wait.
    """

    def __init__(
        self,
        metrics: MetricsCollector,
        default_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._metrics = metrics
        self._default_policy = default_policy or RetryPolicy()
        self._sleep = sleep

    async def _attempt(self, send_fn: SendFn, policy: RetryPolicy) -> SendResult:
        try:
            async with asyncio.timeout(policy.send_timeout_seconds):
                return await send_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return SendResult.failed(classify_exception(exc))

    async def execute(
        self,
        send_fn: SendFn,
        policy: RetryPolicy | None = None,
        context: dict[str, Any] | None = None,
    ) -> RetryResult:
        """Attempt delivery until success, a final error, or attempts run out.

        Cancellation during a send or a backoff sleep records a terminal
        failure metric and re-raises.  Nothing is marked sent, so the next
        tick re-evaluates the notification.
        """
        policy = policy or self._default_policy
        context = context or {}
        correlation_id = current_id()
        outcomes: list[DeliveryOutcome] = []
        last_error: DeliveryError | None = None

        attempt_number = 0
        try:
            while True:
                attempt_number += 1
                started = time.monotonic()
                result = await self._attempt(send_fn, policy)
                latency_ms = round((time.monotonic() - started) * 1000, 2)

                if result.success:
                    outcomes.append(
                        DeliveryOutcome(
                            attempt=attempt_number,
                            success=True,
                            latency_ms=latency_ms,
                            message_id=result.message_id,
                        )
                    )
                    self._metrics.record_success(latency_ms)
                    if attempt_number > 1:
                        logger.info(
                            "Delivery succeeded after retry",
                            extra={"attempts": attempt_number, **context},
                        )
                    return RetryResult(
                        success=True,
                        attempts=attempt_number,
                        result=result,
                        correlation_id=correlation_id,
                        outcomes=outcomes,
                    )

                error = result.error or DeliveryError(
                    ErrorCategory.UNKNOWN, None, "Sender reported failure without an error"
                )
                last_error = error
                outcomes.append(
                    DeliveryOutcome(
                        attempt=attempt_number,
                        success=False,
                        latency_ms=latency_ms,
                        error_category=error.category,
                    )
                )
                if error.category is ErrorCategory.RATE_LIMIT:
                    self._metrics.record_rate_limit_hit()

                logger.warning(
                    "Delivery attempt failed",
                    extra={
                        "attempt_number": attempt_number,
                        "max_attempts": policy.max_attempts,
                        "error_category": str(error.category),
                        "error_code": error.code,
                        "error_message": error.message,
                        "retryable": error.retryable,
                        **context,
                    },
                )

                if not policy.should_retry(error, attempt_number):
                    self._metrics.record_failure(error.category, error.retryable)
                    return RetryResult(
                        success=False,
                        attempts=attempt_number,
                        result=result,
                        error=error,
                        correlation_id=correlation_id,
                        outcomes=outcomes,
                    )

                self._metrics.record_retry(attempt_number)
                backoff_delay = policy.calculate_backoff(attempt_number)
                logger.info(
                    "Retrying after backoff",
                    extra={
                        "attempt_number": attempt_number,
                        "next_attempt": attempt_number + 1,
                        "backoff_delay_seconds": round(backoff_delay, 3),
                        **context,
                    },
                )
                if backoff_delay > 0:
                    await self._sleep(backoff_delay)
        except asyncio.CancelledError:
            category = last_error.category if last_error else ErrorCategory.UNKNOWN
            self._metrics.record_failure(category, last_error.retryable if last_error else False)
            logger.warning(
                "Delivery cancelled",
                extra={"attempt_number": attempt_number, **context},
            )
            raise
