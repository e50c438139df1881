"""Process wiring: builds every pipeline component from a loaded config.

One :class:`Runtime` is created per process.  The CLI's ``run`` command shares
it between the tick driver and the admin API so that both see the same
metrics collector and connection pool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from dosewatch.config import ConfigError, DosewatchConfig
from dosewatch.core.metrics import MetricsCollector
from dosewatch.core.scheduler import TickDriver
from dosewatch.core.telemetry import pipeline_span
from dosewatch.db import Database
from dosewatch.notifications.dead_letter import DeadLetterQueue
from dosewatch.notifications.dedup import Deduplicator
from dosewatch.notifications.pipeline import NotificationPipeline
from dosewatch.notifications.records import PostgresRecordStore, RecordStore
from dosewatch.notifications.retry import DeliveryExecutor, RetryPolicy
from dosewatch.notifications.triggers import TriggerEvaluator
from dosewatch.transport.base import ChatSender
from dosewatch.transport.telegram import TelegramSender

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: DosewatchConfig
    metrics: MetricsCollector
    dedup: Deduplicator
    dlq: DeadLetterQueue
    executor: DeliveryExecutor
    sender: ChatSender
    records: RecordStore
    pipeline: NotificationPipeline
    evaluator: TriggerEvaluator
    database: Database | None = None
    _closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.sender.close()
        if self.database is not None:
            await self.database.close()


def assemble(
    config: DosewatchConfig,
    *,
    pool: Any,
    sender: ChatSender,
    records: RecordStore | None = None,
    metrics: MetricsCollector | None = None,
    executor: DeliveryExecutor | None = None,
) -> Runtime:
    """Build the component graph over an already-open pool.

    Tests pass an in-memory pool and a fake sender here.
    """
    metrics = metrics or MetricsCollector(
        retention_minutes=config.metrics.retention_minutes,
        sweep_interval_minutes=config.metrics.sweep_interval_minutes,
    )
    policy = RetryPolicy.from_config(config.retry)
    executor = executor or DeliveryExecutor(metrics, policy)
    dedup = Deduplicator(pool, window=timedelta(minutes=config.dedup.window_minutes))
    dlq = DeadLetterQueue(pool, metrics, auto_retry_ceiling=config.dlq.auto_retry_ceiling)
    records = records or PostgresRecordStore(pool)
    pipeline = NotificationPipeline(
        sender=sender,
        dedup=dedup,
        dlq=dlq,
        executor=executor,
        records=records,
        policy=policy,
    )
    scheduler = config.scheduler
    evaluator = TriggerEvaluator(
        records,
        pipeline,
        default_timezone=scheduler.default_timezone,
        max_concurrency=scheduler.max_concurrency,
        soft_reminder_after=timedelta(minutes=scheduler.soft_reminder_after_minutes),
        soft_reminder_tolerance=timedelta(minutes=scheduler.soft_reminder_tolerance_minutes),
        low_stock_days=scheduler.low_stock_days,
    )
    return Runtime(
        config=config,
        metrics=metrics,
        dedup=dedup,
        dlq=dlq,
        executor=executor,
        sender=sender,
        records=records,
        pipeline=pipeline,
        evaluator=evaluator,
    )


async def build_runtime(config: DosewatchConfig) -> Runtime:
    """Open the database pool and build the production component graph.

    Raises
    ------
    ConfigError
        When no bot token is configured.
    """
    if not config.chat.bot_token:
        raise ConfigError("chat.bot_token is required (set it in [chat] or via ${VAR})")

    database = Database.from_url(
        config.database.url,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )
    await database.connect()
    sender = TelegramSender(config.chat.bot_token, api_base_url=config.chat.api_base_url)
    runtime = assemble(config, pool=database, sender=sender)
    runtime.database = database

    # Seed the backlog gauge.
    try:
        runtime.metrics.update_dlq_size(await runtime.dlq.live_count())
    except Exception:
        logger.warning("Could not read initial dead-letter backlog", exc_info=True)
    return runtime


async def run_tick(runtime: Runtime) -> None:
    """One trigger evaluation pass, as run by the tick driver."""
    with pipeline_span("tick"):
        await runtime.evaluator.evaluate()


def build_scheduler(runtime: Runtime) -> TickDriver:
    """Create the tick driver and register the maintenance cron jobs."""
    config = runtime.config
    scheduler = config.scheduler
    driver = TickDriver(
        lambda: run_tick(runtime),
        interval_seconds=scheduler.tick_interval_seconds,
        allow_overlap=scheduler.allow_overlap,
        timezone=scheduler.default_timezone,
    )

    async def sweep_metrics() -> None:
        runtime.metrics.sweep()

    evaluator = runtime.evaluator
    driver.add_job("daily_digest", scheduler.daily_digest_cron, evaluator.evaluate_daily_digest)
    driver.add_job("stock_alerts", scheduler.stock_alert_cron, evaluator.evaluate_stock_alerts)
    driver.add_job("metrics_sweep", scheduler.metrics_sweep_cron, sweep_metrics)
    driver.add_job(
        "dedup_cleanup",
        scheduler.dedup_cleanup_cron,
        lambda: runtime.dedup.cleanup(config.dedup.retention_days),
    )
    driver.add_job(
        "dlq_cleanup",
        scheduler.dlq_cleanup_cron,
        lambda: runtime.dlq.cleanup(config.dlq.retention_days),
    )
    if config.dlq.reprocess_enabled:
        driver.add_job(
            "dlq_reprocess",
            config.dlq.reprocess_cron,
            lambda: runtime.pipeline.reprocess_dead_letters(config.dlq.reprocess_batch_size),
        )
    return driver
