"""Tests for runtime assembly and the scheduler wiring."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from dosewatch.config import ConfigError, parse_config
from dosewatch.runtime import build_runtime, build_scheduler, run_tick

pytestmark = pytest.mark.unit


def _job_names(driver) -> list[str]:
    return [job.name for job in driver._jobs]


class TestBuildScheduler:
    def test_default_jobs(self, runtime):
        driver = build_scheduler(runtime)
        assert _job_names(driver) == [
            "daily_digest",
            "stock_alerts",
            "metrics_sweep",
            "dedup_cleanup",
            "dlq_cleanup",
        ]

    def test_reprocessing_job_when_enabled(self, runtime):
        runtime.config = dataclasses.replace(
            runtime.config,
            dlq=dataclasses.replace(runtime.config.dlq, reprocess_enabled=True),
        )
        assert "dlq_reprocess" in _job_names(build_scheduler(runtime))

    def test_digest_scheduled_in_default_zone(self, runtime):
        driver = build_scheduler(runtime)
        driver.run_due_jobs(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
        digest = next(j for j in driver._jobs if j.name == "daily_digest")
        assert digest.next_run_at == datetime(2026, 3, 1, 23, 0, tzinfo=UTC)

    async def test_cleanup_job_runs_against_pool(self, runtime, pool):
        old = datetime.now(UTC) - timedelta(days=60)
        pool.add_dlq_row(status="resolved", resolved_at=old)
        driver = build_scheduler(runtime)
        job = next(j for j in driver._jobs if j.name == "dlq_cleanup")

        assert await job.fn() == 1
        assert pool.dlq_rows == {}


class TestRunTick:
    async def test_runs_evaluation_pass(self, runtime, monkeypatch):
        evaluate = AsyncMock()
        monkeypatch.setattr(runtime.evaluator, "evaluate", evaluate)

        await run_tick(runtime)

        evaluate.assert_awaited_once_with()

    async def test_driver_tick_runs_evaluation(self, runtime, records):
        records.add_recipient(timezone="UTC")
        driver = build_scheduler(runtime)

        assert await driver.run_tick()
        assert driver.ticks_started == 1


class TestBuildRuntime:
    async def test_bot_token_required(self):
        with pytest.raises(ConfigError, match="bot_token"):
            await build_runtime(parse_config({}))

    async def test_close_is_idempotent(self, runtime, sender):
        await runtime.close()
        await runtime.close()
        assert sender.closed
