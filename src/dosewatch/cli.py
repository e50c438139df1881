"""CLI for dosewatch: run the notification service and operate the dead-letter queue."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from dosewatch.config import ConfigError, DosewatchConfig, load_config
from dosewatch.core.logging import configure_logging
from dosewatch.core.metrics import summary_to_dict
from dosewatch.notifications.dead_letter import DLQStatus
from dosewatch.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="dosewatch.toml, or a directory containing one (default: $DOSEWATCH_CONFIG or cwd)",
)
@click.option("--log-level", default=None, help="Override [logging].level")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """Dosewatch: medication reminder delivery with retries and a dead-letter queue."""
    try:
        config = load_config(config_path, required=config_path is not None)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=log_level or config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
    )
    ctx.obj = config


def _run_with_runtime(
    config: DosewatchConfig,
    fn: Callable[[Runtime], Awaitable[Any]],
) -> Any:
    async def _main() -> Any:
        runtime = await build_runtime(config)
        try:
            return await fn(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_main())
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@cli.command()
@click.option("--no-api", is_flag=True, help="Run the tick driver without the admin API")
@click.pass_obj
def run(config: DosewatchConfig, no_api: bool) -> None:
    """Start the tick driver, maintenance jobs and the admin API."""
    click.echo("Starting dosewatch")
    try:
        asyncio.run(_serve(config, serve_api=not no_api))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


async def _serve(config: DosewatchConfig, *, serve_api: bool) -> None:
    from dosewatch.daemon import DosewatchService

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    service = DosewatchService(config, serve_api=serve_api)
    try:
        await service.start()
        await shutdown_event.wait()
    finally:
        await service.shutdown()


@cli.command()
@click.pass_obj
def migrate(config: DosewatchConfig) -> None:
    """Create the database if needed and apply all migrations."""
    from dosewatch.daemon import migrate as run_migrate

    asyncio.run(run_migrate(config))
    click.echo("Database is up to date")


@cli.command()
@click.option(
    "--kind",
    type=click.Choice(["reminders", "digest", "stock"]),
    default="reminders",
    show_default=True,
    help="Which evaluation pass to run",
)
@click.pass_obj
def tick(config: DosewatchConfig, kind: str) -> None:
    """Run one trigger evaluation pass now and print its report."""

    async def _tick(runtime: Runtime) -> Any:
        evaluator = runtime.evaluator
        if kind == "digest":
            return await evaluator.evaluate_daily_digest()
        if kind == "stock":
            return await evaluator.evaluate_stock_alerts()
        return await evaluator.evaluate()

    report = _run_with_runtime(config, _tick)
    click.echo(
        f"recipients={report.recipients} candidates={report.candidates} sent={report.sent} "
        f"duplicates={report.skipped_duplicate} taken={report.skipped_taken} "
        f"dead_lettered={report.dead_lettered} errors={report.errors}"
    )
    for failure in report.failures:
        click.echo(f"  error: {failure}")


@cli.group()
def dlq() -> None:
    """Inspect and operate the dead-letter queue."""


@dlq.command("stats")
@click.pass_obj
def dlq_stats(config: DosewatchConfig) -> None:
    """Show entry counts by status and error category."""

    async def _stats(runtime: Runtime) -> dict[str, Any]:
        stats = await runtime.dlq.stats()
        return {
            "by_status": stats.by_status,
            "by_category": stats.by_category,
            "live": stats.live,
            "total": stats.total,
            "oldest_unresolved_at": stats.oldest_unresolved_at,
            "oldest_unresolved_age_seconds": stats.oldest_unresolved_age_seconds,
            "metrics": summary_to_dict(runtime.metrics.summary()),
        }

    _echo_json(_run_with_runtime(config, _stats))


@dlq.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in DLQStatus]),
    default=None,
    help="Only entries in this status",
)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.pass_obj
def dlq_list(config: DosewatchConfig, status: str | None, limit: int, offset: int) -> None:
    """List entries newest first."""

    async def _list(runtime: Runtime) -> Any:
        return await runtime.dlq.list_entries(
            limit=limit,
            offset=offset,
            status=DLQStatus(status) if status else None,
        )

    entries, total = _run_with_runtime(config, _list)
    click.echo(f"{len(entries)} of {total} entries")
    click.echo(f"{'ID':<38} {'Status':<10} {'Kind':<16} {'Category':<18} {'Retries':<8} Created")
    click.echo("-" * 110)
    for e in entries:
        click.echo(
            f"{e.id!s:<38} {e.status:<10} {e.kind:<16} {e.error_category:<18} "
            f"{e.retry_count:<8} {e.created_at:%Y-%m-%d %H:%M}"
        )


@dlq.command("reprocess")
@click.option("--limit", type=int, default=None, help="Override [dlq].reprocess_batch_size")
@click.pass_obj
def dlq_reprocess(config: DosewatchConfig, limit: int | None) -> None:
    """Replay pending entries still under the automatic retry ceiling."""
    batch = limit or config.dlq.reprocess_batch_size

    report = _run_with_runtime(
        config, lambda runtime: runtime.pipeline.reprocess_dead_letters(batch)
    )
    click.echo(
        f"attempted={report.attempted} resolved={report.resolved} failed={report.failed} "
        f"discarded={report.discarded} skipped={report.skipped}"
    )


@dlq.command("cleanup")
@click.option("--days", type=int, default=None, help="Override [dlq].retention_days")
@click.pass_obj
def dlq_cleanup(config: DosewatchConfig, days: int | None) -> None:
    """Delete resolved and discarded entries older than the retention horizon."""
    days_to_keep = days if days is not None else config.dlq.retention_days

    deleted = _run_with_runtime(config, lambda runtime: runtime.dlq.cleanup(days_to_keep))
    click.echo(f"Deleted {deleted} closed entr{'y' if deleted == 1 else 'ies'}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
