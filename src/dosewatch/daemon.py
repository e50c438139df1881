"""Long-running notification service: tick driver, cron jobs and admin API.

Startup sequence:
1. Initialize telemetry and the OpenTelemetry meter
2. Apply the ``core`` migration chain (``[database].migrate_on_start``)
3. Build the runtime (database pool, sender, pipeline components)
4. Start the tick driver with its maintenance jobs
5. Start the admin API on uvicorn as a background task (skipped when no
   admin token is configured)

Shutdown reverses the order: API, tick driver, then the runtime's pool and
HTTP client.
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from dosewatch.api.app import create_app
from dosewatch.config import DosewatchConfig
from dosewatch.core.metrics import init_metrics
from dosewatch.core.scheduler import TickDriver
from dosewatch.core.telemetry import init_telemetry
from dosewatch.db import Database
from dosewatch.migrations import run_migrations
from dosewatch.runtime import Runtime, build_runtime, build_scheduler

logger = logging.getLogger(__name__)

SERVICE_NAME = "dosewatch"


async def migrate(config: DosewatchConfig) -> None:
    """Create the database if needed and upgrade it to the latest revision."""
    db = Database.from_url(config.database.url)
    await db.provision()
    await run_migrations(db.sqlalchemy_url)


class DosewatchService:
    """Owns the runtime, the tick driver and the admin API server."""

    def __init__(self, config: DosewatchConfig, *, serve_api: bool = True) -> None:
        self.config = config
        self.serve_api = serve_api
        self.runtime: Runtime | None = None
        self.driver: TickDriver | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    async def start(self) -> None:
        init_telemetry(SERVICE_NAME)
        init_metrics(SERVICE_NAME)

        if self.config.database.migrate_on_start:
            await migrate(self.config)

        self.runtime = await build_runtime(self.config)
        self.driver = build_scheduler(self.runtime)
        await self.driver.start()

        if self.serve_api:
            await self._start_api_server()
        logger.info("Dosewatch service started")

    async def _start_api_server(self) -> None:
        api = self.config.api
        if not api.admin_token:
            logger.warning("api.admin_token is not set; admin API not started")
            return
        app = create_app(runtime=self.runtime)
        config = uvicorn.Config(
            app,
            host=api.host,
            port=api.port,
            log_level="info",
            timeout_graceful_shutdown=0,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("Admin API listening on %s:%d", api.host, api.port)

    async def shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
            self._server_task = None
            self._server = None

        if self.driver is not None:
            await self.driver.stop()
            self.driver = None

        if self.runtime is not None:
            await self.runtime.close()
            self.runtime = None
        logger.info("Dosewatch service stopped")
