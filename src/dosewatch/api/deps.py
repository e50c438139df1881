"""Runtime singleton and dependency wiring for the admin API.

Routers declare ``_get_*`` dependency stubs that raise until the app wires
them.  :func:`wire_dependencies` overrides every stub with the matching
component of a :class:`~dosewatch.runtime.Runtime`; tests override the stubs
individually with fakes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dosewatch.config import DosewatchConfig
from dosewatch.runtime import Runtime, build_runtime

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_runtime: Runtime | None = None
_owns_runtime: bool = False


async def init_runtime(config: DosewatchConfig) -> Runtime:
    """Build and store the process-wide runtime.  Idempotent."""
    global _runtime, _owns_runtime
    if _runtime is None:
        _runtime = await build_runtime(config)
        _owns_runtime = True
    return _runtime


def set_runtime(runtime: Runtime) -> None:
    """Install a runtime built elsewhere (the ``run`` command shares its own)."""
    global _runtime, _owns_runtime
    _runtime = runtime
    _owns_runtime = False


async def shutdown_runtime() -> None:
    """Close the runtime if this module built it."""
    global _runtime, _owns_runtime
    if _runtime is not None and _owns_runtime:
        await _runtime.close()
    _runtime = None
    _owns_runtime = False


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized")
    return _runtime


def wire_dependencies(app: FastAPI, runtime: Runtime) -> None:
    """Override all router-level dependency stubs with *runtime* components."""
    from dosewatch.api.routers import dlq, health, metrics

    overrides = {
        dlq._get_dlq: lambda: runtime.dlq,
        dlq._get_pipeline: lambda: runtime.pipeline,
        health._get_dlq: lambda: runtime.dlq,
        health._get_metrics: lambda: runtime.metrics,
        health._get_health_config: lambda: runtime.config.health,
        metrics._get_metrics: lambda: runtime.metrics,
    }
    app.dependency_overrides.update(overrides)
    logger.info("Admin API dependencies wired", extra={"stubs": len(overrides)})
