"""Admin API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins, none by default)
- Error envelope handlers and ``X-Correlation-Id`` propagation
- Bearer-token admin check on every router
- Lifespan handler that builds the runtime from config when none was given
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dosewatch.api.auth import AdminAuthenticator, _get_authenticator
from dosewatch.api.deps import (
    init_runtime,
    set_runtime,
    shutdown_runtime,
    wire_dependencies,
)
from dosewatch.api.middleware import register_error_handlers
from dosewatch.api.routers.dlq import router as dlq_router
from dosewatch.api.routers.health import router as health_router
from dosewatch.api.routers.metrics import router as metrics_router
from dosewatch.config import DosewatchConfig
from dosewatch.runtime import Runtime

logger = logging.getLogger(__name__)


def _make_lifespan(config: DosewatchConfig | None, runtime: Runtime | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire a shared runtime, or build one from *config*, and close what we built."""
        if runtime is not None:
            set_runtime(runtime)
            wire_dependencies(app, runtime)
        elif config is not None:
            built = await init_runtime(config)
            wire_dependencies(app, built)
            logger.info("Admin API runtime initialized")
        yield
        await shutdown_runtime()

    return lifespan


def create_app(
    config: DosewatchConfig | None = None,
    *,
    runtime: Runtime | None = None,
    admin_token: str | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  Used for the admin token and CORS origins, and
        to build a runtime at startup when *runtime* is not given.
    runtime:
        Component graph shared with the tick driver.
    admin_token:
        Overrides ``config.api.admin_token``.
    cors_origins:
        Overrides ``config.api.cors_origins``.

    With neither *config* nor *runtime* the router dependency stubs stay
    unwired; tests override them through ``app.dependency_overrides``.
    """
    effective = config or (runtime.config if runtime is not None else None)
    if admin_token is None and effective is not None:
        admin_token = effective.api.admin_token
    if cors_origins is None:
        cors_origins = list(effective.api.cors_origins) if effective is not None else []

    app = FastAPI(
        title="Dosewatch Admin API",
        version="0.1.0",
        lifespan=_make_lifespan(config, runtime),
    )
    app.router.redirect_slashes = False

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    authenticator = AdminAuthenticator(admin_token)
    if not authenticator.enabled:
        logger.warning("No admin token configured; every admin request will be rejected")
    app.dependency_overrides[_get_authenticator] = lambda: authenticator

    app.include_router(dlq_router)
    app.include_router(health_router)
    app.include_router(metrics_router)

    return app
