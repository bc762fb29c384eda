"""FastAPI application entry-point for the accounts service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from accounts_api import __version__
from accounts_api.config import PlatformEnv, load_settings
from accounts_api.dependencies import (
    dispose_engine,
    dispose_identity_clients,
    get_settings,
    init_engine,
    init_identity_clients,
)
from accounts_api.middleware.logging import RequestLoggingMiddleware
from accounts_api.middleware.prometheus import PrometheusMiddleware
from accounts_api.middleware.trace_context import TraceContextMiddleware
from accounts_api.routers import account, auth, billing, health
from accounts_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Bring up logging, storage and the identity clients; tear them down on exit.

    Tables are created from the ORM metadata only for local SQLite and the
    dev environment.  Staging and production run ``accounts init-db``.
    """
    settings = get_settings()

    if settings.structured_logging:
        from accounts_api.middleware.json_formatter import configure_json_logging

        configure_json_logging(logging.DEBUG if settings.debug else logging.INFO)

    engine = init_engine(settings)
    backend = engine.dialect.name
    logger.info("Storage backend: %s (%s)", backend, settings.platform_env.value)
    if backend == "sqlite" or settings.platform_env == PlatformEnv.DEV:
        await create_local_tables(engine)

    init_identity_clients(settings)
    logger.info("Accounts API up: identity=%s stripe=%s", settings.identity_url, settings.stripe_mode.value)

    try:
        yield
    finally:
        await dispose_identity_clients()
        await dispose_engine()
        logger.info("Accounts API stopped")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_settings()

    app = FastAPI(
        title="Accounts API",
        description="Authentication, Stripe subscription reconciliation and account deletion.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
            "traceparent",
        ],
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(account.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # Unversioned: Prometheus scrape and orchestrator probes.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn accounts_api.main:app``.
app = create_app()
