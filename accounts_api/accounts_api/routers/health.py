"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a Kubernetes-style
readiness probe registered at the application root (no version prefix) so
that orchestrators and load-balancers can gate traffic independently of the
API version.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from billing_engine.state.database import ping
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from accounts_api import __version__
from accounts_api.dependencies import SettingsDep, get_engine_instance

logger = logging.getLogger(__name__)

EngineDep = Annotated[AsyncEngine, Depends(get_engine_instance)]

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(engine: EngineDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health.

    The endpoint always returns HTTP 200 so that load-balancers see the
    service as alive.  The ``db`` field indicates whether the database is
    reachable.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "stripe_mode": settings.stripe_mode.value,
        "db": "ok" if await ping(engine) else "degraded",
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(engine: EngineDep) -> JSONResponse:
    """Kubernetes-style readiness probe.

    Returns HTTP 200 with ``"ready"`` when the database answers, or HTTP 503
    with ``"not_ready"`` otherwise.  Webhook deliveries cannot be recorded
    without the database, so it gates readiness.
    """
    checks = {"db": "ok"}
    overall = "ready"
    if not await ping(engine):
        logger.error("Readiness: DB check failed")
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={
            "status": overall,
            "version": __version__,
            "checks": checks,
        },
    )
