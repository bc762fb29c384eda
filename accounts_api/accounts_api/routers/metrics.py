"""``GET /metrics``: Prometheus scrape target, mounted without the ``/api/v1`` prefix."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def scrape() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
