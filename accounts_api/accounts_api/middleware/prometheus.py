"""Prometheus instruments for the accounts service.

:class:`PrometheusMiddleware` feeds the HTTP series.  The webhook and
account routers increment the domain counters directly.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "accounts_http_requests_total",
    "HTTP requests served, by method, route template and status",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "accounts_http_request_duration_seconds",
    "Wall-clock time spent handling an HTTP request",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "accounts_webhook_events_total",
    "Stripe webhook deliveries, by event type and reconcile outcome",
    ["event_type", "outcome"],
)

ACCOUNT_DELETIONS_TOTAL = Counter(
    "accounts_account_deletions_total",
    "Account deletion requests, by outcome",
    ["outcome"],
)

# Numeric IDs, UUIDs, Stripe object IDs (cus_..., sub_...) and long hex tokens.
_ID_SEGMENT = re.compile(
    r"\d+"
    r"|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
    r"|[a-z]{2,6}_[0-9A-Za-z]{8,}"
    r"|[0-9a-f]{12,64}"
)

_UNMETERED = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def _normalise_path(path: str) -> str:
    """Replace identifier segments with ``{id}`` so label values stay bounded."""
    return "/".join("{id}" if _ID_SEGMENT.fullmatch(segment) else segment for segment in path.split("/"))


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time every request outside :data:`_UNMETERED`."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNMETERED:
            return await call_next(request)

        route = _normalise_path(request.url.path)
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUESTS_TOTAL.labels(method=request.method, path=route, status_code=str(status_code)).inc()
            HTTP_REQUEST_DURATION.labels(method=request.method, path=route).observe(time.monotonic() - started)
