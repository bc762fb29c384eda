"""Access log middleware: one structured ``accounts.access`` record per request."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("accounts.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Credentials and webhook signatures never reach the log stream.
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "stripe-signature", "apikey"})


def _log_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _redacted_headers(request: Request) -> dict[str, str]:
    return {name: "***" if name.lower() in _REDACTED_HEADERS else value for name, value in request.headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit an access record once the response (or failure) is known.

    The correlation ID comes from ``X-Correlation-ID`` when the caller
    supplies one and is echoed on the response.  An unhandled exception is
    logged as a 500 and re-raised.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            entry: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "user_id": getattr(request.state, "user_id", "anonymous"),
                "trace_id": getattr(request.state, "trace_id", ""),
                "headers": _redacted_headers(request),
            }
            if request.url.query:
                entry["query"] = request.url.query
            logger.log(
                _log_level(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": entry},
            )
