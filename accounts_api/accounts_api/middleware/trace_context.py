"""W3C ``traceparent`` propagation.

Each request continues the caller's trace when it sends a valid header and
starts a new one otherwise; this service always mints its own span.  The
active span is kept in a context variable so log records and outbound
identity-provider calls can pick it up.

::

    traceparent: 00-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01
                 ^^ version  ^^ trace id (32 hex)   ^^ span id (16)  ^^ flags
"""

from __future__ import annotations

import contextvars
import logging
import re
import secrets
from typing import NamedTuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(r"([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})")
_INVALID = ("", "", "")


class _Span(NamedTuple):
    trace_id: str
    span_id: str
    flags: str


_current_span: contextvars.ContextVar[_Span | None] = contextvars.ContextVar("current_span", default=None)


def parse_traceparent(header: str) -> tuple[str, str, str]:
    """Split a ``traceparent`` value into ``(trace_id, parent_span_id, flags)``.

    Unparseable values, the reserved ``ff`` version and all-zero IDs all
    yield three empty strings.
    """
    match = _HEADER_RE.fullmatch(header.strip().lower()) if header else None
    if match is None:
        if header:
            logger.debug("Ignoring malformed traceparent %r", header)
        return _INVALID

    version, trace_id, parent_span_id, flags = match.groups()
    if version == "ff" or not trace_id.strip("0") or not parent_span_id.strip("0"):
        return _INVALID
    return trace_id, parent_span_id, flags


def get_traceparent() -> str:
    """Header value naming the current span as parent, or ``""`` outside a request."""
    span = _current_span.get()
    if span is None:
        return ""
    return f"00-{span.trace_id}-{span.span_id}-{span.flags}"


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Bind a span to the request and report its trace ID as ``X-Trace-ID``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id, parent_span_id, flags = parse_traceparent(request.headers.get("traceparent", ""))
        if not trace_id:
            trace_id, flags = secrets.token_hex(16), "00"
        span = _Span(trace_id, secrets.token_hex(8), flags)
        token = _current_span.set(span)

        request.state.trace_id = span.trace_id
        request.state.span_id = span.span_id
        request.state.parent_span_id = parent_span_id
        try:
            response = await call_next(request)
        finally:
            _current_span.reset(token)
        response.headers["X-Trace-ID"] = span.trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Stamp ``trace_id`` and ``span_id`` (empty outside a request) on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        span = _current_span.get()
        record.trace_id = span.trace_id if span else ""  # type: ignore[attr-defined]
        record.span_id = span.span_id if span else ""  # type: ignore[attr-defined]
        return True
