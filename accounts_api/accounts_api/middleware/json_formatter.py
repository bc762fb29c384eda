"""Single-line JSON log formatter.

Activate with ``ACCOUNTS_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "accounts.access",
        "message": "GET /api/v1/account -> 200",
        "trace_id": "...",            // when TraceLoggingFilter is attached
        "request": { ... },           // RequestLoggingMiddleware records
        "stripe_event": { ... },      // webhook records
        "exc_info": "Traceback ..."   // exceptions only
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured ``extra=`` keys copied verbatim into the payload.
_EXTRA_KEYS: tuple[str, ...] = ("request", "stripe_event", "user_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in ("trace_id", "span_id"):
            value = getattr(record, key, None)
            if value:
                payload[key] = value

        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Route all logging through one JSON ``StreamHandler`` with trace context."""
    from accounts_api.middleware.trace_context import TraceLoggingFilter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
