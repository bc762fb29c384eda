"""Middleware components for the accounts API."""

from __future__ import annotations

from accounts_api.middleware.logging import RequestLoggingMiddleware
from accounts_api.middleware.login_rate_limiter import LoginRateLimiter
from accounts_api.middleware.prometheus import PrometheusMiddleware
from accounts_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "LoginRateLimiter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
]
