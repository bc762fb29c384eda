"""API router modules for the accounts service."""

from __future__ import annotations

from accounts_api.routers import account, auth, billing, health

__all__ = [
    "account",
    "auth",
    "billing",
    "health",
]
