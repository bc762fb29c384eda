"""FastAPI dependency injection for settings, database sessions, external clients and the current user."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from billing_engine.state.database import get_engine
from billing_engine.state.database import get_session_factory as _bind_sessions
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from accounts_api.config import AccountsSettings, load_settings
from accounts_api.middleware.login_rate_limiter import LoginRateLimiter
from accounts_api.services.identity_client import (
    AuthUser,
    IdentityAdminClient,
    IdentityClient,
    IdentityError,
)
from accounts_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: AccountsSettings | None = None


def get_settings() -> AccountsSettings:
    """Return the cached :class:`AccountsSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[AccountsSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: AccountsSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _bind_sessions(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine_instance() -> AsyncEngine:
    """Return the global engine, e.g. for health probes."""
    if _engine is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Identity provider clients
# ---------------------------------------------------------------------------

_identity_client: IdentityClient | None = None
_identity_admin_client: IdentityAdminClient | None = None


def init_identity_clients(settings: AccountsSettings) -> tuple[IdentityClient, IdentityAdminClient]:
    """Create and cache the public and service-role identity clients."""
    global _identity_client, _identity_admin_client  # noqa: PLW0603
    _identity_client = IdentityClient(
        settings.identity_url,
        settings.identity_anon_key.get_secret_value(),
        timeout=settings.identity_timeout,
    )
    _identity_admin_client = IdentityAdminClient(
        settings.identity_url,
        settings.identity_service_role_key.get_secret_value(),
        timeout=settings.identity_timeout,
    )
    return _identity_client, _identity_admin_client


async def dispose_identity_clients() -> None:
    """Close both identity clients' HTTP pools."""
    global _identity_client, _identity_admin_client  # noqa: PLW0603
    if _identity_client is not None:
        await _identity_client.close()
        _identity_client = None
    if _identity_admin_client is not None:
        await _identity_admin_client.close()
        _identity_admin_client = None


def get_identity_client() -> IdentityClient:
    """Return the cached :class:`IdentityClient` singleton."""
    if _identity_client is None:
        raise RuntimeError(
            "Identity client has not been initialised. "
            "Ensure init_identity_clients() is called during application startup."
        )
    return _identity_client


def get_identity_admin_client() -> IdentityAdminClient:
    """Return the cached :class:`IdentityAdminClient` singleton."""
    if _identity_admin_client is None:
        raise RuntimeError(
            "Identity admin client has not been initialised. "
            "Ensure init_identity_clients() is called during application startup."
        )
    return _identity_admin_client


IdentityDep = Annotated[IdentityClient, Depends(get_identity_client)]
IdentityAdminDep = Annotated[IdentityAdminClient, Depends(get_identity_admin_client)]

# ---------------------------------------------------------------------------
# Stripe gateway
# ---------------------------------------------------------------------------


def get_stripe_gateway(settings: SettingsDep) -> StripeGateway:
    """Return a :class:`StripeGateway` bound to the current settings."""
    return StripeGateway(settings)


StripeGatewayDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]

# ---------------------------------------------------------------------------
# Failed-credential limiter (in-memory, single-replica)
# ---------------------------------------------------------------------------

_login_limiter = LoginRateLimiter()


def get_login_limiter() -> LoginRateLimiter:
    """Return the process-wide :class:`LoginRateLimiter`."""
    return _login_limiter


LoginLimiterDep = Annotated[LoginRateLimiter, Depends(get_login_limiter)]


def get_client_ip(request: Request) -> str:
    """Extract the client IP, respecting X-Forwarded-For for reverse-proxied deployments."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For is a comma-separated list; the leftmost is the original client.
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


ClientIPDep = Annotated[str, Depends(get_client_ip)]

# ---------------------------------------------------------------------------
# Current user (resolved from the identity provider's access token)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CurrentUser:
    """An authenticated user together with the token that proved it."""

    user: AuthUser
    access_token: str

    @property
    def id(self) -> str:
        return self.user.id

    @property
    def email(self) -> str | None:
        return self.user.email


def get_bearer_token(request: Request) -> str:
    """Extract the Bearer token from the ``Authorization`` header."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


BearerTokenDep = Annotated[str, Depends(get_bearer_token)]


async def get_current_user(
    request: Request,
    token: BearerTokenDep,
    identity: IdentityDep,
) -> CurrentUser:
    """Resolve the bearer token to a user via the identity provider."""
    try:
        user = await identity.get_user(token)
    except IdentityError as exc:
        if exc.status_code >= 500:
            raise HTTPException(status_code=503, detail="Identity provider unavailable") from exc
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.user_id = user.id
    return CurrentUser(user=user, access_token=token)


CurrentUserDep = Annotated[CurrentUser, Depends(get_current_user)]
