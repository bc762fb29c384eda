"""HTTP clients for the managed identity provider (Supabase GoTrue auth API).

:class:`IdentityClient` performs user-scoped operations with the public
(anon) key.  :class:`IdentityAdminClient` holds the service-role key and is
the only way to delete a user; it is never handed a user's access token.
Both raise :class:`IdentityError` for any non-2xx answer or transport
failure.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from accounts_api.middleware.trace_context import get_traceparent

logger = logging.getLogger(__name__)

_AUTH_PREFIX = "/auth/v1"


class IdentityError(Exception):
    """Raised when the identity provider rejects a request or cannot be reached.

    Parameters
    ----------
    status_code:
        HTTP status returned by the provider, or 503 on transport failure.
    message:
        Provider error message (``msg`` / ``error_description`` / ``message``).
    code:
        Provider error code when one is supplied (e.g. ``user_already_exists``).
    """

    def __init__(self, status_code: int, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or "rate" in self.message.lower()

    @property
    def is_already_registered(self) -> bool:
        return self.code in ("user_already_exists", "email_exists") or "already registered" in self.message.lower()


class AuthUser(BaseModel):
    """The subset of the provider's user object the service relies on."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    email: str | None = None
    created_at: str | None = None


class AuthSession(BaseModel):
    """Tokens issued by a password grant."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    user: AuthUser


def _error_from_response(response: httpx.Response) -> IdentityError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("msg")
        or body.get("error_description")
        or body.get("message")
        or body.get("error")
        or response.reason_phrase
        or "Identity provider error"
    )
    code = body.get("error_code") or body.get("code")
    return IdentityError(response.status_code, str(message), code=str(code) if code is not None else None)


class _GoTrueHTTP:
    """Shared request plumbing for the public and admin clients."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` when empty)."""
        headers: dict[str, str] = {}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        traceparent = get_traceparent()
        if traceparent:
            headers["traceparent"] = traceparent

        try:
            response = await self._client.request(
                method,
                f"{_AUTH_PREFIX}{path}",
                json=json,
                params=params,
                headers=headers,
            )
        except httpx.RequestError as exc:
            logger.warning("Identity provider request %s %s failed: %s", method, path, exc)
            raise IdentityError(503, "Identity provider unavailable") from exc

        if response.is_error:
            error = _error_from_response(response)
            logger.info(
                "Identity provider returned %d for %s %s: %s",
                response.status_code,
                method,
                path,
                error.message,
            )
            raise error

        if not response.content:
            return None
        return response.json()


class IdentityClient(_GoTrueHTTP):
    """User-facing identity operations using the public (anon) key.

    Parameters
    ----------
    base_url:
        Root URL of the identity project (e.g. ``https://xyz.supabase.co``).
    anon_key:
        The project's public API key.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests to stub the provider.
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, anon_key, timeout=timeout, transport=transport)

    async def get_user(self, access_token: str) -> AuthUser:
        """Resolve an access token to its user; 401 if invalid or expired."""
        data = await self._request("GET", "/user", bearer=access_token)
        return AuthUser.model_validate(data)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        """Exchange email and password for a session."""
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return AuthSession.model_validate(data)

    async def sign_up(self, email: str, password: str, *, redirect_to: str | None = None) -> AuthUser:
        """Register a new user.

        Depending on project settings the provider answers with either a
        bare user (email confirmation pending) or a session wrapping it.
        """
        params = {"redirect_to": redirect_to} if redirect_to else None
        data = await self._request("POST", "/signup", json={"email": email, "password": password}, params=params)
        user = data.get("user") if isinstance(data, dict) and "user" in data else data
        return AuthUser.model_validate(user)

    async def sign_out(self, access_token: str) -> None:
        """Revoke the session behind *access_token*."""
        await self._request("POST", "/logout", bearer=access_token)

    async def send_password_reset(self, email: str, redirect_to: str) -> None:
        """Send a password recovery email with a link back to *redirect_to*."""
        await self._request("POST", "/recover", json={"email": email}, params={"redirect_to": redirect_to})

    async def update_password(self, access_token: str, password: str) -> AuthUser:
        """Set a new password for the session's user."""
        data = await self._request("PUT", "/user", bearer=access_token, json={"password": password})
        return AuthUser.model_validate(data)


class IdentityAdminClient(_GoTrueHTTP):
    """Privileged identity operations using the service-role key."""

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, service_role_key, timeout=timeout, transport=transport)

    async def delete_user(self, user_id: str) -> None:
        """Permanently delete *user_id* from the identity provider."""
        await self._request("DELETE", f"/admin/users/{user_id}", bearer=self._api_key)
        logger.info("Identity provider user deleted: %s", user_id)
