"""Tests for accounts_api/routers/auth.py and the current-user dependency."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from accounts_api.services.identity_client import IdentityError

_PASSWORD = "correct-horse-battery"


class TestSignup:
    @pytest.mark.asyncio
    async def test_signup_success(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "user@example.com", "password": _PASSWORD, "confirm_password": _PASSWORD},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["user"]["id"] == "user-1"
        assert data["redirect_to"] == "/app"

    @pytest.mark.asyncio
    async def test_signup_password_mismatch(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "user@example.com", "password": _PASSWORD, "confirm_password": "different-password"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Passwords do not match."
        mock_identity.sign_up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signup_duplicate(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.sign_up.side_effect = IdentityError(422, "User already registered", code="user_already_exists")
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "user@example.com", "password": _PASSWORD, "confirm_password": _PASSWORD},
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_signup_invalid_email(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "not-an-email", "password": _PASSWORD, "confirm_password": _PASSWORD},
        )
        assert resp.status_code == 422


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_returns_tokens(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": _PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["access_token"] == "fresh-token"
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "user@example.com"

    @pytest.mark.asyncio
    async def test_login_bad_credentials(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(400, "Invalid login credentials")
        resp = await client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid email or password."

    @pytest.mark.asyncio
    async def test_login_locks_out_after_repeated_failures(
        self, client: AsyncClient, mock_identity: AsyncMock
    ) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(400, "Invalid login credentials")
        for _ in range(5):
            resp = await client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": "wrong"})
            assert resp.status_code == 401

        resp = await client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": _PASSWORD})
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert mock_identity.sign_in_with_password.await_count == 5

    @pytest.mark.asyncio
    async def test_provider_outage_does_not_count_as_failure(
        self, client: AsyncClient, mock_identity: AsyncMock
    ) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(503, "Identity provider unavailable")
        for _ in range(6):
            resp = await client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": _PASSWORD})
            assert resp.status_code == 503


class TestPasswordRecovery:
    @pytest.mark.asyncio
    async def test_forgot_password_is_neutral(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.send_password_reset.side_effect = IdentityError(404, "User not found")
        resp = await client.post("/api/v1/auth/password/forgot", json={"email": "nobody@example.com"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "If an account exists for this email, a reset link has been sent."

    @pytest.mark.asyncio
    async def test_forgot_password_rate_limited(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.send_password_reset.side_effect = IdentityError(429, "Email rate limit exceeded")
        resp = await client.post("/api/v1/auth/password/forgot", json={"email": "user@example.com"})
        assert resp.status_code == 429

    @pytest.mark.asyncio
    async def test_reset_password(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        resp = await client.post(
            "/api/v1/auth/password/reset",
            json={"password": _PASSWORD, "confirm_password": _PASSWORD},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Password updated. Please log in."
        assert data["redirect_to"] == "/login?message=Password+updated.+Please+log+in."
        mock_identity.update_password.assert_awaited_once_with("test-access-token", _PASSWORD)

    @pytest.mark.asyncio
    async def test_reset_password_requires_token(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/auth/password/reset",
            json={"password": _PASSWORD, "confirm_password": _PASSWORD},
            headers={"Authorization": ""},
        )
        assert resp.status_code == 401


class TestSession:
    @pytest.mark.asyncio
    async def test_me(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["id"] == "user-1"

    @pytest.mark.asyncio
    async def test_me_without_token(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/auth/me", headers={"Authorization": ""})
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_me_with_expired_token(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.get_user.side_effect = IdentityError(401, "invalid JWT")
        resp = await client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid or expired session"

    @pytest.mark.asyncio
    async def test_me_provider_down(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.get_user.side_effect = IdentityError(503, "Identity provider unavailable")
        resp = await client.get("/api/v1/auth/me")
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_logout(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        resp = await client.post("/api/v1/auth/logout")
        assert resp.status_code == 204
        mock_identity.sign_out.assert_awaited_once_with("test-access-token")

    @pytest.mark.asyncio
    async def test_logout_with_expired_session(self, client: AsyncClient, mock_identity: AsyncMock) -> None:
        mock_identity.sign_out.side_effect = IdentityError(401, "invalid JWT")
        resp = await client.post("/api/v1/auth/logout")
        assert resp.status_code == 204
