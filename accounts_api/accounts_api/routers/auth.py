"""Authentication endpoints: signup, login, logout, password recovery, profile.

Credentials never touch this service's database; every operation is
delegated to the identity provider.  Access tokens are the provider's own
and are passed back as Bearer tokens on later requests.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, EmailStr, Field

from accounts_api.dependencies import (
    BearerTokenDep,
    ClientIPDep,
    CurrentUserDep,
    IdentityDep,
    LoginLimiterDep,
    SettingsDep,
)
from accounts_api.services.auth_service import AuthError, AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for user registration."""

    email: EmailStr = Field(..., description="Email address.")
    password: str = Field(..., description="Password (12 to 72 characters).")
    confirm_password: str = Field(..., description="Must equal ``password``.")


class LoginRequest(BaseModel):
    """Request body for email/password login."""

    email: EmailStr = Field(..., description="Email address.")
    password: str = Field(..., description="Password.")


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """New password for the recovery session carried in the Bearer token."""

    password: str
    confirm_password: str


class UserResponse(BaseModel):
    id: str
    email: str | None = None
    created_at: str | None = None


class SignupResponse(BaseModel):
    user: UserResponse
    redirect_to: str = "/app"


class TokenResponse(BaseModel):
    """Response containing the provider-issued session tokens."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    user: UserResponse


class MessageResponse(BaseModel):
    message: str
    redirect_to: str | None = None


def _auth_service(identity: IdentityDep, settings: SettingsDep) -> AuthService:
    return AuthService(identity, reset_redirect_url=settings.password_reset_redirect_url)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/signup",
    response_model=SignupResponse,
    summary="Create a new account",
    status_code=201,
)
async def signup(body: SignupRequest, identity: IdentityDep, settings: SettingsDep) -> SignupResponse:
    """Register a new user with the identity provider."""
    svc = _auth_service(identity, settings)
    try:
        user = await svc.signup(
            email=body.email,
            password=body.password,
            confirm_password=body.confirm_password,
        )
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))

    return SignupResponse(user=UserResponse.model_validate(user.model_dump()))


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Log in with email and password",
)
async def login(
    body: LoginRequest,
    identity: IdentityDep,
    settings: SettingsDep,
    limiter: LoginLimiterDep,
    client_ip: ClientIPDep,
) -> TokenResponse:
    """Validate credentials with the identity provider and return its tokens.

    Enforces brute-force protection: after 5 consecutive failures for the
    same (email, IP) pair, an exponential backoff is applied (30s -> 900s).
    """
    # Check rate limit BEFORE validating credentials.
    allowed, retry_after = limiter.check_rate_limit(body.email, client_ip)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Too many login attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    svc = _auth_service(identity, settings)
    try:
        session = await svc.login(email=body.email, password=body.password)
    except AuthError as exc:
        if exc.status_code == 401:
            limiter.record_failure(body.email, client_ip)
        raise HTTPException(status_code=exc.status_code, detail=str(exc))

    limiter.record_success(body.email, client_ip)
    return TokenResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type=session.token_type,
        expires_in=session.expires_in,
        user=UserResponse.model_validate(session.user.model_dump()),
    )


@router.post("/password/forgot", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    identity: IdentityDep,
    settings: SettingsDep,
) -> MessageResponse:
    """Request a password recovery email.

    The response is identical whether or not an account exists.
    """
    svc = _auth_service(identity, settings)
    try:
        message = await svc.forgot_password(body.email)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return MessageResponse(message=message)


@router.post("/password/reset", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    token: BearerTokenDep,
    identity: IdentityDep,
    settings: SettingsDep,
) -> MessageResponse:
    """Set a new password using the recovery session from the email link."""
    svc = _auth_service(identity, settings)
    try:
        redirect_to = await svc.reset_password(
            token,
            password=body.password,
            confirm_password=body.confirm_password,
        )
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return MessageResponse(message="Password updated. Please log in.", redirect_to=redirect_to)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/logout", status_code=204)
async def logout(token: BearerTokenDep, identity: IdentityDep, settings: SettingsDep) -> None:
    """Revoke the current session at the identity provider."""
    svc = _auth_service(identity, settings)
    try:
        await svc.logout(token)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))


@router.get("/me", response_model=UserResponse)
async def me(current_user: CurrentUserDep) -> UserResponse:
    """Return the authenticated user."""
    return UserResponse.model_validate(current_user.user.model_dump())
