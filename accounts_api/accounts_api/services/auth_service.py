"""Authentication service: signup, login, logout and password recovery.

Credentials, hashing and session issuance all live with the identity
provider.  This module enforces the local password policy, calls the
provider through :class:`IdentityClient`, and converts provider failures
into :class:`AuthError` instances carrying the user-facing message.
"""

from __future__ import annotations

import logging

from accounts_api.services.identity_client import AuthSession, AuthUser, IdentityClient, IdentityError

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 72

GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again."
FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent."
RESET_COMPLETE_REDIRECT = "/login?message=Password+updated.+Please+log+in."

# Provider answers that mean "the session is already gone".
_IGNORABLE_SIGN_OUT_STATUSES = frozenset({401, 403, 404})


class AuthError(Exception):
    """Raised on authentication failures, carrying a user-facing message."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def validate_new_password(password: str, confirm_password: str) -> None:
    """Apply the password policy for new and reset passwords.

    Raises
    ------
    AuthError
        If the passwords differ or the length is outside 12..72 characters.
    """
    if password != confirm_password:
        raise AuthError("Passwords do not match.")
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise AuthError(
            f"Password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters."
        )


def _unexpected(exc: IdentityError) -> AuthError:
    """Map an unanticipated provider failure onto the generic message."""
    status_code = 503 if exc.status_code >= 500 else 400
    return AuthError(GENERIC_FAILURE_MESSAGE, status_code=status_code)


class AuthService:
    """High-level authentication operations.

    Parameters
    ----------
    identity:
        The public identity-provider client.
    reset_redirect_url:
        Where the recovery email link lands; the web app exchanges the
        link for a recovery session there.
    """

    def __init__(self, identity: IdentityClient, *, reset_redirect_url: str) -> None:
        self._identity = identity
        self._reset_redirect_url = reset_redirect_url

    async def signup(self, *, email: str, password: str, confirm_password: str) -> AuthUser:
        """Register a new user after the password policy check."""
        validate_new_password(password, confirm_password)
        try:
            user = await self._identity.sign_up(email, password)
        except IdentityError as exc:
            if exc.is_already_registered:
                raise AuthError(
                    "An account with this email already exists. Please log in.",
                    status_code=409,
                ) from exc
            logger.warning("Sign-up failed for %s: %s", email, exc.message)
            raise _unexpected(exc) from exc

        logger.info("User signed up: %s", user.id)
        return user

    async def login(self, *, email: str, password: str) -> AuthSession:
        """Exchange credentials for a session."""
        try:
            return await self._identity.sign_in_with_password(email, password)
        except IdentityError as exc:
            if exc.status_code >= 500:
                raise _unexpected(exc) from exc
            raise AuthError("Invalid email or password.", status_code=401) from exc

    async def logout(self, access_token: str) -> None:
        """Revoke the session; an already-invalid session counts as success."""
        try:
            await sign_out_quietly(self._identity, access_token)
        except IdentityError as exc:
            raise _unexpected(exc) from exc

    async def forgot_password(self, email: str) -> str:
        """Send a recovery email and return the neutral confirmation message.

        The answer never reveals whether an account exists; only provider
        rate limiting is surfaced.
        """
        try:
            await self._identity.send_password_reset(email, self._reset_redirect_url)
        except IdentityError as exc:
            if exc.is_rate_limited:
                raise AuthError("Too many requests. Please try again later.", status_code=429) from exc
            if exc.status_code >= 500:
                raise _unexpected(exc) from exc
            logger.info("Password reset request not sent for %s: %s", email, exc.message)
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, access_token: str, *, password: str, confirm_password: str) -> str:
        """Set a new password for a recovery session, then sign it out.

        Returns the login redirect target.
        """
        try:
            await self._identity.get_user(access_token)
        except IdentityError as exc:
            if exc.status_code >= 500:
                raise _unexpected(exc) from exc
            raise AuthError("Reset link has expired. Request a new one.", status_code=401) from exc

        validate_new_password(password, confirm_password)

        try:
            user = await self._identity.update_password(access_token, password)
        except IdentityError as exc:
            logger.warning("Password update failed: %s", exc.message)
            raise _unexpected(exc) from exc

        logger.info("Password updated for user %s", user.id)
        try:
            await sign_out_quietly(self._identity, access_token)
        except IdentityError as exc:
            raise _unexpected(exc) from exc
        return RESET_COMPLETE_REDIRECT


async def sign_out_quietly(identity: IdentityClient, access_token: str) -> None:
    """Sign out, treating an already expired or revoked session as done.

    Any other provider failure propagates.
    """
    try:
        await identity.sign_out(access_token)
    except IdentityError as exc:
        if exc.status_code not in _IGNORABLE_SIGN_OUT_STATUSES:
            raise
        logger.debug("Sign-out skipped, session already invalid (%d)", exc.status_code)
