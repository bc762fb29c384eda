"""Account overview and the account-deletion workflow.

Deletion is a linear sequence of stages::

    AWAIT_CONFIRMATION -> VERIFY_PASSWORD -> CHECK_ELIGIBILITY -> DELETE -> SIGNED_OUT

Each stage either advances or raises an :class:`AccountError` subclass
carrying the user-facing message; nothing is retried.  Eligibility is
always computed from rows read inside the deleting transaction, never from
state the caller rendered earlier.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from billing_engine.billing.eligibility import (
    ACTIVE_STATUS,
    DeletionBlockReason,
    DeletionDecision,
    decide_for,
)
from billing_engine.state.repository import BillingCustomerRepository, EntitlementRepository, lock_user_billing
from billing_engine.state.tables import BillingCustomerTable, EntitlementTable
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from accounts_api.middleware.login_rate_limiter import LoginRateLimiter
from accounts_api.services.auth_service import GENERIC_FAILURE_MESSAGE, sign_out_quietly
from accounts_api.services.identity_client import (
    AuthUser,
    IdentityAdminClient,
    IdentityClient,
    IdentityError,
)

logger = logging.getLogger(__name__)

ACCOUNT_DELETED_REDIRECT = "/?message=account-deleted"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AccountError(Exception):
    """Base class for account workflow rejections."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfirmationRequired(AccountError):
    status_code = 400

    def __init__(self) -> None:
        super().__init__("You must confirm account deletion.")


class InvalidCredential(AccountError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid password.")


class TooManyAttempts(AccountError):
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Too many attempts. Try again in {retry_after} seconds.")
        self.retry_after = retry_after


class DeletionBlocked(AccountError):
    """The reconciled billing state forbids deletion."""

    status_code = 409

    def __init__(self, decision: DeletionDecision) -> None:
        super().__init__(decision.message or "Account deletion is not allowed.")
        self.decision = decision

    @property
    def reason(self) -> DeletionBlockReason | None:
        return self.decision.reason


class DeletionFailed(AccountError):
    """The identity provider could not complete the deletion."""

    status_code = 503

    def __init__(self) -> None:
        super().__init__(GENERIC_FAILURE_MESSAGE)


# ---------------------------------------------------------------------------
# Deletion workflow
# ---------------------------------------------------------------------------


class DeletionStage(str, Enum):
    AWAIT_CONFIRMATION = "await_confirmation"
    VERIFY_PASSWORD = "verify_password"
    CHECK_ELIGIBILITY = "check_eligibility"
    DELETE = "delete"
    SIGNED_OUT = "signed_out"


class AccountDeletionService:
    """Runs the deletion workflow for one authenticated user.

    Parameters
    ----------
    session:
        Database session; local rows are purged in this transaction and
        committed only after the identity provider confirms the deletion.
    identity:
        Public identity client, used for password re-verification and the
        final sign-out.
    admin:
        Service-role identity client; the only path to deleting a user.
    limiter:
        Optional backoff limiter for failed password re-verifications,
        keyed by (user id, client IP).
    """

    def __init__(
        self,
        session: AsyncSession,
        identity: IdentityClient,
        admin: IdentityAdminClient,
        *,
        limiter: LoginRateLimiter | None = None,
    ) -> None:
        self._session = session
        self._identity = identity
        self._admin = admin
        self._limiter = limiter
        self._entitlements = EntitlementRepository(session)
        self._customers = BillingCustomerRepository(session)
        self.stage = DeletionStage.AWAIT_CONFIRMATION

    async def evaluate(self, user_id: str) -> DeletionDecision:
        """Return the current eligibility decision from freshly read rows."""
        entitlement = await self._entitlements.get(user_id)
        customer = await self._customers.get(user_id)
        return decide_for(entitlement, customer)

    async def delete_account(
        self,
        user: AuthUser,
        *,
        access_token: str,
        password: str,
        confirmed: bool,
        client_ip: str = "unknown",
    ) -> str:
        """Delete *user* and return the logged-out redirect target.

        Raises
        ------
        ConfirmationRequired
            Before any credential is used when *confirmed* is not true.
        TooManyAttempts
            When failed re-verifications for this user and IP are backing off.
        InvalidCredential
            When the password does not re-authenticate the user.
        DeletionBlocked
            When the billing state forbids deletion.
        DeletionFailed
            When the identity provider cannot delete the user; local rows
            are rolled back and the session is left intact.
        """
        self.stage = DeletionStage.AWAIT_CONFIRMATION
        if confirmed is not True:
            raise ConfirmationRequired()

        self.stage = DeletionStage.VERIFY_PASSWORD
        await self._verify_password(user, password, client_ip)

        self.stage = DeletionStage.CHECK_ELIGIBILITY
        # Billing writes for this user wait until the deletion commits or rolls back.
        await lock_user_billing(self._session, user.id)
        entitlement = await self._entitlements.get(user.id, for_update=True)
        customer = await self._customers.get(user.id, for_update=True)
        decision = decide_for(entitlement, customer)
        if not decision.eligible:
            logger.info("Account deletion blocked for %s: %s", user.id, decision.reason)
            raise DeletionBlocked(decision)

        self.stage = DeletionStage.DELETE
        await self._entitlements.delete(user.id)
        await self._customers.delete(user.id)
        try:
            await self._admin.delete_user(user.id)
        except IdentityError as exc:
            logger.error("Identity provider failed to delete user %s: %s", user.id, exc.message)
            await self._session.rollback()
            raise DeletionFailed() from exc
        await self._session.commit()
        logger.info("Account deleted: %s", user.id)

        self.stage = DeletionStage.SIGNED_OUT
        try:
            await sign_out_quietly(self._identity, access_token)
        except IdentityError as exc:
            # The user no longer exists; the token dies with it.
            logger.warning("Sign-out after deletion failed for %s: %s", user.id, exc.message)
        return ACCOUNT_DELETED_REDIRECT

    async def _verify_password(self, user: AuthUser, password: str, client_ip: str) -> None:
        if self._limiter is not None:
            allowed, retry_after = self._limiter.check_rate_limit(user.id, client_ip)
            if not allowed:
                raise TooManyAttempts(retry_after)

        if not user.email:
            raise InvalidCredential()

        try:
            await self._identity.sign_in_with_password(user.email, password)
        except IdentityError as exc:
            if exc.status_code >= 500:
                raise DeletionFailed() from exc
            if self._limiter is not None:
                self._limiter.record_failure(user.id, client_ip)
            raise InvalidCredential() from exc

        if self._limiter is not None:
            self._limiter.record_success(user.id, client_ip)


# ---------------------------------------------------------------------------
# Account overview
# ---------------------------------------------------------------------------

# Statuses that are quietly "not subscribed" rather than needing attention.
UI_NON_ACTIVE_STATES = frozenset({"canceled", "incomplete_expired", "paused"})

NEEDS_ATTENTION_MESSAGE = (
    "Your subscription is in an unexpected state. Please manage it via the portal or contact support."
)


class SubscriptionDisplayState(str, Enum):
    ACTIVE = "active"
    NEEDS_ATTENTION = "needs_attention"
    PENDING = "pending"
    NOT_SUBSCRIBED = "not_subscribed"


class AccountOverview(BaseModel):
    """What the account page shows for a user."""

    user_id: str
    email: str | None = None
    subscription_state: SubscriptionDisplayState
    stripe_status: str | None = None
    renews_at: datetime | None = None
    notice: str | None = None
    message: str | None = None
    deletion: DeletionDecision


def subscription_display_state(
    entitlement: EntitlementTable | None,
    customer: BillingCustomerTable | None,
) -> SubscriptionDisplayState:
    """Classify the stored billing state for display.

    Precedence: active, then an entitlement in an unexpected status, then any
    customer link (a canceled or paused subscription is shown as pending
    until a new one activates), then nothing.
    """
    status = entitlement.stripe_status if entitlement is not None else None
    if status == ACTIVE_STATUS:
        return SubscriptionDisplayState.ACTIVE
    if entitlement is not None and status not in UI_NON_ACTIVE_STATES:
        return SubscriptionDisplayState.NEEDS_ATTENTION
    if customer is not None:
        return SubscriptionDisplayState.PENDING
    return SubscriptionDisplayState.NOT_SUBSCRIBED


def checkout_message(message: str | None, *, is_active: bool) -> str | None:
    """Translate the ``message`` query value left by a checkout redirect."""
    if not message:
        return None
    if message == "checkout-success":
        if is_active:
            return "Subscription is now active."
        return "Subscription started. Your access will activate shortly."
    if message == "checkout-canceled":
        return "Checkout canceled."
    return message


async def build_account_overview(
    session: AsyncSession,
    user: AuthUser,
    *,
    message: str | None = None,
) -> AccountOverview:
    """Read the user's billing rows and assemble the overview."""
    entitlement = await EntitlementRepository(session).get(user.id)
    customer = await BillingCustomerRepository(session).get(user.id)

    state = subscription_display_state(entitlement, customer)
    is_active = state is SubscriptionDisplayState.ACTIVE
    renews_at = entitlement.current_period_end if is_active and entitlement is not None else None

    return AccountOverview(
        user_id=user.id,
        email=user.email,
        subscription_state=state,
        stripe_status=entitlement.stripe_status if entitlement is not None else None,
        renews_at=renews_at,
        notice=NEEDS_ATTENTION_MESSAGE if state is SubscriptionDisplayState.NEEDS_ATTENTION else None,
        message=checkout_message(message, is_active=is_active),
        deletion=decide_for(entitlement, customer),
    )
