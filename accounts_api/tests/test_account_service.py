"""Tests for accounts_api/services/account_service.py

The deletion workflow runs against a real in-memory SQLite database so that
row purging, commit and rollback are observable; the identity provider is
mocked.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from billing_engine.billing.eligibility import DeletionBlockReason
from billing_engine.state.repository import BillingCustomerRepository, EntitlementRepository

from accounts_api.middleware.login_rate_limiter import LoginRateLimiter
from accounts_api.services.account_service import (
    ACCOUNT_DELETED_REDIRECT,
    NEEDS_ATTENTION_MESSAGE,
    AccountDeletionService,
    ConfirmationRequired,
    DeletionBlocked,
    DeletionFailed,
    DeletionStage,
    InvalidCredential,
    SubscriptionDisplayState,
    TooManyAttempts,
    build_account_overview,
    checkout_message,
)
from accounts_api.services.identity_client import AuthUser, IdentityError

_PASSWORD = "correct-horse-battery"


@pytest.fixture()
def service(db_session, mock_identity, mock_admin) -> AccountDeletionService:
    return AccountDeletionService(db_session, mock_identity, mock_admin)


async def _rows(db_session, user_id: str):
    entitlement = await EntitlementRepository(db_session).get(user_id)
    customer = await BillingCustomerRepository(db_session).get(user_id)
    return entitlement, customer


# ---------------------------------------------------------------------------
# Confirmation and password re-verification
# ---------------------------------------------------------------------------


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_unconfirmed_request_uses_no_credentials(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock, mock_admin: AsyncMock
    ) -> None:
        with pytest.raises(ConfirmationRequired) as exc_info:
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=False)

        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "You must confirm account deletion."
        assert service.stage is DeletionStage.AWAIT_CONFIRMATION
        mock_identity.sign_in_with_password.assert_not_awaited()
        mock_admin.delete_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_truthy_non_bool_is_not_confirmation(self, service: AccountDeletionService, test_user) -> None:
        with pytest.raises(ConfirmationRequired):
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed="on")  # type: ignore[arg-type]


class TestPasswordVerification:
    @pytest.mark.asyncio
    async def test_wrong_password(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock, mock_admin: AsyncMock
    ) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(400, "Invalid login credentials")

        with pytest.raises(InvalidCredential) as exc_info:
            await service.delete_account(test_user, access_token="tok", password="wrong", confirmed=True)

        assert exc_info.value.status_code == 401
        assert service.stage is DeletionStage.VERIFY_PASSWORD
        mock_admin.delete_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_verifies_against_users_email(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock
    ) -> None:
        await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)
        mock_identity.sign_in_with_password.assert_awaited_once_with("user@example.com", _PASSWORD)

    @pytest.mark.asyncio
    async def test_user_without_email_cannot_verify(self, service: AccountDeletionService) -> None:
        user = AuthUser(id="phone-user", email=None)
        with pytest.raises(InvalidCredential):
            await service.delete_account(user, access_token="tok", password=_PASSWORD, confirmed=True)

    @pytest.mark.asyncio
    async def test_provider_outage_is_not_a_bad_password(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock
    ) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(503, "Identity provider unavailable")
        with pytest.raises(DeletionFailed):
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

    @pytest.mark.asyncio
    async def test_repeated_failures_back_off(
        self, db_session, test_user, mock_identity: AsyncMock, mock_admin: AsyncMock
    ) -> None:
        limiter = LoginRateLimiter()
        service = AccountDeletionService(db_session, mock_identity, mock_admin, limiter=limiter)
        mock_identity.sign_in_with_password.side_effect = IdentityError(400, "Invalid login credentials")

        for _ in range(5):
            with pytest.raises(InvalidCredential):
                await service.delete_account(
                    test_user, access_token="tok", password="wrong", confirmed=True, client_ip="10.0.0.1"
                )

        with pytest.raises(TooManyAttempts) as exc_info:
            await service.delete_account(
                test_user, access_token="tok", password=_PASSWORD, confirmed=True, client_ip="10.0.0.1"
            )
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after > 0
        assert mock_identity.sign_in_with_password.await_count == 5

        # A different address is tracked separately.
        mock_identity.sign_in_with_password.side_effect = None
        redirect = await service.delete_account(
            test_user, access_token="tok", password=_PASSWORD, confirmed=True, client_ip="10.0.0.2"
        )
        assert redirect == ACCOUNT_DELETED_REDIRECT


# ---------------------------------------------------------------------------
# Eligibility gate
# ---------------------------------------------------------------------------


class TestBlockedDeletion:
    @pytest.mark.asyncio
    async def test_active_subscription_blocks(
        self, service: AccountDeletionService, seed, test_user, db_session, mock_admin: AsyncMock
    ) -> None:
        await seed(customer_id="cus_1", status="active")

        with pytest.raises(DeletionBlocked) as exc_info:
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        assert exc_info.value.status_code == 409
        assert exc_info.value.reason is DeletionBlockReason.ACTIVE
        assert service.stage is DeletionStage.CHECK_ELIGIBILITY
        mock_admin.delete_user.assert_not_awaited()
        entitlement, customer = await _rows(db_session, test_user.id)
        assert entitlement is not None
        assert customer is not None

    @pytest.mark.asyncio
    async def test_customer_link_without_entitlement_blocks(
        self, service: AccountDeletionService, seed, test_user
    ) -> None:
        await seed(customer_id="cus_1")

        with pytest.raises(DeletionBlocked) as exc_info:
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)
        assert exc_info.value.reason is DeletionBlockReason.PENDING

    @pytest.mark.asyncio
    async def test_past_due_blocks(self, service: AccountDeletionService, seed, test_user) -> None:
        await seed(customer_id="cus_1", status="past_due")

        with pytest.raises(DeletionBlocked) as exc_info:
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)
        assert exc_info.value.reason is DeletionBlockReason.TERMINAL_INELIGIBLE

    @pytest.mark.asyncio
    async def test_evaluate_reads_current_rows(self, service: AccountDeletionService, seed, test_user) -> None:
        assert (await service.evaluate(test_user.id)).eligible is True
        await seed(customer_id="cus_1", status="active")
        assert (await service.evaluate(test_user.id)).eligible is False


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeletion:
    @pytest.mark.asyncio
    async def test_user_billing_locked_before_eligibility_read(
        self, service: AccountDeletionService, seed, test_user, db_session
    ) -> None:
        await seed(customer_id="cus_1")

        with patch("accounts_api.services.account_service.lock_user_billing") as lock:
            with pytest.raises(DeletionBlocked):
                await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        lock.assert_awaited_once_with(db_session, "user-1")

    @pytest.mark.asyncio
    async def test_wrong_password_takes_no_lock(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock
    ) -> None:
        mock_identity.sign_in_with_password.side_effect = IdentityError(400, "Invalid login credentials")

        with patch("accounts_api.services.account_service.lock_user_billing") as lock:
            with pytest.raises(InvalidCredential):
                await service.delete_account(test_user, access_token="tok", password="wrong", confirmed=True)

        lock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_subscribed_user_is_deleted(
        self, service: AccountDeletionService, test_user, mock_admin: AsyncMock, mock_identity: AsyncMock
    ) -> None:
        redirect = await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        assert redirect == ACCOUNT_DELETED_REDIRECT
        assert service.stage is DeletionStage.SIGNED_OUT
        mock_admin.delete_user.assert_awaited_once_with("user-1")
        mock_identity.sign_out.assert_awaited_once_with("tok")

    @pytest.mark.asyncio
    async def test_canceled_subscriber_rows_are_purged(
        self, service: AccountDeletionService, seed, test_user, db_session
    ) -> None:
        await seed(customer_id="cus_1", status="canceled")

        await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        entitlement, customer = await _rows(db_session, test_user.id)
        assert entitlement is None
        assert customer is None

    @pytest.mark.asyncio
    async def test_other_users_rows_untouched(
        self, service: AccountDeletionService, seed, test_user, db_session
    ) -> None:
        await seed(customer_id="cus_1", status="canceled")
        await seed("user-2", customer_id="cus_2", status="active")

        await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        entitlement, customer = await _rows(db_session, "user-2")
        assert entitlement is not None
        assert customer is not None

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_local_rows(
        self, service: AccountDeletionService, seed, test_user, db_session, mock_admin: AsyncMock, mock_identity
    ) -> None:
        await seed(customer_id="cus_1", status="canceled")
        mock_admin.delete_user.side_effect = IdentityError(500, "Database error deleting user")

        with pytest.raises(DeletionFailed) as exc_info:
            await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)

        assert exc_info.value.status_code == 503
        assert str(exc_info.value) == "Something went wrong. Please try again."
        mock_identity.sign_out.assert_not_awaited()
        entitlement, customer = await _rows(db_session, test_user.id)
        assert entitlement is not None
        assert customer is not None

    @pytest.mark.asyncio
    async def test_sign_out_failure_after_deletion_still_succeeds(
        self, service: AccountDeletionService, test_user, mock_identity: AsyncMock
    ) -> None:
        mock_identity.sign_out.side_effect = IdentityError(500, "boom")
        redirect = await service.delete_account(test_user, access_token="tok", password=_PASSWORD, confirmed=True)
        assert redirect == ACCOUNT_DELETED_REDIRECT


# ---------------------------------------------------------------------------
# Account overview
# ---------------------------------------------------------------------------


class TestAccountOverview:
    @pytest.mark.asyncio
    async def test_never_subscribed(self, db_session, test_user) -> None:
        overview = await build_account_overview(db_session, test_user)
        assert overview.subscription_state is SubscriptionDisplayState.NOT_SUBSCRIBED
        assert overview.stripe_status is None
        assert overview.deletion.eligible is True
        assert overview.notice is None

    @pytest.mark.asyncio
    async def test_active_shows_renewal(self, db_session, seed, test_user) -> None:
        period_end = datetime(2027, 3, 1, tzinfo=UTC)
        await seed(customer_id="cus_1", status="active", period_end=period_end)

        overview = await build_account_overview(db_session, test_user)

        assert overview.subscription_state is SubscriptionDisplayState.ACTIVE
        assert overview.renews_at is not None
        assert overview.renews_at.replace(tzinfo=None) == period_end.replace(tzinfo=None)
        assert overview.deletion.eligible is False

    @pytest.mark.asyncio
    async def test_unexpected_status_needs_attention(self, db_session, seed, test_user) -> None:
        await seed(customer_id="cus_1", status="unpaid")

        overview = await build_account_overview(db_session, test_user)

        assert overview.subscription_state is SubscriptionDisplayState.NEEDS_ATTENTION
        assert overview.notice == NEEDS_ATTENTION_MESSAGE
        assert overview.renews_at is None

    @pytest.mark.asyncio
    async def test_canceled_with_customer_is_pending(self, db_session, seed, test_user) -> None:
        await seed(customer_id="cus_1", status="canceled")
        overview = await build_account_overview(db_session, test_user)
        assert overview.subscription_state is SubscriptionDisplayState.PENDING
        assert overview.deletion.eligible is True

    @pytest.mark.asyncio
    async def test_customer_only_is_pending(self, db_session, seed, test_user) -> None:
        await seed(customer_id="cus_1")
        overview = await build_account_overview(db_session, test_user)
        assert overview.subscription_state is SubscriptionDisplayState.PENDING

    @pytest.mark.asyncio
    async def test_checkout_message_carried(self, db_session, test_user) -> None:
        overview = await build_account_overview(db_session, test_user, message="checkout-success")
        assert overview.message == "Subscription started. Your access will activate shortly."


class TestCheckoutMessage:
    def test_success_when_active(self) -> None:
        assert checkout_message("checkout-success", is_active=True) == "Subscription is now active."

    def test_success_before_webhook(self) -> None:
        assert checkout_message("checkout-success", is_active=False) == (
            "Subscription started. Your access will activate shortly."
        )

    def test_canceled(self) -> None:
        assert checkout_message("checkout-canceled", is_active=False) == "Checkout canceled."

    def test_absent(self) -> None:
        assert checkout_message(None, is_active=True) is None
        assert checkout_message("", is_active=True) is None

    def test_other_values_pass_through(self) -> None:
        assert checkout_message("account-updated", is_active=False) == "account-updated"
