"""User-facing billing operations: checkout, customer portal, entitlement lookup.

Webhook reconciliation is not handled here; see
:class:`billing_engine.billing.reconciler.WebhookReconciler`.
"""

from __future__ import annotations

import logging

from billing_engine.billing.eligibility import ACTIVE_STATUS
from billing_engine.state.repository import BillingCustomerRepository, EntitlementRepository
from billing_engine.state.tables import EntitlementTable
from sqlalchemy.ext.asyncio import AsyncSession

from accounts_api.config import AccountsSettings
from accounts_api.services.identity_client import AuthUser
from accounts_api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class BillingService:
    """Stripe billing operations for a single user.

    Parameters
    ----------
    session:
        Active database session (read-only use).
    gateway:
        Stripe gateway bound to the configured mode.
    settings:
        Service settings; supplies the portal return URL.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        settings: AccountsSettings,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._settings = settings
        self._entitlements = EntitlementRepository(session)
        self._customers = BillingCustomerRepository(session)

    async def get_entitlement(self, user_id: str) -> EntitlementTable | None:
        return await self._entitlements.get(user_id)

    async def start_checkout(self, user: AuthUser) -> str:
        """Return the URL the user should be sent to in order to subscribe.

        An already active subscriber is sent back to the account page
        instead of opening a second subscription.  A returning customer is
        checked out on their existing Stripe customer.
        """
        entitlement = await self._entitlements.get(user.id)
        if entitlement is not None and entitlement.stripe_status == ACTIVE_STATUS:
            logger.info("Checkout skipped for %s: subscription already active", user.id)
            return self._settings.portal_return_url

        customer = await self._customers.get(user.id)
        url = await self._gateway.create_checkout_session(
            user_id=user.id,
            customer_id=customer.stripe_customer_id if customer is not None else None,
            customer_email=user.email,
        )
        logger.info("Checkout session created for %s", user.id)
        return url

    async def open_portal(self, user_id: str) -> str:
        """Return a Billing Portal URL, or the account page if never subscribed."""
        customer = await self._customers.get(user_id)
        if customer is None:
            return self._settings.portal_return_url
        return await self._gateway.create_portal_session(customer.stripe_customer_id)
