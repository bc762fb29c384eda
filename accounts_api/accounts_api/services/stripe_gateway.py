"""Thin wrapper over the Stripe SDK.

The SDK is synchronous; every network call is pushed to a worker thread
with :func:`asyncio.to_thread` so request handlers never block the event
loop.  Signature verification is CPU-only and runs inline.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

from accounts_api.config import AccountsSettings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Stripe operations bound to the configured mode's credentials.

    Implements the reconciler's subscription lookup as well as the
    checkout / portal session creation used by the billing endpoints.

    Parameters
    ----------
    settings:
        Service settings; the secret key, price ID and webhook secret are
        taken from the active ``stripe_mode``.
    """

    def __init__(self, settings: AccountsSettings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook delivery and return the decoded event.

        Raises
        ------
        ValueError
            If the payload is not valid JSON.
        stripe.SignatureVerificationError
            If the signature does not match the configured webhook secret
            or the timestamp is outside the tolerance window.
        """
        stripe = self._get_stripe()
        stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self._settings.stripe_webhook_secret.get_secret_value(),
        )
        return json.loads(payload)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Fetch the current subscription object from Stripe."""
        stripe = self._get_stripe()
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        if not isinstance(subscription, Mapping):
            # StripeObject stopped subclassing dict in stripe 12
            subscription = subscription.to_dict()
        logger.debug("Retrieved Stripe subscription %s (status=%s)", subscription_id, subscription.get("status"))
        return subscription

    # ------------------------------------------------------------------
    # Hosted pages
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> str:
        """Create a subscription Checkout session and return its URL.

        An existing customer is reused so resubscriptions stay on one Stripe
        customer; otherwise Stripe creates one, pre-filled with
        ``customer_email``.  The user ID travels as ``client_reference_id``
        and ``metadata.user_id`` so the completion webhook can be attributed.
        """
        stripe = self._get_stripe()
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": self._settings.stripe_price_id, "quantity": 1}],
            "success_url": self._settings.checkout_success_url,
            "cancel_url": self._settings.checkout_cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        checkout_session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        logger.info("Created Stripe checkout session for user=%s", user_id)
        return checkout_session["url"]

    async def create_portal_session(self, customer_id: str) -> str:
        """Create a Billing Portal session and return its URL."""
        stripe = self._get_stripe()
        portal_session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._settings.portal_return_url,
        )
        return portal_session["url"]
