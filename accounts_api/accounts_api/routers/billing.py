"""Billing endpoints: checkout, customer portal, entitlement, Stripe webhooks."""

from __future__ import annotations

import logging
from datetime import datetime

from billing_engine.billing.events import MalformedEventError, parse_event
from billing_engine.billing.reconciler import ReconcileOutcome, WebhookReconciler
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, ValidationError

from accounts_api.dependencies import CurrentUserDep, SessionDep, SettingsDep, StripeGatewayDep
from accounts_api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL
from accounts_api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class CheckoutSessionResponse(BaseModel):
    """Where to send the user: Stripe Checkout, or back to the account page."""

    url: str


class PortalSessionResponse(BaseModel):
    """Stripe portal session response."""

    url: str


class EntitlementResponse(BaseModel):
    """The stored subscription state for the current user."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    stripe_subscription_id: str | None = None
    stripe_status: str
    current_period_end: datetime | None = None
    updated_at: datetime


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    current_user: CurrentUserDep,
) -> CheckoutSessionResponse:
    """Create a Stripe Checkout session for the subscription.

    Returns the URL the frontend should redirect the user to.  A user whose
    subscription is already active gets the account page URL instead.
    """
    service = BillingService(session, gateway, settings)
    return CheckoutSessionResponse(url=await service.start_checkout(current_user.user))


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    current_user: CurrentUserDep,
) -> PortalSessionResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    service = BillingService(session, gateway, settings)
    return PortalSessionResponse(url=await service.open_portal(current_user.id))


@router.get("/entitlement", response_model=EntitlementResponse | None)
async def get_entitlement(
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
    current_user: CurrentUserDep,
) -> EntitlementResponse | None:
    """Return the stored entitlement, or ``null`` if the user never subscribed."""
    service = BillingService(session, gateway, settings)
    row = await service.get_entitlement(current_user.id)
    if row is None:
        return None
    return EntitlementResponse.model_validate(row)


@router.post("/webhooks", response_model=ReconcileOutcome)
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: StripeGatewayDep,
) -> ReconcileOutcome:
    """Handle incoming Stripe webhook events.

    The signature is verified against the configured webhook secret before
    anything is read or written.  The event is then applied by the
    reconciler and committed; any failure after verification answers 500 so
    Stripe redelivers the event.
    """
    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        raw_event = gateway.construct_event(body, sig_header)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except Exception as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    if not isinstance(raw_event, dict):
        raise HTTPException(status_code=400, detail="Malformed event")
    try:
        event = parse_event(raw_event)
    except (ValidationError, MalformedEventError) as exc:
        logger.warning("Malformed Stripe event %s: %s", raw_event.get("id"), exc)
        raise HTTPException(status_code=400, detail="Malformed event")

    reconciler = WebhookReconciler(
        session,
        gateway,
        reject_stale_events=settings.reject_stale_events,
    )
    try:
        outcome = await reconciler.apply(event)
        await session.commit()
    except Exception:
        logger.exception(
            "Failed to reconcile Stripe event %s (%s)",
            event.event_id,
            event.event_type,
            extra={"stripe_event": event.event_id},
        )
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event.event_type, outcome="error").inc()
        raise HTTPException(status_code=500, detail="Internal error")

    WEBHOOK_EVENTS_TOTAL.labels(event_type=event.event_type, outcome=outcome.status.value).inc()
    return outcome
