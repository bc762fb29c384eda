"""Account deletion eligibility policy.

A pure decision over the locally reconciled billing state.  The evaluator
performs no I/O, never raises, and returns the same decision for the same
inputs, so it is safe to call both when rendering the account page and
again, from freshly read rows, inside the deletion workflow.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from billing_engine.state.tables import BillingCustomerTable, EntitlementTable

ACTIVE_STATUS = "active"

# Subscription statuses after which the subscription can never bill again.
SAFE_TERMINAL_STATES: frozenset[str] = frozenset({"canceled", "incomplete_expired"})


class DeletionBlockReason(str, Enum):
    """Why an account may not be deleted right now."""

    PENDING = "pending"
    ACTIVE = "active"
    TERMINAL_INELIGIBLE = "terminal_ineligible"


BLOCK_MESSAGES: dict[DeletionBlockReason, str] = {
    DeletionBlockReason.PENDING: (
        "Apologies, your subscription activation is still processing. "
        "Please wait a moment and refresh the page before attempting to delete your account."
    ),
    DeletionBlockReason.ACTIVE: (
        "Apologies, you cannot delete an account with an active subscription. "
        "Please click 'Manage Subscription' and use the Stripe customer dashboard "
        "to cancel your subscription first."
    ),
    DeletionBlockReason.TERMINAL_INELIGIBLE: (
        "Apologies, your subscription is in a non-terminal state. "
        "Please contact customer support before attempting to delete your account."
    ),
}


class DeletionDecision(BaseModel):
    """Outcome of the eligibility check.

    ``reason`` and ``message`` are ``None`` exactly when ``eligible`` is true.
    """

    model_config = ConfigDict(frozen=True)

    eligible: bool
    reason: DeletionBlockReason | None = None
    message: str | None = None

    @classmethod
    def allow(cls) -> DeletionDecision:
        return cls(eligible=True)

    @classmethod
    def block(cls, reason: DeletionBlockReason) -> DeletionDecision:
        return cls(eligible=False, reason=reason, message=BLOCK_MESSAGES[reason])


def evaluate_deletion_eligibility(
    entitlement_present: bool,
    entitlement_status: str | None,
    customer_link_present: bool,
) -> DeletionDecision:
    """Decide whether an account may be deleted given its billing state.

    Rules are checked in order and the first match wins:

    1. No customer link and no entitlement: eligible (never subscribed).
    2. Customer link but no entitlement: blocked, activation pending.
    3. Entitlement in a safe terminal state: eligible.
    4. Entitlement active: blocked, active subscription.
    5. Entitlement in any other state: blocked, needs support.

    Parameters
    ----------
    entitlement_present:
        Whether an entitlement row exists for the user.
    entitlement_status:
        The stored Stripe status, ignored when no entitlement exists.
    customer_link_present:
        Whether a Stripe customer link exists for the user.

    Returns
    -------
    DeletionDecision
    """
    if not entitlement_present:
        if not customer_link_present:
            return DeletionDecision.allow()
        return DeletionDecision.block(DeletionBlockReason.PENDING)

    if entitlement_status in SAFE_TERMINAL_STATES:
        return DeletionDecision.allow()
    if entitlement_status == ACTIVE_STATUS:
        return DeletionDecision.block(DeletionBlockReason.ACTIVE)
    # past_due, trialing, unpaid, paused, incomplete, unknown or missing status.
    return DeletionDecision.block(DeletionBlockReason.TERMINAL_INELIGIBLE)


def decide_for(
    entitlement: EntitlementTable | None,
    customer_link: BillingCustomerTable | None,
) -> DeletionDecision:
    """Evaluate eligibility directly from stored rows."""
    return evaluate_deletion_eligibility(
        entitlement_present=entitlement is not None,
        entitlement_status=entitlement.stripe_status if entitlement is not None else None,
        customer_link_present=customer_link is not None,
    )
