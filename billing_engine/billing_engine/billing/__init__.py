"""Stripe event model, webhook reconciler and deletion eligibility policy."""

from billing_engine.billing.eligibility import (
    DeletionBlockReason,
    DeletionDecision,
    decide_for,
    evaluate_deletion_eligibility,
)
from billing_engine.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    parse_event,
)
from billing_engine.billing.reconciler import (
    ReconcileOutcome,
    ReconcileStatus,
    SubscriptionFetcher,
    WebhookReconciler,
)

__all__ = [
    "BillingEvent",
    "CheckoutCompleted",
    "DeletionBlockReason",
    "DeletionDecision",
    "IgnoredEvent",
    "ReconcileOutcome",
    "ReconcileStatus",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "SubscriptionFetcher",
    "WebhookReconciler",
    "decide_for",
    "evaluate_deletion_eligibility",
    "parse_event",
]
