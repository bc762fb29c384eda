"""Billing reconciliation core: state store, Stripe event model, reconciler and deletion policy."""

__version__ = "0.1.0"
