"""Accounts API: authentication, Stripe billing and account deletion endpoints."""

__version__ = "0.1.0"
