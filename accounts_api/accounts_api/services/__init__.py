"""Service layer for the accounts API."""
