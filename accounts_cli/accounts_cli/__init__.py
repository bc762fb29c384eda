"""Operator CLI for the accounts service."""

__version__ = "0.1.0"
