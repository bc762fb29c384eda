"""State persistence layer for entitlements, customer links and the event ledger."""

from billing_engine.state.database import get_engine, get_session
from billing_engine.state.repository import (
    BillingCustomerRepository,
    EntitlementRepository,
    EventAlreadyProcessedError,
    EventLedgerRepository,
)

__all__ = [
    "BillingCustomerRepository",
    "EntitlementRepository",
    "EventAlreadyProcessedError",
    "EventLedgerRepository",
    "get_engine",
    "get_session",
]
