"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.

Three tables make up the store:

* ``entitlements`` -- last reconciled Stripe subscription state per user.
* ``billing_customers`` -- user to Stripe customer mapping.
* ``stripe_events`` -- append-only ledger of processed Stripe event IDs.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing state tables."""


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementTable(Base):
    """Last-known Stripe subscription state for a user.

    Absence of a row means the user never completed checkout.  A row with
    ``stripe_status == "active"`` means the user currently has paid access.
    Rows are written only by the webhook reconciler and removed only as part
    of account deletion.
    """

    __tablename__ = "entitlements"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_status: Mapped[str] = mapped_column(String(64), nullable=False)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stripe ``event.created`` (epoch seconds) of the event whose state is stored.
    source_event_created: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_entitlements_status", "stripe_status"),)


# ---------------------------------------------------------------------------
# Billing customers
# ---------------------------------------------------------------------------


class BillingCustomerTable(Base):
    """Mapping from a user to their Stripe customer.

    A user has at most one customer ID; once written it is reused for every
    later checkout so resubscriptions land on the same Stripe customer.
    """

    __tablename__ = "billing_customers"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_customers_stripe_customer", "stripe_customer_id"),)


# ---------------------------------------------------------------------------
# Processed Stripe events
# ---------------------------------------------------------------------------


class StripeEventTable(Base):
    """Append-only ledger of Stripe event IDs that have been applied.

    The primary key on ``event_id`` is the idempotency boundary: a second
    insert for the same event conflicts and is treated as a duplicate.
    """

    __tablename__ = "stripe_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_stripe_events_received_at", "received_at"),)
