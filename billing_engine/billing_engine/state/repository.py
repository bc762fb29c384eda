"""Data access for the ``stripe_events``, ``billing_customers`` and ``entitlements`` tables.

Repositories wrap a caller-owned ``AsyncSession``.  Writes are flushed
immediately so constraint violations surface where they happen; committing
is left to whoever opened the session.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import BillingCustomerTable, EntitlementTable, StripeEventTable

logger = logging.getLogger(__name__)


class EventAlreadyProcessedError(Exception):
    """Raised when a Stripe event ID is already present in the ledger."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Stripe event {event_id} has already been processed")
        self.event_id = event_id


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return the dialect-specific ``insert()`` construct for *table*.

    Both PostgreSQL and SQLite expose ``on_conflict_do_update`` /
    ``on_conflict_do_nothing`` on their own insert constructs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Insert *values* into *table*, overwriting *update_columns* when a row
    with the same *index_elements* key already exists.

    Both PostgreSQL and SQLite spell this ``INSERT ... ON CONFLICT DO UPDATE``;
    only the insert construct differs.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def lock_user_billing(session: AsyncSession, user_id: str) -> None:
    """Serialise billing writes and account deletion for one user.

    Takes a transaction-scoped PostgreSQL advisory lock keyed on *user_id*,
    which holds even when the user has no billing rows yet and so nothing
    for ``FOR UPDATE`` to lock.  Released on commit or rollback.  SQLite
    already admits a single writer, so the call is a no-op there.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"),
        {"key": f"billing-user:{user_id}"},
    )


# ---------------------------------------------------------------------------
# EventLedgerRepository
# ---------------------------------------------------------------------------


class EventLedgerRepository:
    """Append-only access to the ``stripe_events`` ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event_id: str, event_type: str) -> None:
        """Insert *event_id* into the ledger.

        The insert is atomic and unique: ``ON CONFLICT DO NOTHING RETURNING``
        yields no row when the ID is already present, which is reported as
        :class:`EventAlreadyProcessedError`.  Any other database failure
        propagates unchanged.
        """
        stmt = (
            _dialect_insert(self._session, StripeEventTable)
            .values(event_id=event_id, event_type=event_type, received_at=datetime.now(UTC))
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(StripeEventTable.event_id)
        )
        result = await self._session.execute(stmt)
        if result.scalar_one_or_none() is None:
            raise EventAlreadyProcessedError(event_id)
        await self._session.flush()

    async def exists(self, event_id: str) -> bool:
        """Return ``True`` if *event_id* has been recorded."""
        result = await self._session.execute(
            select(StripeEventTable.event_id).where(StripeEventTable.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def list_recent(self, limit: int = 50) -> list[StripeEventTable]:
        """Return the most recently received events, newest first."""
        result = await self._session.execute(
            select(StripeEventTable).order_by(StripeEventTable.received_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# BillingCustomerRepository
# ---------------------------------------------------------------------------


class BillingCustomerRepository:
    """CRUD operations for the ``billing_customers`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str, *, for_update: bool = False) -> BillingCustomerTable | None:
        """Fetch the customer link for *user_id*, row-locked on PostgreSQL when *for_update*."""
        stmt = (
            select(BillingCustomerTable)
            .where(BillingCustomerTable.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_id_for_customer(self, stripe_customer_id: str) -> str | None:
        """Reverse lookup: return the user mapped to *stripe_customer_id*."""
        result = await self._session.execute(
            select(BillingCustomerTable.user_id).where(BillingCustomerTable.stripe_customer_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, user_id: str, stripe_customer_id: str) -> None:
        """Create or replace the customer link for *user_id*."""
        await _dialect_upsert(
            self._session,
            BillingCustomerTable,
            values={
                "user_id": user_id,
                "stripe_customer_id": stripe_customer_id,
                "created_at": datetime.now(UTC),
            },
            index_elements=["user_id"],
            update_columns=["stripe_customer_id"],
        )
        await self._session.flush()

    async def delete(self, user_id: str) -> bool:
        """Remove the customer link.  Returns ``True`` if a row was deleted."""
        result = await self._session.execute(delete(BillingCustomerTable).where(BillingCustomerTable.user_id == user_id))
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """CRUD operations for the ``entitlements`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str, *, for_update: bool = False) -> EntitlementTable | None:
        """Fetch the entitlement for *user_id*.

        ``for_update`` takes a row lock on PostgreSQL so that the stale-event
        comparison and the following write see the same row.  SQLite ignores
        the clause.
        """
        stmt = (
            select(EntitlementTable)
            .where(EntitlementTable.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        user_id: str,
        *,
        stripe_status: str,
        stripe_subscription_id: str | None,
        current_period_end: datetime | None,
        source_event_created: int | None = None,
    ) -> None:
        """Create or overwrite the entitlement for *user_id*.

        ``updated_at`` is always stamped with the current time.
        """
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values={
                "user_id": user_id,
                "stripe_subscription_id": stripe_subscription_id,
                "stripe_status": stripe_status,
                "current_period_end": current_period_end,
                "source_event_created": source_event_created,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["user_id"],
            update_columns=[
                "stripe_subscription_id",
                "stripe_status",
                "current_period_end",
                "source_event_created",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def update_status(
        self,
        user_id: str,
        stripe_status: str,
        *,
        source_event_created: int | None = None,
    ) -> bool:
        """Update only the status of an existing entitlement.

        Subscription ID and period end are left untouched.  Returns ``True``
        if a row was updated; a missing row is not created.
        """
        values: dict[str, Any] = {
            "stripe_status": stripe_status,
            "updated_at": datetime.now(UTC),
        }
        if source_event_created is not None:
            values["source_event_created"] = source_event_created
        result = await self._session.execute(
            update(EntitlementTable)
            .where(EntitlementTable.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def delete(self, user_id: str) -> bool:
        """Remove the entitlement.  Returns ``True`` if a row was deleted."""
        result = await self._session.execute(delete(EntitlementTable).where(EntitlementTable.user_id == user_id))
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]
