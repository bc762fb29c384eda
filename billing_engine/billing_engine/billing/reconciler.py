"""Webhook reconciler: applies verified Stripe events to local billing state.

Stripe delivers events at least once and in no particular order.  The
reconciler makes each event ID take effect exactly once by inserting it
into the ``stripe_events`` ledger before touching anything else, inside
the caller's transaction.  If a later write fails, the whole transaction
(ledger row included) rolls back and Stripe's retry is processed afresh.

Subscription events also carry Stripe's ``created`` timestamp.  The
entitlement remembers the timestamp of the event that produced it, and an
older subscription event arriving late is recorded but not applied.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    subscription_period_end,
)
from billing_engine.state.repository import (
    BillingCustomerRepository,
    EntitlementRepository,
    EventAlreadyProcessedError,
    EventLedgerRepository,
    lock_user_billing,
)
from billing_engine.state.tables import EntitlementTable

logger = logging.getLogger(__name__)


class SubscriptionFetcher(Protocol):
    """Source of current subscription state, used on checkout completion."""

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Return the Stripe subscription object for *subscription_id*."""
        ...


class ReconcileStatus(str, Enum):
    """What the reconciler did with an event."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    STALE = "stale"


class ReconcileOutcome(BaseModel):
    """Result of applying one event."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    status: ReconcileStatus
    user_id: str | None = None
    detail: str | None = None


class WebhookReconciler:
    """Apply Stripe billing events to the entitlement and customer link stores.

    Parameters
    ----------
    session:
        Active database session.  All ledger and store writes for one event
        happen in this session's transaction; the caller commits.
    subscriptions:
        Fetcher used to read the subscription referenced by a completed
        checkout session.
    reject_stale_events:
        When true, subscription events older than the stored entitlement's
        source event are recorded without being applied.
    """

    def __init__(
        self,
        session: AsyncSession,
        subscriptions: SubscriptionFetcher,
        *,
        reject_stale_events: bool = True,
    ) -> None:
        self._session = session
        self._subscriptions = subscriptions
        self._reject_stale = reject_stale_events
        self._ledger = EventLedgerRepository(session)
        self._customers = BillingCustomerRepository(session)
        self._entitlements = EntitlementRepository(session)

    async def apply(self, event: BillingEvent) -> ReconcileOutcome:
        """Apply *event* once.

        Returns
        -------
        ReconcileOutcome
            ``duplicate`` when the event ID was already in the ledger, in
            which case nothing else is read or written.

        Raises
        ------
        sqlalchemy.exc.SQLAlchemyError
            On any store failure.  The caller must roll back and answer the
            webhook with a non-2xx status so Stripe redelivers.
        """
        try:
            await self._ledger.record(event.event_id, event.event_type)
        except EventAlreadyProcessedError:
            logger.info("Stripe event already processed: %s (%s)", event.event_id, event.event_type)
            return self._outcome(event, ReconcileStatus.DUPLICATE)

        if isinstance(event, CheckoutCompleted):
            return await self._apply_checkout_completed(event)
        if isinstance(event, SubscriptionChanged):
            return await self._apply_subscription_changed(event)
        if isinstance(event, SubscriptionDeleted):
            return await self._apply_subscription_deleted(event)

        logger.debug("Unhandled Stripe event type: %s", event.event_type)
        return self._outcome(event, ReconcileStatus.IGNORED)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _apply_checkout_completed(self, event: CheckoutCompleted) -> ReconcileOutcome:
        if not event.user_id:
            logger.warning(
                "checkout.session.completed: cannot determine user_id (session=%s)",
                event.session_id,
            )
            return self._outcome(event, ReconcileStatus.SKIPPED, detail="missing user reference")

        if not event.customer_id:
            logger.warning(
                "checkout.session.completed: cannot determine customer_id (session=%s)",
                event.session_id,
            )
            return self._outcome(
                event,
                ReconcileStatus.SKIPPED,
                user_id=event.user_id,
                detail="missing customer reference",
            )

        await lock_user_billing(self._session, event.user_id)
        await self._customers.upsert(event.user_id, event.customer_id)
        logger.info("Billing customer mapped: user=%s customer=%s", event.user_id, event.customer_id)

        if not event.subscription_id:
            logger.info(
                "checkout.session.completed without subscription; entitlement not set (session=%s)",
                event.session_id,
            )
            return self._outcome(
                event,
                ReconcileStatus.PROCESSED,
                user_id=event.user_id,
                detail="customer linked; no subscription",
            )

        subscription = await self._subscriptions.retrieve_subscription(event.subscription_id)
        status = subscription.get("status") or "unknown"

        existing = await self._entitlements.get(event.user_id, for_update=True)
        source_created = event.created
        if existing is not None and existing.source_event_created is not None:
            source_created = max(source_created, existing.source_event_created)

        await self._entitlements.upsert(
            event.user_id,
            stripe_status=status,
            stripe_subscription_id=subscription.get("id") or event.subscription_id,
            current_period_end=subscription_period_end(subscription),
            source_event_created=source_created,
        )
        logger.info("Entitlement upserted: user=%s status=%s", event.user_id, status)
        return self._outcome(event, ReconcileStatus.PROCESSED, user_id=event.user_id)

    async def _apply_subscription_changed(self, event: SubscriptionChanged) -> ReconcileOutcome:
        user_id = await self._resolve_user(event.customer_id)
        if user_id is None:
            return self._outcome(event, ReconcileStatus.SKIPPED, detail="unknown customer")

        existing = await self._entitlements.get(user_id, for_update=True)
        if self._is_stale(event.created, existing):
            return self._stale(event, user_id, existing)

        await self._entitlements.upsert(
            user_id,
            stripe_status=event.status,
            stripe_subscription_id=event.subscription_id,
            current_period_end=event.current_period_end,
            source_event_created=event.created,
        )
        logger.info("Entitlement upserted: user=%s status=%s", user_id, event.status)
        return self._outcome(event, ReconcileStatus.PROCESSED, user_id=user_id)

    async def _apply_subscription_deleted(self, event: SubscriptionDeleted) -> ReconcileOutcome:
        user_id = await self._resolve_user(event.customer_id)
        if user_id is None:
            return self._outcome(event, ReconcileStatus.SKIPPED, detail="unknown customer")

        existing = await self._entitlements.get(user_id, for_update=True)
        if self._is_stale(event.created, existing):
            return self._stale(event, user_id, existing)

        updated = await self._entitlements.update_status(
            user_id,
            event.status,
            source_event_created=event.created,
        )
        if not updated:
            logger.info("No entitlement to update for user=%s on subscription deletion", user_id)
            return self._outcome(event, ReconcileStatus.PROCESSED, user_id=user_id, detail="no entitlement")

        logger.info("Entitlement updated: user=%s status=%s", user_id, event.status)
        return self._outcome(event, ReconcileStatus.PROCESSED, user_id=user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_user(self, customer_id: str | None) -> str | None:
        if not customer_id:
            logger.warning("Subscription event without customer reference; skipping")
            return None
        user_id = await self._customers.get_user_id_for_customer(customer_id)
        if user_id is None:
            logger.warning("Cannot map customer %s to user; skipping entitlement update", customer_id)
            return None

        # An account deletion may have removed the link while we waited for the lock.
        await lock_user_billing(self._session, user_id)
        if await self._customers.get_user_id_for_customer(customer_id) != user_id:
            logger.warning("Customer %s was unlinked from user %s; skipping entitlement update", customer_id, user_id)
            return None
        return user_id

    def _is_stale(self, event_created: int, existing: EntitlementTable | None) -> bool:
        if not self._reject_stale or existing is None or existing.source_event_created is None:
            return False
        return event_created < existing.source_event_created

    def _stale(
        self,
        event: SubscriptionChanged | SubscriptionDeleted,
        user_id: str,
        existing: EntitlementTable | None,
    ) -> ReconcileOutcome:
        stored = existing.source_event_created if existing is not None else None
        logger.info(
            "Stale %s for user=%s ignored (event created=%d, stored=%s)",
            event.event_type,
            user_id,
            event.created,
            stored,
        )
        return self._outcome(
            event,
            ReconcileStatus.STALE,
            user_id=user_id,
            detail=f"older than stored state ({event.created} < {stored})",
        )

    @staticmethod
    def _outcome(
        event: CheckoutCompleted | SubscriptionChanged | SubscriptionDeleted | IgnoredEvent,
        status: ReconcileStatus,
        *,
        user_id: str | None = None,
        detail: str | None = None,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            status=status,
            user_id=user_id,
            detail=detail,
        )
