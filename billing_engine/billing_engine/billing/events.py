"""Typed view of the Stripe webhook events the reconciler consumes.

Stripe delivers a loosely-typed JSON envelope (``id``, ``type``, ``created``,
``data.object``).  :func:`parse_event` narrows it into a closed union keyed
on ``kind`` so the reconciler dispatches on a model rather than on nested
dictionary lookups.  Every event type other than the four handled ones
becomes :class:`IgnoredEvent`; it is still recorded in the ledger.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class StripeEventType(str, Enum):
    """Stripe event types with a dedicated handler."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


class _BillingEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1, description="Stripe event ID (``evt_...``).")
    event_type: str = Field(..., min_length=1, description="Raw Stripe event type.")
    created: int = Field(default=0, ge=0, description="Stripe event creation time, epoch seconds.")


class CheckoutCompleted(_BillingEventBase):
    """``checkout.session.completed``.

    ``user_id`` comes from ``client_reference_id`` with ``metadata.user_id``
    as fallback.  Any of the references may be missing; the reconciler
    decides what that means.
    """

    kind: Literal["checkout_completed"] = "checkout_completed"
    session_id: str | None = None
    user_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None


class SubscriptionChanged(_BillingEventBase):
    """``customer.subscription.created`` or ``customer.subscription.updated``."""

    kind: Literal["subscription_changed"] = "subscription_changed"
    subscription_id: str | None = None
    customer_id: str | None = None
    status: str
    current_period_end: datetime | None = None


class SubscriptionDeleted(_BillingEventBase):
    """``customer.subscription.deleted``."""

    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription_id: str | None = None
    customer_id: str | None = None
    status: str


class IgnoredEvent(_BillingEventBase):
    """Any event type without a handler."""

    kind: Literal["ignored"] = "ignored"


BillingEvent = Annotated[
    CheckoutCompleted | SubscriptionChanged | SubscriptionDeleted | IgnoredEvent,
    Field(discriminator="kind"),
]

_billing_event_adapter: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


class MalformedEventError(ValueError):
    """A verified event whose payload does not have the shape Stripe documents."""


def _object_at(value: Any, where: str) -> Mapping[str, Any]:
    """Return *value* as a JSON object; ``None`` reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedEventError(f"{where} is {type(value).__name__}, expected an object")
    return value


def stripe_ref(value: Any) -> str | None:
    """Return the ID of a Stripe reference that may be a string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    ref = value.get("id") if hasattr(value, "get") else None
    return ref or None


def epoch_to_datetime(value: Any) -> datetime | None:
    """Convert a Stripe epoch-seconds timestamp to an aware UTC datetime."""
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedEventError(f"invalid timestamp {value!r}") from exc


def subscription_period_end(subscription: Mapping[str, Any]) -> datetime | None:
    """Extract ``current_period_end`` from a subscription object.

    Newer Stripe API versions moved the field from the subscription onto
    each subscription item, so the first item is consulted when the
    top-level field is absent.
    """
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = _object_at(subscription.get("items"), "subscription.items").get("data") or []
        if not isinstance(items, list):
            raise MalformedEventError("subscription.items.data is not a list")
        if items:
            period_end = _object_at(items[0], "subscription item").get("current_period_end")
    return epoch_to_datetime(period_end)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_event(raw: Mapping[str, Any]) -> BillingEvent:
    """Narrow a verified Stripe event envelope into a :data:`BillingEvent`.

    Parameters
    ----------
    raw:
        The decoded event JSON (``id``, ``type``, ``created``, ``data``).

    Returns
    -------
    BillingEvent
        One of the four variants, chosen by ``type``.

    Raises
    ------
    pydantic.ValidationError
        If the envelope lacks an ``id`` or ``type``, or a subscription
        event carries no ``status``.
    MalformedEventError
        If ``data``, ``data.object``, ``metadata`` or a timestamp has the
        wrong JSON type.
    """
    event_type = raw.get("type") or ""
    data_object = _object_at(_object_at(raw.get("data"), "data").get("object"), "data.object")
    base: dict[str, Any] = {
        "event_id": raw.get("id"),
        "event_type": event_type,
        "created": raw.get("created") or 0,
    }

    if event_type == StripeEventType.CHECKOUT_SESSION_COMPLETED.value:
        metadata = _object_at(data_object.get("metadata"), "metadata")
        payload: dict[str, Any] = {
            **base,
            "kind": "checkout_completed",
            "session_id": data_object.get("id"),
            "user_id": data_object.get("client_reference_id") or metadata.get("user_id") or None,
            "customer_id": stripe_ref(data_object.get("customer")),
            "subscription_id": stripe_ref(data_object.get("subscription")),
        }
    elif event_type in (
        StripeEventType.SUBSCRIPTION_CREATED.value,
        StripeEventType.SUBSCRIPTION_UPDATED.value,
    ):
        payload = {
            **base,
            "kind": "subscription_changed",
            "subscription_id": data_object.get("id"),
            "customer_id": stripe_ref(data_object.get("customer")),
            "status": data_object.get("status"),
            "current_period_end": subscription_period_end(data_object),
        }
    elif event_type == StripeEventType.SUBSCRIPTION_DELETED.value:
        payload = {
            **base,
            "kind": "subscription_deleted",
            "subscription_id": data_object.get("id"),
            "customer_id": stripe_ref(data_object.get("customer")),
            "status": data_object.get("status"),
        }
    else:
        payload = {**base, "kind": "ignored"}

    return _billing_event_adapter.validate_python(payload)
