"""Stripe webhook event normalization.

Turns a verified ``stripe.Event`` into one of a closed set of canonical
events, resolving the owning account through the Stripe customer's metadata.
Normalization is read-only and always fetches the customer live.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe

from app.billing.stripe_client import StripeGateway
from app.exceptions import AccountResolutionError

logger = logging.getLogger(__name__)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _get_first_item(stripe_sub):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def get_price_id(stripe_sub) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = _get_first_item(stripe_sub)
    return item.price.id if item else None


def get_period(stripe_sub) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end from the first subscription item.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item. Older payloads
    still carry them on the subscription itself.
    """
    item = _get_first_item(stripe_sub)
    start = getattr(item, "current_period_start", None) if item else None
    end = getattr(item, "current_period_end", None) if item else None
    if start is None:
        start = getattr(stripe_sub, "current_period_start", None)
    if end is None:
        end = getattr(stripe_sub, "current_period_end", None)
    return ts_to_naive(start), ts_to_naive(end)


def _object_id(value) -> str | None:
    """Return the ID of a possibly-expanded Stripe reference."""
    if value is None or isinstance(value, str):
        return value
    return value.id


def _invoice_subscription_id(invoice) -> str | None:
    """Subscription referenced by an invoice (top-level before basil, under parent after)."""
    subscription = getattr(invoice, "subscription", None)
    if subscription:
        return _object_id(subscription)
    parent = getattr(invoice, "parent", None)
    details = getattr(parent, "subscription_details", None) if parent else None
    if details:
        return _object_id(getattr(details, "subscription", None))
    return None


# --- Canonical events ---


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Fields of a Stripe subscription object that the record mirrors."""

    subscription_id: str
    customer_id: str
    status: str
    plan_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    created_at: datetime | None = None

    @classmethod
    def from_stripe(cls, stripe_sub) -> "SubscriptionSnapshot":
        period_start, period_end = get_period(stripe_sub)
        return cls(
            subscription_id=stripe_sub.id,
            customer_id=_object_id(stripe_sub.customer),
            status=stripe_sub.status,
            plan_id=get_price_id(stripe_sub),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
            created_at=ts_to_naive(getattr(stripe_sub, "created", None)),
        )


@dataclass(frozen=True)
class SubscriptionCreated:
    event_id: str
    account_id: str
    occurred_at: datetime
    subscription: SubscriptionSnapshot
    event_type: str = "customer.subscription.created"


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    account_id: str
    occurred_at: datetime
    subscription: SubscriptionSnapshot
    event_type: str = "customer.subscription.updated"


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    account_id: str
    occurred_at: datetime
    subscription: SubscriptionSnapshot
    event_type: str = "customer.subscription.deleted"


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    account_id: str
    occurred_at: datetime
    invoice_id: str
    customer_id: str
    subscription_id: str | None
    amount_paid: int | None
    invoice_created: datetime | None
    invoice_pdf: str | None = None
    event_type: str = "invoice.payment_succeeded"


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    account_id: str
    occurred_at: datetime
    invoice_id: str
    customer_id: str
    subscription_id: str | None
    amount_due: int | None
    invoice_created: datetime | None
    event_type: str = "invoice.payment_failed"


@dataclass(frozen=True)
class IgnoredEvent:
    """Any event type the engine does not handle."""

    event_id: str
    event_type: str
    occurred_at: datetime | None
    account_id: str | None = None


CanonicalEvent = (
    SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
    | IgnoredEvent
)

_SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
}

HANDLED_EVENT_TYPES = frozenset(
    [*_SUBSCRIPTION_EVENTS, "invoice.payment_succeeded", "invoice.payment_failed"]
)


async def resolve_account_id(gateway: StripeGateway, customer_id: str | None) -> str:
    """Read the account identifier from the Stripe customer's metadata."""
    if not customer_id:
        raise AccountResolutionError(customer_id)
    customer = await gateway.retrieve_customer(customer_id)
    metadata = getattr(customer, "metadata", None)
    account_id = getattr(metadata, gateway.config.stripe_account_metadata_key, None) if metadata else None
    if not account_id:
        logger.error("Account identifier missing in Stripe metadata for customer %s", customer_id)
        raise AccountResolutionError(customer_id)
    return account_id


async def normalize_event(event: stripe.Event, gateway: StripeGateway) -> CanonicalEvent:
    """Map a verified Stripe event onto its canonical variant."""
    occurred_at = ts_to_naive(getattr(event, "created", None))
    if event.type not in HANDLED_EVENT_TYPES:
        return IgnoredEvent(event_id=event.id, event_type=event.type, occurred_at=occurred_at)

    obj = event.data.object
    customer_id = _object_id(obj.customer)
    account_id = await resolve_account_id(gateway, customer_id)

    event_cls = _SUBSCRIPTION_EVENTS.get(event.type)
    if event_cls is not None:
        return event_cls(
            event_id=event.id,
            account_id=account_id,
            occurred_at=occurred_at,
            subscription=SubscriptionSnapshot.from_stripe(obj),
        )

    if event.type == "invoice.payment_succeeded":
        return InvoicePaymentSucceeded(
            event_id=event.id,
            account_id=account_id,
            occurred_at=occurred_at,
            invoice_id=obj.id,
            customer_id=customer_id,
            subscription_id=_invoice_subscription_id(obj),
            amount_paid=getattr(obj, "amount_paid", None),
            invoice_created=ts_to_naive(getattr(obj, "created", None)),
            invoice_pdf=getattr(obj, "invoice_pdf", None),
        )

    return InvoicePaymentFailed(
        event_id=event.id,
        account_id=account_id,
        occurred_at=occurred_at,
        invoice_id=obj.id,
        customer_id=customer_id,
        subscription_id=_invoice_subscription_id(obj),
        amount_due=getattr(obj, "amount_due", None),
        invoice_created=ts_to_naive(getattr(obj, "created", None)),
    )
