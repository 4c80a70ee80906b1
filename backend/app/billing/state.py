"""Immutable view of a subscription record used by the reconciliation engine."""

from dataclasses import dataclass, fields
from datetime import datetime, timezone

from app.models.subscription import Subscription, SubscriptionStatus

DELETED_REASON = "Subscription deleted"

# Stripe subscription status -> record status
_STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
    "paused": SubscriptionStatus.PENDING,
}


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DB columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def map_stripe_status(stripe_status: str, cancel_at_period_end: bool = False) -> SubscriptionStatus:
    """Translate a Stripe subscription status into a record status.

    A live subscription scheduled to cancel at period end is ``cancelling``.
    """
    status = _STRIPE_STATUS_MAP.get(stripe_status, SubscriptionStatus.PENDING)
    if cancel_at_period_end and status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        return SubscriptionStatus.CANCELLING
    return status


@dataclass(frozen=True)
class SubscriptionState:
    account_id: str
    status: SubscriptionStatus
    plan_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    payment_method_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    last_payment_date: datetime | None = None
    last_payment_amount: int | None = None
    last_failed_payment_date: datetime | None = None
    subscription_synced_at: datetime | None = None
    payment_synced_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Subscription) -> "SubscriptionState":
        values = {f.name: getattr(record, f.name) for f in fields(cls)}
        values["status"] = SubscriptionStatus(record.status)
        return cls(**values)

    @property
    def ended(self) -> bool:
        """True once Stripe has deleted the current subscription."""
        return self.status is SubscriptionStatus.CANCELLED and self.cancel_reason == DELETED_REASON
