"""Subscription reconciliation engine.

Pure decision logic: given the current record state and either a canonical
Stripe event or a user action, compute the partial field changes to persist
and the Stripe calls (effects) that must succeed first. Nothing here performs
I/O, so every decision can be replayed against its own result.

Events are applied last-writer-wins per field group. Subscription-object
events own ``subscription_synced_at`` and invoice events own
``payment_synced_at``; an event older than the stored group timestamp is
ignored, and the write carries a guard so a concurrent newer write wins.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.billing.events import (
    CanonicalEvent,
    IgnoredEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    get_period,
)
from app.billing.policies import PaymentFailurePolicy, strict_cancellation_policy
from app.billing.state import DELETED_REASON, SubscriptionState, map_stripe_status, utcnow
from app.exceptions import InvalidTransitionError, NotFoundError
from app.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)


# --- User actions ---


@dataclass(frozen=True)
class CancelSubscription:
    account_id: str


@dataclass(frozen=True)
class ReactivateSubscription:
    account_id: str


@dataclass(frozen=True)
class UpdatePaymentMethod:
    account_id: str
    payment_method_id: str


@dataclass(frozen=True)
class UpdateBillingEmail:
    account_id: str
    email: str


UserAction = CancelSubscription | ReactivateSubscription | UpdatePaymentMethod | UpdateBillingEmail


# --- Decisions ---


class EffectKind(str, enum.Enum):
    SCHEDULE_CANCELLATION = "schedule_cancellation"
    CLEAR_SCHEDULED_CANCELLATION = "clear_scheduled_cancellation"
    SET_CUSTOMER_DEFAULT_PAYMENT_METHOD = "set_customer_default_payment_method"
    SET_SUBSCRIPTION_DEFAULT_PAYMENT_METHOD = "set_subscription_default_payment_method"
    PAY_LATEST_OPEN_INVOICE = "pay_latest_open_invoice"
    UPDATE_CUSTOMER_EMAIL = "update_customer_email"


@dataclass(frozen=True)
class Effect:
    """A Stripe call required by a decision.

    Every effect sets a target state rather than incrementing anything, so
    repeating it after a partial failure is safe. ``best_effort`` effects may
    fail without failing the decision.
    """

    kind: EffectKind
    target: str
    params: dict[str, Any] = field(default_factory=dict)
    best_effort: bool = False


@dataclass(frozen=True)
class Guard:
    """Only write when the stored ``column`` is unset or not newer than ``timestamp``."""

    column: str
    timestamp: datetime


@dataclass
class Decision:
    changes: dict[str, Any] = field(default_factory=dict)
    effects: list[Effect] = field(default_factory=list)
    guard: Guard | None = None
    ignored: bool = False
    reason: str | None = None

    @classmethod
    def ignore(cls, reason: str) -> "Decision":
        return cls(ignored=True, reason=reason)


def acknowledge(effect: Effect, result: Any) -> dict[str, Any]:
    """Fold Stripe's response to an effect into the record changes."""
    if result is None:
        return {}
    if effect.kind is EffectKind.SCHEDULE_CANCELLATION:
        _, period_end = get_period(result)
        return {"current_period_end": period_end} if period_end else {}
    if effect.kind is EffectKind.CLEAR_SCHEDULED_CANCELLATION:
        return {"status": map_stripe_status(result.status).value}
    return {}


class ReconciliationEngine:
    """Computes the next record state for events and user actions."""

    def __init__(self, payment_failure_policy: PaymentFailurePolicy = strict_cancellation_policy):
        self.payment_failure_policy = payment_failure_policy
        self._handlers = {
            SubscriptionCreated: self._subscription_created,
            SubscriptionUpdated: self._subscription_updated,
            SubscriptionDeleted: self._subscription_deleted,
            InvoicePaymentSucceeded: self._payment_succeeded,
            InvoicePaymentFailed: self._payment_failed,
            CancelSubscription: self._cancel,
            ReactivateSubscription: self._reactivate,
            UpdatePaymentMethod: self._update_payment_method,
            UpdateBillingEmail: self._update_billing_email,
        }

    def reconcile(
        self,
        state: SubscriptionState | None,
        request: CanonicalEvent | UserAction,
        now: datetime | None = None,
    ) -> Decision:
        if isinstance(request, IgnoredEvent):
            logger.info("Ignoring unhandled event type %s (id=%s)", request.event_type, request.event_id)
            return Decision.ignore(f"Unhandled event type {request.event_type}")
        if state is None:
            raise NotFoundError(f"No subscription found for account {request.account_id}")
        handler = self._handlers[type(request)]
        return handler(state, request, now or utcnow())

    # --- Subscription events ---

    @staticmethod
    def _skip_subscription_event(
        state: SubscriptionState, sub: SubscriptionSnapshot, occurred_at: datetime
    ) -> str | None:
        if state.ended and state.subscription_id == sub.subscription_id:
            return f"Subscription {sub.subscription_id} already ended"
        if state.subscription_synced_at and occurred_at and occurred_at < state.subscription_synced_at:
            return f"Stale event for subscription {sub.subscription_id}"
        return None

    @staticmethod
    def _mirror(sub: SubscriptionSnapshot, occurred_at: datetime) -> dict[str, Any]:
        return {
            "status": map_stripe_status(sub.status, sub.cancel_at_period_end).value,
            "plan_id": sub.plan_id,
            "customer_id": sub.customer_id,
            "current_period_start": sub.current_period_start,
            "current_period_end": sub.current_period_end,
            "cancel_at_period_end": sub.cancel_at_period_end,
            "subscription_synced_at": occurred_at,
        }

    def _subscription_created(self, state, event: SubscriptionCreated, now) -> Decision:
        sub = event.subscription
        reason = self._skip_subscription_event(state, sub, event.occurred_at)
        if reason:
            return Decision.ignore(reason)

        changes = self._mirror(sub, event.occurred_at)
        changes["subscription_id"] = sub.subscription_id
        changes["subscription_created_at"] = sub.created_at
        if state.subscription_id != sub.subscription_id:
            # A new subscription starts without the previous one's cancellation
            changes["cancelled_at"] = None
            changes["cancel_reason"] = None
        return Decision(changes=changes, guard=Guard("subscription_synced_at", event.occurred_at))

    def _subscription_updated(self, state, event: SubscriptionUpdated, now) -> Decision:
        sub = event.subscription
        if state.subscription_id and state.subscription_id != sub.subscription_id:
            return Decision.ignore(f"Subscription {sub.subscription_id} superseded by {state.subscription_id}")
        reason = self._skip_subscription_event(state, sub, event.occurred_at)
        if reason:
            return Decision.ignore(reason)

        changes = self._mirror(sub, event.occurred_at)
        changes["subscription_id"] = sub.subscription_id
        if not sub.cancel_at_period_end and changes["status"] != SubscriptionStatus.CANCELLED.value:
            changes["cancelled_at"] = None
        return Decision(changes=changes, guard=Guard("subscription_synced_at", event.occurred_at))

    def _subscription_deleted(self, state, event: SubscriptionDeleted, now) -> Decision:
        sub = event.subscription
        if state.subscription_id and state.subscription_id != sub.subscription_id:
            return Decision.ignore(f"Subscription {sub.subscription_id} superseded by {state.subscription_id}")
        if state.ended:
            return Decision.ignore(f"Subscription {sub.subscription_id} already ended")

        # Deletion is final, so it applies even when older than the stored sync time
        synced_at = event.occurred_at
        if state.subscription_synced_at and (synced_at is None or synced_at < state.subscription_synced_at):
            synced_at = state.subscription_synced_at
        return Decision(
            changes={
                "status": SubscriptionStatus.CANCELLED.value,
                "subscription_id": sub.subscription_id,
                "customer_id": sub.customer_id,
                "cancel_at_period_end": False,
                "cancelled_at": now,
                "cancel_reason": DELETED_REASON,
                "subscription_synced_at": synced_at,
            }
        )

    # --- Invoice events ---

    @staticmethod
    def _skip_invoice_event(state: SubscriptionState, event) -> str | None:
        if not event.subscription_id:
            return f"Invoice {event.invoice_id} has no subscription"
        if state.subscription_id and state.subscription_id != event.subscription_id:
            return f"Invoice {event.invoice_id} belongs to superseded subscription {event.subscription_id}"
        if state.ended:
            return f"Subscription {event.subscription_id} already ended"
        if state.payment_synced_at and event.occurred_at and event.occurred_at < state.payment_synced_at:
            return f"Stale event for invoice {event.invoice_id}"
        return None

    def _payment_succeeded(self, state, event: InvoicePaymentSucceeded, now) -> Decision:
        reason = self._skip_invoice_event(state, event)
        if reason:
            return Decision.ignore(reason)

        status = SubscriptionStatus.CANCELLING if state.cancel_at_period_end else SubscriptionStatus.ACTIVE
        return Decision(
            changes={
                "status": status.value,
                "subscription_id": event.subscription_id,
                "customer_id": event.customer_id,
                "last_payment_date": event.invoice_created,
                "last_payment_amount": event.amount_paid,
                "invoice_pdf": event.invoice_pdf,
                "payment_synced_at": event.occurred_at,
            },
            guard=Guard("payment_synced_at", event.occurred_at),
        )

    def _payment_failed(self, state, event: InvoicePaymentFailed, now) -> Decision:
        reason = self._skip_invoice_event(state, event)
        if reason:
            return Decision.ignore(reason)

        changes = self.payment_failure_policy(state, event)
        changes.update(
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            payment_synced_at=event.occurred_at,
        )
        return Decision(changes=changes, guard=Guard("payment_synced_at", event.occurred_at))

    # --- User actions ---

    def _cancel(self, state, action: CancelSubscription, now) -> Decision:
        if not state.subscription_id:
            raise InvalidTransitionError("No active subscription ID found")
        if state.status is SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError("Subscription is already cancelled")
        if state.status is SubscriptionStatus.PENDING:
            raise InvalidTransitionError("Subscription is not active yet")

        # A repeated request keeps the original cancellation time
        cancelled_at = state.cancelled_at if state.cancel_at_period_end and state.cancelled_at else now
        return Decision(
            changes={
                "status": SubscriptionStatus.CANCELLING.value,
                "cancel_at_period_end": True,
                "cancelled_at": cancelled_at,
            },
            effects=[
                Effect(
                    EffectKind.SCHEDULE_CANCELLATION,
                    state.subscription_id,
                    {"cancel_at_period_end": True},
                )
            ],
        )

    def _reactivate(self, state, action: ReactivateSubscription, now) -> Decision:
        if not state.subscription_id:
            raise InvalidTransitionError("No active subscription ID found")
        if not state.cancel_at_period_end:
            raise InvalidTransitionError("Only subscriptions pending cancellation can be reactivated")

        return Decision(
            changes={
                "status": SubscriptionStatus.ACTIVE.value,
                "cancel_at_period_end": False,
                "cancelled_at": None,
            },
            effects=[
                Effect(
                    EffectKind.CLEAR_SCHEDULED_CANCELLATION,
                    state.subscription_id,
                    {"cancel_at_period_end": False},
                )
            ],
        )

    def _update_payment_method(self, state, action: UpdatePaymentMethod, now) -> Decision:
        if not state.subscription_id or not state.customer_id:
            raise InvalidTransitionError("Invalid subscription data")

        pm = action.payment_method_id
        return Decision(
            changes={"payment_method_id": pm, "payment_method_updated_at": now},
            effects=[
                Effect(
                    EffectKind.SET_CUSTOMER_DEFAULT_PAYMENT_METHOD,
                    state.customer_id,
                    {"invoice_settings": {"default_payment_method": pm}},
                ),
                Effect(
                    EffectKind.SET_SUBSCRIPTION_DEFAULT_PAYMENT_METHOD,
                    state.subscription_id,
                    {"default_payment_method": pm},
                ),
                Effect(EffectKind.PAY_LATEST_OPEN_INVOICE, state.customer_id, best_effort=True),
            ],
        )

    def _update_billing_email(self, state, action: UpdateBillingEmail, now) -> Decision:
        if not state.customer_id:
            raise InvalidTransitionError("No Stripe customer ID found")
        return Decision(
            effects=[Effect(EffectKind.UPDATE_CUSTOMER_EMAIL, state.customer_id, {"email": action.email})]
        )


_default_engine = ReconciliationEngine()


def reconcile(
    state: SubscriptionState | None,
    request: CanonicalEvent | UserAction,
    now: datetime | None = None,
) -> Decision:
    """Reconcile with the default (strict cancellation) payment-failure policy."""
    return _default_engine.reconcile(state, request, now)
