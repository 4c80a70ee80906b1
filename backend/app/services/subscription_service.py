"""Subscription service — event and user-action handlers.

Each handler loads the record state, asks the reconciliation engine for a
decision, runs the required Stripe effects and then persists the resulting
partial changes. Nothing is written when an effect fails, so a redelivered
event or a repeated request completes the work.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

from app.billing.effects import EffectOutcome, run_effects
from app.billing.events import IgnoredEvent, get_period, normalize_event
from app.billing.reconciliation import (
    CancelSubscription,
    Decision,
    ReactivateSubscription,
    UpdateBillingEmail,
    UpdatePaymentMethod,
    acknowledge,
    reconcile,
)
from app.billing.state import SubscriptionState, map_stripe_status
from app.billing.stripe_client import StripeGateway
from app.exceptions import InvalidTransitionError, NotFoundError
from app.models.subscription import SubscriptionStatus
from app.services.record_store import RecordStore

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELLING,
    SubscriptionStatus.PAST_DUE,
)


@dataclass
class ActionResult:
    """Primary outcome of a user action plus any best-effort sub-effects."""

    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    sub_effects: list[EffectOutcome] = field(default_factory=list)


async def _load_state(store: RecordStore, account_id: str) -> SubscriptionState:
    state = await store.get_state(account_id)
    if state is None:
        logger.warning("No subscription found for account %s", account_id)
        raise NotFoundError("No subscription found")
    return state


async def _apply(
    store: RecordStore,
    gateway: StripeGateway,
    account_id: str,
    decision: Decision,
) -> tuple[dict[str, Any], list[EffectOutcome]]:
    """Run the decision's effects, then persist changes including acknowledgements."""
    outcomes = await run_effects(gateway, decision.effects)
    changes = dict(decision.changes)
    for outcome in outcomes:
        if outcome.applied:
            changes.update(acknowledge(outcome.effect, outcome.result))
    await store.update(account_id, changes, guard=decision.guard)
    return changes, outcomes


# --- Webhook events ---


async def process_event(
    store: RecordStore, gateway: StripeGateway, event: stripe.Event
) -> Decision:
    """Normalize a verified Stripe event and reconcile it into the record."""
    canonical = await normalize_event(event, gateway)
    if isinstance(canonical, IgnoredEvent):
        return reconcile(None, canonical)

    state = await store.get_state(canonical.account_id)
    decision = reconcile(state, canonical)
    if decision.ignored:
        logger.info("Event %s ignored for account %s: %s", event.id, canonical.account_id, decision.reason)
        return decision

    written = await store.update(canonical.account_id, decision.changes, guard=decision.guard)
    if not written:
        logger.info(
            "Event %s for account %s lost to a newer concurrent write",
            event.id,
            canonical.account_id,
        )
    return decision


# --- User actions ---


async def cancel_subscription(
    store: RecordStore, gateway: StripeGateway, account_id: str
) -> ActionResult:
    """Schedule cancellation at the end of the current billing period."""
    state = await _load_state(store, account_id)
    decision = reconcile(state, CancelSubscription(account_id))
    changes, _ = await _apply(store, gateway, account_id, decision)
    logger.info("Subscription %s scheduled for cancellation", state.subscription_id)
    return ActionResult(
        message="Subscription will be cancelled at the end of the billing period",
        data={
            "status": changes["status"],
            "currentPeriodEnd": changes.get("current_period_end", state.current_period_end),
        },
    )


async def reactivate_subscription(
    store: RecordStore, gateway: StripeGateway, account_id: str
) -> ActionResult:
    """Clear a scheduled cancellation."""
    state = await _load_state(store, account_id)
    decision = reconcile(state, ReactivateSubscription(account_id))
    changes, outcomes = await _apply(store, gateway, account_id, decision)
    _, period_end = get_period(outcomes[0].result)
    logger.info("Subscription %s reactivated", state.subscription_id)
    return ActionResult(
        message="Subscription has been successfully reactivated",
        data={"status": changes["status"], "currentPeriodEnd": period_end},
    )


async def apply_payment_method(
    store: RecordStore, gateway: StripeGateway, account_id: str, payment_method_id: str
) -> ActionResult:
    """Make a payment method the default and try to settle the latest open invoice.

    The invoice payment is best-effort: its outcome is reported separately and
    never fails the request.
    """
    state = await _load_state(store, account_id)
    decision = reconcile(state, UpdatePaymentMethod(account_id, payment_method_id))
    _, outcomes = await _apply(store, gateway, account_id, decision)
    subscription = outcomes[1].result
    logger.info("Payment method updated for subscription %s", state.subscription_id)
    return ActionResult(
        message="Payment method updated successfully",
        data={
            "status": map_stripe_status(subscription.status, subscription.cancel_at_period_end).value,
            "paymentMethodId": payment_method_id,
        },
        sub_effects=[o for o in outcomes if o.effect.best_effort],
    )


async def update_billing_email(
    store: RecordStore, gateway: StripeGateway, account_id: str, email: str
) -> ActionResult:
    """Change the Stripe customer's email. The record itself is untouched."""
    state = await _load_state(store, account_id)
    decision = reconcile(state, UpdateBillingEmail(account_id, email))
    _, outcomes = await _apply(store, gateway, account_id, decision)
    customer = outcomes[0].result
    logger.info("Stripe email updated for customer %s", state.customer_id)
    return ActionResult(data={"stripeEmail": customer.email})


def _client_secret(subscription) -> str | None:
    """Client secret of the subscription's first invoice."""
    invoice = getattr(subscription, "latest_invoice", None)
    if invoice is None or isinstance(invoice, str):
        return None
    confirmation = getattr(invoice, "confirmation_secret", None)
    if confirmation is not None:
        return confirmation.client_secret
    payment_intent = getattr(invoice, "payment_intent", None)
    return getattr(payment_intent, "client_secret", None)


async def create_payment_sheet(
    store: RecordStore,
    gateway: StripeGateway,
    account_id: str,
    price_id: str,
    email: str | None,
) -> ActionResult:
    """Start a new subscription and return what the client needs to pay for it.

    The record is written as ``pending`` before the subscription exists so the
    creation webhook always finds it.
    """
    state = await store.get_state(account_id)
    if state is not None and state.status in _LIVE_STATUSES:
        raise InvalidTransitionError("Account already has an active subscription")

    if state is not None and state.customer_id:
        customer_id = state.customer_id
    else:
        customer = await gateway.create_customer(account_id, email)
        customer_id = customer.id

    pending = {
        "status": SubscriptionStatus.PENDING.value,
        "customer_id": customer_id,
        "subscription_id": None,
        "plan_id": None,
        "current_period_start": None,
        "current_period_end": None,
        "cancel_at_period_end": False,
        # The new subscription starts without the previous one's cancellation
        "cancelled_at": None,
        "cancel_reason": None,
    }
    if state is None:
        await store.set(account_id, pending)
    else:
        await store.update(account_id, pending)

    ephemeral_key = await gateway.create_ephemeral_key(customer_id)
    subscription = await gateway.create_subscription(customer_id, price_id)
    await store.update(account_id, {"subscription_id": subscription.id, "plan_id": price_id})
    logger.info("Payment sheet created for account %s (subscription %s)", account_id, subscription.id)

    return ActionResult(
        data={
            "paymentIntent": _client_secret(subscription),
            "ephemeralKey": ephemeral_key.secret,
            "customer": customer_id,
            "subscriptionId": subscription.id,
        }
    )


async def create_setup_intent(
    store: RecordStore, gateway: StripeGateway, account_id: str
) -> ActionResult:
    """Create a SetupIntent for collecting a replacement payment method."""
    state = await _load_state(store, account_id)
    if not state.customer_id:
        raise InvalidTransitionError("No Stripe customer ID found")
    setup_intent = await gateway.create_setup_intent(state.customer_id)
    logger.info("Setup intent %s created for account %s", setup_intent.id, account_id)
    return ActionResult(
        data={"clientSecret": setup_intent.client_secret, "customerId": state.customer_id}
    )
