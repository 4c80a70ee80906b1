"""Payment-failure policies.

A policy decides which record fields change when an invoice tied to a
subscription fails to be paid. The reconciliation engine calls exactly one
policy for every ``invoice.payment_failed`` event.
"""

from collections.abc import Callable
from typing import Any

from app.billing.events import InvoicePaymentFailed
from app.billing.state import SubscriptionState
from app.models.subscription import SubscriptionStatus

PaymentFailurePolicy = Callable[[SubscriptionState, InvoicePaymentFailed], dict[str, Any]]


def strict_cancellation_policy(
    state: SubscriptionState, event: InvoicePaymentFailed
) -> dict[str, Any]:
    """Cancel on the first failed invoice and record when it failed."""
    return {
        "status": SubscriptionStatus.CANCELLED.value,
        "last_failed_payment_date": event.invoice_created or event.occurred_at,
    }
