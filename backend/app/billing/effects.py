"""Execute reconciliation effects against Stripe."""

import logging
from dataclasses import dataclass
from typing import Any

from app.billing.reconciliation import Effect, EffectKind
from app.billing.stripe_client import StripeGateway
from app.exceptions import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class EffectOutcome:
    """Result of one effect: ``applied``, ``skipped`` (nothing to do) or ``failed``."""

    effect: Effect
    status: str
    result: Any = None
    error: str | None = None

    @property
    def applied(self) -> bool:
        return self.status == "applied"


async def _pay_latest_open_invoice(gateway: StripeGateway, customer_id: str):
    invoices = await gateway.list_invoices(customer_id, limit=1)
    latest = invoices[0] if invoices else None
    if latest is None or latest.status != "open":
        return None
    paid = await gateway.pay_invoice(latest.id)
    logger.info("Invoice %s paid for customer %s", paid.id, customer_id)
    return paid


async def execute_effect(gateway: StripeGateway, effect: Effect) -> Any:
    """Perform a single effect and return Stripe's response (None when skipped)."""
    if effect.kind in (
        EffectKind.SCHEDULE_CANCELLATION,
        EffectKind.CLEAR_SCHEDULED_CANCELLATION,
        EffectKind.SET_SUBSCRIPTION_DEFAULT_PAYMENT_METHOD,
    ):
        return await gateway.update_subscription(effect.target, effect.params)
    if effect.kind in (
        EffectKind.SET_CUSTOMER_DEFAULT_PAYMENT_METHOD,
        EffectKind.UPDATE_CUSTOMER_EMAIL,
    ):
        return await gateway.update_customer(effect.target, effect.params)
    if effect.kind is EffectKind.PAY_LATEST_OPEN_INVOICE:
        return await _pay_latest_open_invoice(gateway, effect.target)
    raise ValueError(f"Unknown effect kind: {effect.kind}")


async def run_effects(gateway: StripeGateway, effects: list[Effect]) -> list[EffectOutcome]:
    """Run effects in order.

    A failing required effect propagates and stops the run. A failing
    best-effort effect is logged and reported in its outcome.
    """
    outcomes: list[EffectOutcome] = []
    for effect in effects:
        try:
            result = await execute_effect(gateway, effect)
        except UpstreamError as e:
            if not effect.best_effort:
                raise
            logger.error("Best-effort %s for %s failed: %s", effect.kind.value, effect.target, e.message)
            outcomes.append(EffectOutcome(effect, "failed", error=e.message))
            continue
        outcomes.append(EffectOutcome(effect, "applied" if result is not None else "skipped", result))
    return outcomes
