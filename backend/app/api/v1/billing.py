"""Billing API endpoints — user-initiated subscription actions."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_gateway, get_record_store
from app.billing.effects import EffectOutcome
from app.billing.stripe_client import StripeGateway
from app.exceptions import NotFoundError
from app.schemas.billing import (
    AccountRequest,
    ActionResponse,
    ApplyPaymentMethodRequest,
    PaymentSheetRequest,
    SubscriptionResponse,
    UpdateEmailRequest,
)
from app.services import subscription_service
from app.services.record_store import RecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _invoice_payment(outcome: EffectOutcome) -> dict:
    """Report the best-effort invoice payment without affecting the action's result."""
    report = {"status": outcome.status}
    if outcome.result is not None:
        report["invoiceId"] = outcome.result.id
    if outcome.error:
        report["error"] = outcome.error
    return report


@router.get("/subscription/{uid}", response_model=SubscriptionResponse)
async def get_subscription(
    uid: str,
    store: RecordStore = Depends(get_record_store),
) -> SubscriptionResponse:
    """Get the current subscription record for an account."""
    record = await store.get(uid)
    if record is None:
        raise NotFoundError("No subscription found")
    return SubscriptionResponse.model_validate(record)


@router.post("/payment-sheet", response_model=ActionResponse, response_model_exclude_none=True)
async def payment_sheet(
    body: PaymentSheetRequest,
    db: AsyncSession = Depends(get_db),
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Create a customer (if needed) and an incomplete subscription for the payment sheet."""
    result = await subscription_service.create_payment_sheet(
        store, gateway, body.uid, body.price_id, body.email
    )
    await db.commit()
    return ActionResponse(success=True, data=result.data)


@router.post("/cancel-subscription", response_model=ActionResponse, response_model_exclude_none=True)
async def cancel_subscription(
    body: AccountRequest,
    db: AsyncSession = Depends(get_db),
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Cancel the subscription at the end of the billing period."""
    result = await subscription_service.cancel_subscription(store, gateway, body.uid)
    await db.commit()
    return ActionResponse(success=True, message=result.message, data=result.data)


@router.post("/reactivate-subscription", response_model=ActionResponse, response_model_exclude_none=True)
async def reactivate_subscription(
    body: AccountRequest,
    db: AsyncSession = Depends(get_db),
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Undo a scheduled cancellation."""
    result = await subscription_service.reactivate_subscription(store, gateway, body.uid)
    await db.commit()
    return ActionResponse(success=True, message=result.message, data=result.data)


@router.post("/payment-method/setup-intent", response_model=ActionResponse, response_model_exclude_none=True)
async def setup_intent(
    body: AccountRequest,
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Create a SetupIntent so the client can collect a new card."""
    result = await subscription_service.create_setup_intent(store, gateway, body.uid)
    return ActionResponse(success=True, data=result.data)


@router.post("/apply-payment-method", response_model=ActionResponse, response_model_exclude_none=True)
async def apply_payment_method(
    body: ApplyPaymentMethodRequest,
    db: AsyncSession = Depends(get_db),
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Set the default payment method and retry the latest open invoice."""
    result = await subscription_service.apply_payment_method(
        store, gateway, body.uid, body.payment_method_id
    )
    await db.commit()
    data = dict(result.data)
    for outcome in result.sub_effects:
        data["invoicePayment"] = _invoice_payment(outcome)
    return ActionResponse(success=True, message=result.message, data=data)


@router.post("/update-email", response_model=ActionResponse, response_model_exclude_none=True)
async def update_email(
    body: UpdateEmailRequest,
    store: RecordStore = Depends(get_record_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> ActionResponse:
    """Change the billing email on the Stripe customer."""
    result = await subscription_service.update_billing_email(store, gateway, body.uid, body.new_email)
    return ActionResponse(success=True, data=result.data)
