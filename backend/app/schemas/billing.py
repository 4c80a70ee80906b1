"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class AccountRequest(BaseModel):
    """Request identifying the account by its uid."""

    uid: str = Field(min_length=1)


class PaymentSheetRequest(AccountRequest):
    """Request to start a subscription for a price."""

    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(alias="priceId", min_length=1)
    email: str | None = None


class ApplyPaymentMethodRequest(AccountRequest):
    """Request to make a payment method the subscription's default."""

    model_config = ConfigDict(populate_by_name=True)

    payment_method_id: str = Field(alias="paymentMethodId", min_length=1)


class UpdateEmailRequest(AccountRequest):
    """Request to change the billing email on the Stripe customer."""

    model_config = ConfigDict(populate_by_name=True)

    new_email: str = Field(alias="newEmail", min_length=3)


# --- Response schemas ---


class ActionResponse(BaseModel):
    """Result of a user action."""

    success: bool
    message: str | None = None
    data: dict[str, Any] | None = None


class SubscriptionResponse(BaseModel):
    """Current subscription record for an account."""

    model_config = ConfigDict(from_attributes=True)

    account_id: str
    status: str
    plan_id: str | None
    subscription_id: str | None
    customer_id: str | None
    payment_method_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    last_payment_date: datetime | None
    last_payment_amount: int | None
    last_failed_payment_date: datetime | None
