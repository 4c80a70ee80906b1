"""Subscription model — Stripe billing state per account."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle states of a subscription record."""

    PENDING = "pending"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class Subscription(TimestampMixin, Base):
    """One subscription record per account, keyed by the account identifier."""

    __tablename__ = "subscriptions"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionStatus.PENDING.value
    )
    plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Stripe identifiers
    subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Billing period
    subscription_created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Payments
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_payment_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minor units
    invoice_pdf: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    last_failed_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Source timestamps of the last applied event, per field group
    subscription_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payment_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Subscription(account_id={self.account_id}, "
            f"subscription_id={self.subscription_id}, status={self.status})>"
        )
