"""Billing dependencies — build the Stripe gateway and record store per request."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.stripe_client import StripeGateway
from app.config import Settings, settings
from app.database import get_db
from app.services.record_store import RecordStore


def get_settings() -> Settings:
    """Return the process-wide settings (overridable in tests)."""
    return settings


def get_gateway(config: Settings = Depends(get_settings)) -> StripeGateway:
    """Create a Stripe gateway configured from the injected settings."""
    return StripeGateway(config)


def get_record_store(db: AsyncSession = Depends(get_db)) -> RecordStore:
    """Wrap the request's DB session in a record store."""
    return RecordStore(db)
