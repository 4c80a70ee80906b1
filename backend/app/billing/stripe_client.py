"""Async Stripe API wrapper — the only module that talks to Stripe."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import stripe
from stripe import StripeClient

from app.config import Settings
from app.exceptions import UpstreamError

logger = logging.getLogger(__name__)


@contextmanager
def _stripe_errors(action: str) -> Iterator[None]:
    """Translate Stripe SDK errors into UpstreamError.

    Connection failures, timeouts and rate limits are retryable; everything
    else is reported with Stripe's own message.
    """
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        logger.warning("Stripe %s failed (retryable): %s", action, e)
        raise UpstreamError(e.user_message or str(e), retryable=True) from e
    except stripe.StripeError as e:
        logger.warning("Stripe %s failed: %s", action, e)
        raise UpstreamError(e.user_message or str(e)) from e


class StripeGateway:
    """Customer, subscription, invoice and payment-method operations."""

    def __init__(self, config: Settings, client: StripeClient | None = None):
        self.config = config
        self.client = client or StripeClient(
            config.stripe_secret_key,
            http_client=stripe.HTTPXClient(),
        )

    # --- Customers ---

    async def retrieve_customer(self, customer_id: str) -> stripe.Customer:
        with _stripe_errors("customer retrieve"):
            return await self.client.v1.customers.retrieve_async(customer_id)

    async def create_customer(self, account_id: str, email: str | None) -> stripe.Customer:
        """Create a Stripe customer carrying the account identifier in its metadata."""
        logger.info("Creating Stripe customer for account %s (%s)", account_id, email)
        params = {
            "name": f"User-{account_id}",
            "metadata": {self.config.stripe_account_metadata_key: account_id},
        }
        if email:
            params["email"] = email
        with _stripe_errors("customer create"):
            customer = await self.client.v1.customers.create_async(params=params)
        logger.info("Created Stripe customer %s for account %s", customer.id, account_id)
        return customer

    async def update_customer(self, customer_id: str, params: dict) -> stripe.Customer:
        with _stripe_errors("customer update"):
            return await self.client.v1.customers.update_async(customer_id, params=params)

    # --- Subscriptions ---

    async def create_subscription(self, customer_id: str, price_id: str) -> stripe.Subscription:
        """Create an incomplete subscription whose first invoice is paid client-side."""
        logger.info("Creating subscription for customer %s, price %s", customer_id, price_id)
        with _stripe_errors("subscription create"):
            return await self.client.v1.subscriptions.create_async(
                params={
                    "customer": customer_id,
                    "items": [{"price": price_id}],
                    "payment_behavior": "default_incomplete",
                    "expand": ["latest_invoice.confirmation_secret"],
                }
            )

    async def update_subscription(self, subscription_id: str, params: dict) -> stripe.Subscription:
        with _stripe_errors("subscription update"):
            return await self.client.v1.subscriptions.update_async(subscription_id, params=params)

    # --- Invoices ---

    async def list_invoices(self, customer_id: str, limit: int = 1) -> list[stripe.Invoice]:
        with _stripe_errors("invoice list"):
            invoices = await self.client.v1.invoices.list_async(
                params={"customer": customer_id, "limit": limit}
            )
        return list(invoices.data)

    async def pay_invoice(self, invoice_id: str) -> stripe.Invoice:
        with _stripe_errors("invoice pay"):
            return await self.client.v1.invoices.pay_async(invoice_id)

    # --- Client-side payment setup ---

    async def create_setup_intent(self, customer_id: str) -> stripe.SetupIntent:
        """Create an off-session card SetupIntent for collecting a new payment method."""
        with _stripe_errors("setup intent create"):
            return await self.client.v1.setup_intents.create_async(
                params={
                    "customer": customer_id,
                    "payment_method_types": ["card"],
                    "usage": "off_session",
                }
            )

    async def create_ephemeral_key(self, customer_id: str) -> stripe.EphemeralKey:
        with _stripe_errors("ephemeral key create"):
            return await self.client.v1.ephemeral_keys.create_async(
                params={"customer": customer_id},
                options={"stripe_version": self.config.stripe_api_version},
            )

    # --- Webhooks ---

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous)."""
        return self.client.construct_event(
            payload, sig_header, self.config.stripe_webhook_secret
        )
