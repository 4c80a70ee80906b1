"""Tests for subscription event and action handlers with a mocked Stripe gateway."""

from datetime import datetime

import pytest

from app.billing.events import ts_to_naive
from app.exceptions import (
    AccountResolutionError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamError,
)
from app.services.record_store import RecordStore
from app.services.subscription_service import (
    apply_payment_method,
    cancel_subscription,
    create_payment_sheet,
    create_setup_intent,
    process_event,
    reactivate_subscription,
    update_billing_email,
)
from stripe_factories import (
    T0,
    T1,
    StripeObj,
    make_customer,
    make_event,
    make_invoice,
    make_stripe_sub,
)


@pytest.fixture(autouse=True)
def _customer(gateway):
    gateway.retrieve_customer.return_value = make_customer()


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


class TestProcessEvent:
    async def test_creation_activates_pending_record(self, store: RecordStore, gateway, create_record):
        await create_record("acct_1", status="pending", customer_id="cus_C1")
        event = make_event("customer.subscription.created", make_stripe_sub(price_id="P1"))

        await process_event(store, gateway, event)

        record = await store.get("acct_1")
        assert record.status == "active"
        assert record.plan_id == "P1"
        assert record.subscription_id == "sub_S1"
        assert record.current_period_start == ts_to_naive(T0)
        assert record.current_period_end == ts_to_naive(T1)
        assert record.cancel_at_period_end is False

    async def test_duplicate_delivery_is_idempotent(self, store: RecordStore, gateway, create_record):
        await create_record("acct_1", status="pending", customer_id="cus_C1")
        event = make_event("customer.subscription.created", make_stripe_sub())

        await process_event(store, gateway, event)
        first = (await store.get_state("acct_1"))
        await process_event(store, gateway, event)
        second = (await store.get_state("acct_1"))

        assert first == second

    async def test_out_of_order_update_ignored(self, store: RecordStore, gateway, active_record):
        newer = make_event("customer.subscription.updated", make_stripe_sub(price_id="P_NEW"), created=T1)
        older = make_event("customer.subscription.updated", make_stripe_sub(price_id="P_OLD"), created=T0)

        await process_event(store, gateway, newer)
        decision = await process_event(store, gateway, older)

        assert decision.ignored
        assert (await store.get("acct_1")).plan_id == "P_NEW"

    async def test_payment_failed_cancels(self, store: RecordStore, gateway, active_record):
        event = make_event("invoice.payment_failed", make_invoice(created=T1), created=T1)

        await process_event(store, gateway, event)

        record = await store.get("acct_1")
        assert record.status == "cancelled"
        assert record.last_failed_payment_date == ts_to_naive(T1)

    async def test_payment_succeeded_records_payment(self, store: RecordStore, gateway, active_record):
        event = make_event("invoice.payment_succeeded", make_invoice(amount=2500))

        await process_event(store, gateway, event)

        record = await store.get("acct_1")
        assert record.status == "active"
        assert record.last_payment_amount == 2500
        assert record.last_payment_date == ts_to_naive(T0)

    async def test_deletion_cancels(self, store: RecordStore, gateway, active_record):
        event = make_event("customer.subscription.deleted", make_stripe_sub(status="canceled"))

        await process_event(store, gateway, event)

        record = await store.get("acct_1")
        assert record.status == "cancelled"
        assert record.cancel_reason == "Subscription deleted"
        assert isinstance(record.cancelled_at, datetime)

    async def test_missing_account_metadata_leaves_record_untouched(
        self, store: RecordStore, gateway, active_record
    ):
        gateway.retrieve_customer.return_value = make_customer(uid=None)
        before = await store.get_state("acct_1")
        event = make_event("invoice.payment_failed", make_invoice())

        with pytest.raises(AccountResolutionError):
            await process_event(store, gateway, event)

        assert await store.get_state("acct_1") == before

    async def test_missing_record_raises_not_found(self, store: RecordStore, gateway):
        event = make_event("customer.subscription.updated", make_stripe_sub())
        with pytest.raises(NotFoundError):
            await process_event(store, gateway, event)

    async def test_unhandled_event_is_noop(self, store: RecordStore, gateway, active_record):
        decision = await process_event(store, gateway, make_event("charge.refunded", {"id": "ch_1"}))
        assert decision.ignored
        gateway.retrieve_customer.assert_not_awaited()


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------


class TestCancelSubscription:
    async def test_schedules_cancellation(self, store: RecordStore, gateway, active_record):
        gateway.update_subscription.return_value = make_stripe_sub(
            cancel_at_period_end=True, period_end=1709251200
        )

        result = await cancel_subscription(store, gateway, "acct_1")

        gateway.update_subscription.assert_awaited_once_with("sub_S1", {"cancel_at_period_end": True})
        record = await store.get("acct_1")
        assert record.status == "cancelling"
        assert record.cancel_at_period_end is True
        assert record.cancelled_at is not None
        assert record.current_period_end == datetime(2024, 3, 1)
        assert result.data["status"] == "cancelling"
        assert result.data["currentPeriodEnd"] == datetime(2024, 3, 1)

    async def test_rejected_without_subscription_id(self, store: RecordStore, gateway, create_record):
        await create_record("acct_1", status="pending", customer_id="cus_C1")
        with pytest.raises(InvalidTransitionError):
            await cancel_subscription(store, gateway, "acct_1")
        gateway.update_subscription.assert_not_awaited()

    async def test_missing_record(self, store: RecordStore, gateway):
        with pytest.raises(NotFoundError):
            await cancel_subscription(store, gateway, "nobody")

    async def test_stripe_failure_leaves_record_untouched(self, store: RecordStore, gateway, active_record):
        gateway.update_subscription.side_effect = UpstreamError("timeout", retryable=True)
        before = await store.get_state("acct_1")

        with pytest.raises(UpstreamError):
            await cancel_subscription(store, gateway, "acct_1")

        assert await store.get_state("acct_1") == before


class TestReactivateSubscription:
    async def test_reactivates(self, store: RecordStore, gateway, create_record):
        await create_record(
            "acct_1",
            status="cancelling",
            subscription_id="sub_S1",
            customer_id="cus_C1",
            cancel_at_period_end=True,
            cancelled_at=datetime(2024, 1, 10),
        )
        gateway.update_subscription.return_value = make_stripe_sub(status="active")

        result = await reactivate_subscription(store, gateway, "acct_1")

        gateway.update_subscription.assert_awaited_once_with("sub_S1", {"cancel_at_period_end": False})
        record = await store.get("acct_1")
        assert record.status == "active"
        assert record.cancel_at_period_end is False
        assert record.cancelled_at is None
        assert result.data["currentPeriodEnd"] == ts_to_naive(T1)

    async def test_rejected_when_not_cancelling(self, store: RecordStore, gateway, active_record):
        with pytest.raises(InvalidTransitionError):
            await reactivate_subscription(store, gateway, "acct_1")


class TestApplyPaymentMethod:
    async def test_updates_defaults_and_pays_open_invoice(self, store: RecordStore, gateway, active_record):
        gateway.update_subscription.return_value = make_stripe_sub(status="past_due")
        gateway.list_invoices.return_value = [make_invoice("in_open", status="open")]
        gateway.pay_invoice.return_value = make_invoice("in_open")

        result = await apply_payment_method(store, gateway, "acct_1", "pm_new")

        gateway.update_customer.assert_awaited_once_with(
            "cus_C1", {"invoice_settings": {"default_payment_method": "pm_new"}}
        )
        gateway.update_subscription.assert_awaited_once_with("sub_S1", {"default_payment_method": "pm_new"})
        gateway.pay_invoice.assert_awaited_once_with("in_open")
        assert result.data == {"status": "past_due", "paymentMethodId": "pm_new"}
        assert [o.status for o in result.sub_effects] == ["applied"]

        record = await store.get("acct_1")
        assert record.payment_method_id == "pm_new"
        assert record.payment_method_updated_at is not None

    async def test_invoice_failure_does_not_fail_request(self, store: RecordStore, gateway, active_record):
        gateway.update_subscription.return_value = make_stripe_sub()
        gateway.list_invoices.return_value = [make_invoice(status="open")]
        gateway.pay_invoice.side_effect = UpstreamError("Your card was declined.")

        result = await apply_payment_method(store, gateway, "acct_1", "pm_new")

        assert result.sub_effects[0].status == "failed"
        assert (await store.get("acct_1")).payment_method_id == "pm_new"

    @pytest.mark.parametrize(
        "stripe_status,cancel_at_period_end,expected",
        [("trialing", False, "active"), ("unpaid", False, "past_due"), ("active", True, "cancelling")],
    )
    async def test_reports_record_status(
        self, store: RecordStore, gateway, active_record, stripe_status, cancel_at_period_end, expected
    ):
        gateway.update_subscription.return_value = make_stripe_sub(
            status=stripe_status, cancel_at_period_end=cancel_at_period_end
        )
        gateway.list_invoices.return_value = []

        result = await apply_payment_method(store, gateway, "acct_1", "pm_new")

        assert result.data["status"] == expected

    async def test_requires_subscription(self, store: RecordStore, gateway, create_record):
        await create_record("acct_1", status="pending", customer_id="cus_C1")
        with pytest.raises(InvalidTransitionError):
            await apply_payment_method(store, gateway, "acct_1", "pm_new")


class TestUpdateBillingEmail:
    async def test_updates_customer_only(self, store: RecordStore, gateway, active_record):
        gateway.update_customer.return_value = make_customer(email="new@test.com")
        before = await store.get_state("acct_1")

        result = await update_billing_email(store, gateway, "acct_1", "new@test.com")

        gateway.update_customer.assert_awaited_once_with("cus_C1", {"email": "new@test.com"})
        assert result.data == {"stripeEmail": "new@test.com"}
        assert await store.get_state("acct_1") == before


class TestPaymentSheet:
    async def test_creates_pending_record(self, store: RecordStore, gateway):
        gateway.create_customer.return_value = make_customer("cus_NEW")
        gateway.create_ephemeral_key.return_value = StripeObj(secret="ek_secret")
        subscription = make_stripe_sub(sub_id="sub_NEW", status="incomplete")
        subscription.latest_invoice = StripeObj(confirmation_secret=StripeObj(client_secret="pi_secret"))
        gateway.create_subscription.return_value = subscription

        result = await create_payment_sheet(store, gateway, "acct_9", "price_P1", "a@test.com")

        gateway.create_customer.assert_awaited_once_with("acct_9", "a@test.com")
        gateway.create_subscription.assert_awaited_once_with("cus_NEW", "price_P1")
        assert result.data == {
            "paymentIntent": "pi_secret",
            "ephemeralKey": "ek_secret",
            "customer": "cus_NEW",
            "subscriptionId": "sub_NEW",
        }
        record = await store.get("acct_9")
        assert record.status == "pending"
        assert record.customer_id == "cus_NEW"
        assert record.subscription_id == "sub_NEW"

    async def test_reuses_customer_after_cancellation(self, store: RecordStore, gateway, create_record):
        await create_record(
            "acct_1", status="cancelled", subscription_id="sub_OLD", customer_id="cus_C1"
        )
        gateway.create_ephemeral_key.return_value = StripeObj(secret="ek")
        gateway.create_subscription.return_value = make_stripe_sub(sub_id="sub_NEW")

        await create_payment_sheet(store, gateway, "acct_1", "price_P1", None)

        gateway.create_customer.assert_not_awaited()
        record = await store.get("acct_1")
        assert record.status == "pending"
        assert record.subscription_id == "sub_NEW"

    async def test_resubscribe_after_deletion_starts_fresh_lifecycle(
        self, store: RecordStore, gateway, create_record
    ):
        await create_record(
            "acct_1", status="active", plan_id="price_P1", subscription_id="sub_OLD", customer_id="cus_C1"
        )
        await process_event(
            store, gateway,
            make_event("customer.subscription.deleted", make_stripe_sub(sub_id="sub_OLD", status="canceled")),
        )

        gateway.create_ephemeral_key.return_value = StripeObj(secret="ek")
        gateway.create_subscription.return_value = make_stripe_sub(sub_id="sub_NEW", status="incomplete")
        await create_payment_sheet(store, gateway, "acct_1", "price_P1", None)

        record = await store.get("acct_1")
        assert record.cancelled_at is None
        assert record.cancel_reason is None

        await process_event(
            store, gateway,
            make_event("customer.subscription.created", make_stripe_sub(sub_id="sub_NEW"), created=T1),
        )
        record = await store.get("acct_1")
        assert record.status == "active"
        assert record.cancelled_at is None

        await process_event(
            store, gateway,
            make_event("invoice.payment_failed", make_invoice(subscription="sub_NEW", created=T1), created=T1),
        )
        assert (await store.get("acct_1")).status == "cancelled"

        later = T1 + 3600
        decision = await process_event(
            store, gateway,
            make_event("invoice.payment_succeeded", make_invoice(subscription="sub_NEW", created=later), created=later),
        )
        assert not decision.ignored
        assert (await store.get("acct_1")).status == "active"

    async def test_rejected_with_live_subscription(self, store: RecordStore, gateway, active_record):
        with pytest.raises(InvalidTransitionError):
            await create_payment_sheet(store, gateway, "acct_1", "price_P1", None)


class TestSetupIntent:
    async def test_creates_setup_intent(self, store: RecordStore, gateway, active_record):
        gateway.create_setup_intent.return_value = StripeObj(id="seti_1", client_secret="seti_secret")

        result = await create_setup_intent(store, gateway, "acct_1")

        gateway.create_setup_intent.assert_awaited_once_with("cus_C1")
        assert result.data == {"clientSecret": "seti_secret", "customerId": "cus_C1"}
