import pytest

from whatsmetrics.billing.actions import (
    Ignore,
    MarkCanceled,
    SendNotification,
    SyncCheckout,
    SyncSubscriptionUpdate,
    plan_reconciliation,
)
from whatsmetrics.billing.events import (
    CheckoutCompleted,
    InvoicePaid,
    MalformedEventError,
    SubscriptionUpdated,
    UnknownEvent,
    parse_event,
    subscription_fields,
)


def _event(event_type: str, data_object: dict, *, created: int = 1_700_000_000) -> dict:
    return {
        "id": "evt_123",
        "type": event_type,
        "created": created,
        "data": {"object": data_object},
    }


def test_parse_checkout_session_completed() -> None:
    event = parse_event(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": "sub_1",
                "customer_details": {"email": "buyer@example.com", "name": "Ana"},
            },
        )
    )

    assert isinstance(event, CheckoutCompleted)
    assert event.envelope.id == "evt_123"
    assert event.customer_email == "buyer@example.com"
    assert event.customer_name == "Ana"
    assert event.subscription_id == "sub_1"


def test_checkout_prefers_customer_email_field() -> None:
    event = parse_event(
        _event(
            "checkout.session.completed",
            {
                "mode": "subscription",
                "subscription": {"id": "sub_expanded"},
                "customer_email": "direct@example.com",
                "customer_details": {"email": "details@example.com"},
            },
        )
    )
    assert isinstance(event, CheckoutCompleted)
    assert event.customer_email == "direct@example.com"
    assert event.subscription_id == "sub_expanded"


def test_subscription_fields_read_item_period_and_product() -> None:
    fields = subscription_fields(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "items": {
                "data": [
                    {
                        "price": {"product": "prod_Tf0t19oIyWqfYw"},
                        "current_period_start": 1_700_000_000,
                        "current_period_end": 1_702_592_000,
                    }
                ]
            },
        }
    )

    assert fields.product_id == "prod_Tf0t19oIyWqfYw"
    assert fields.current_period_start == 1_700_000_000
    assert fields.current_period_end == 1_702_592_000
    assert fields.cancel_at_period_end is True


def test_subscription_fields_tolerate_missing_items() -> None:
    fields = subscription_fields({"id": "sub_1", "customer": {"id": "cus_1"}})
    assert fields.product_id is None
    assert fields.customer_id == "cus_1"
    assert fields.current_period_end is None
    assert fields.cancel_at_period_end is False


def test_invoice_reads_subscription_from_parent_details() -> None:
    event = parse_event(
        _event(
            "invoice.paid",
            {
                "id": "in_1",
                "billing_reason": "subscription_cycle",
                "customer_email": "payer@example.com",
                "parent": {"subscription_details": {"subscription": "sub_9"}},
                "lines": {"data": [{"pricing": {"price_details": {"product": "prod_Tf0tDmMTZeQN1O"}}}]},
            },
        )
    )
    assert isinstance(event, InvoicePaid)
    assert event.invoice.subscription_id == "sub_9"
    assert event.invoice.product_id == "prod_Tf0tDmMTZeQN1O"


def test_unknown_event_type() -> None:
    event = parse_event(_event("customer.created", {"id": "cus_1"}))
    assert isinstance(event, UnknownEvent)
    assert plan_reconciliation(event) == Ignore(reason="unhandled_event_type")


@pytest.mark.parametrize("payload", [[], {"type": "invoice.paid"}, {"id": "evt_1"}])
def test_malformed_payload_rejected(payload) -> None:
    with pytest.raises(MalformedEventError):
        parse_event(payload)


def test_plan_checkout_sync() -> None:
    event = parse_event(
        _event(
            "checkout.session.completed",
            {
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": "sub_1",
                "customer_details": {"email": "buyer@example.com"},
            },
        )
    )
    action = plan_reconciliation(event)
    assert action == SyncCheckout(
        event_created=1_700_000_000,
        subscription_id="sub_1",
        customer_id="cus_1",
        customer_email="buyer@example.com",
        customer_name=None,
    )


def test_plan_checkout_ignores_payment_mode_and_missing_email() -> None:
    payment = parse_event(_event("checkout.session.completed", {"mode": "payment", "subscription": "sub_1"}))
    assert plan_reconciliation(payment) == Ignore(reason="checkout_not_subscription_mode")

    no_email = parse_event(_event("checkout.session.completed", {"mode": "subscription", "subscription": "sub_1"}))
    assert plan_reconciliation(no_email) == Ignore(reason="checkout_missing_customer_email")


def test_plan_subscription_created_is_ignored() -> None:
    event = parse_event(_event("customer.subscription.created", {"id": "sub_1", "customer": "cus_1"}))
    assert isinstance(plan_reconciliation(event), Ignore)


def test_plan_subscription_updated() -> None:
    event = parse_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_1", "status": "past_due"})
    )
    assert isinstance(event, SubscriptionUpdated)
    action = plan_reconciliation(event)
    assert isinstance(action, SyncSubscriptionUpdate)
    assert action.subscription.status == "past_due"


def test_plan_subscription_deleted() -> None:
    event = parse_event(_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))
    assert plan_reconciliation(event) == MarkCanceled(event_created=1_700_000_000, subscription_id="sub_1")


def test_plan_invoice_paid_only_for_renewals() -> None:
    first = parse_event(
        _event(
            "invoice.paid",
            {"billing_reason": "subscription_create", "customer_email": "payer@example.com"},
        )
    )
    assert plan_reconciliation(first) == Ignore(reason="invoice_not_subscription_cycle")

    renewal = parse_event(
        _event(
            "invoice.paid",
            {
                "billing_reason": "subscription_cycle",
                "customer_email": "payer@example.com",
                "customer_name": "Bia",
                "lines": {"data": [{"price": {"product": "prod_Tf0t19oIyWqfYw"}}]},
            },
        )
    )
    assert plan_reconciliation(renewal) == SendNotification(
        to="payer@example.com",
        type="payment_success",
        plan_name="Profissional",
        customer_name="Bia",
    )


def test_plan_invoice_payment_failed() -> None:
    event = parse_event(_event("invoice.payment_failed", {"customer_email": "payer@example.com"}))
    assert plan_reconciliation(event) == SendNotification(to="payer@example.com", type="payment_failed")

    anonymous = parse_event(_event("invoice.payment_failed", {}))
    assert plan_reconciliation(anonymous) == Ignore(reason="invoice_missing_customer_email")


def test_plan_invoice_paid_unknown_product_reads_premium() -> None:
    event = parse_event(
        _event(
            "invoice.paid",
            {
                "billing_reason": "subscription_cycle",
                "customer_email": "payer@example.com",
                "lines": {"data": [{"price": {"product": "prod_retired"}}]},
            },
        )
    )
    action = plan_reconciliation(event)
    assert isinstance(action, SendNotification)
    assert action.plan_name == "Premium"
