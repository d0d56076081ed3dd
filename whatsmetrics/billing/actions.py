from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from whatsmetrics.billing.catalog import email_plan_name
from whatsmetrics.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionFields,
    SubscriptionUpdated,
)

NotificationType = Literal[
    "subscription_created",
    "subscription_canceled",
    "payment_failed",
    "payment_success",
]
NOTIFICATION_TYPES: frozenset[str] = frozenset(
    {"subscription_created", "subscription_canceled", "payment_failed", "payment_success"}
)


@dataclass(frozen=True)
class SyncCheckout:
    event_created: int | None
    subscription_id: str
    customer_id: str | None
    customer_email: str
    customer_name: str | None


@dataclass(frozen=True)
class SyncSubscriptionUpdate:
    event_created: int | None
    subscription: SubscriptionFields


@dataclass(frozen=True)
class MarkCanceled:
    event_created: int | None
    subscription_id: str


@dataclass(frozen=True)
class SendNotification:
    to: str
    type: NotificationType
    plan_name: str | None = None
    subscription_end: str | None = None
    customer_name: str | None = None


@dataclass(frozen=True)
class Ignore:
    reason: str


ReconciliationAction = SyncCheckout | SyncSubscriptionUpdate | MarkCanceled | SendNotification | Ignore


def plan_reconciliation(event: BillingEvent) -> ReconciliationAction:
    """Decide what an event should do, without performing any I/O."""
    created = event.envelope.created

    if isinstance(event, CheckoutCompleted):
        if event.mode != "subscription":
            return Ignore(reason="checkout_not_subscription_mode")
        if not event.subscription_id:
            return Ignore(reason="checkout_missing_subscription")
        if not event.customer_email:
            return Ignore(reason="checkout_missing_customer_email")
        return SyncCheckout(
            event_created=created,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            customer_email=event.customer_email,
            customer_name=event.customer_name,
        )

    if isinstance(event, SubscriptionCreated):
        return Ignore(reason="subscription_created_synced_by_checkout")

    if isinstance(event, SubscriptionUpdated):
        if not event.subscription.subscription_id or not event.subscription.customer_id:
            return Ignore(reason="subscription_missing_identifiers")
        return SyncSubscriptionUpdate(event_created=created, subscription=event.subscription)

    if isinstance(event, SubscriptionDeleted):
        if not event.subscription.subscription_id:
            return Ignore(reason="subscription_missing_identifiers")
        return MarkCanceled(event_created=created, subscription_id=event.subscription.subscription_id)

    if isinstance(event, InvoicePaid):
        # The first invoice of a subscription is announced by checkout completion.
        if event.invoice.billing_reason != "subscription_cycle":
            return Ignore(reason="invoice_not_subscription_cycle")
        if not event.invoice.customer_email:
            return Ignore(reason="invoice_missing_customer_email")
        return SendNotification(
            to=event.invoice.customer_email,
            type="payment_success",
            plan_name=email_plan_name(event.invoice.product_id),
            customer_name=event.invoice.customer_name,
        )

    if isinstance(event, InvoicePaymentFailed):
        if not event.invoice.customer_email:
            return Ignore(reason="invoice_missing_customer_email")
        return SendNotification(
            to=event.invoice.customer_email,
            type="payment_failed",
            customer_name=event.invoice.customer_name,
        )

    return Ignore(reason="unhandled_event_type")
