"""Typed views over Stripe webhook events.

``parse_event`` turns the raw event envelope into exactly one variant of
``BillingEvent``. Variants only carry the fields the reconciler reads, so the
planning step can be tested without Stripe objects or HTTP.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CUSTOMER_SUBSCRIPTION_CREATED = "customer.subscription.created"
CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class EventEnvelope:
    id: str
    type: str
    created: int | None


@dataclass(frozen=True)
class SubscriptionFields:
    subscription_id: str | None
    customer_id: str | None
    status: str | None
    product_id: str | None
    current_period_start: int | None
    current_period_end: int | None
    cancel_at_period_end: bool


@dataclass(frozen=True)
class CheckoutCompleted:
    envelope: EventEnvelope
    session_id: str | None
    mode: str | None
    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    subscription_id: str | None


@dataclass(frozen=True)
class SubscriptionCreated:
    envelope: EventEnvelope
    subscription: SubscriptionFields


@dataclass(frozen=True)
class SubscriptionUpdated:
    envelope: EventEnvelope
    subscription: SubscriptionFields


@dataclass(frozen=True)
class SubscriptionDeleted:
    envelope: EventEnvelope
    subscription: SubscriptionFields


@dataclass(frozen=True)
class InvoiceFields:
    invoice_id: str | None
    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    subscription_id: str | None
    billing_reason: str | None
    product_id: str | None
    attempt_count: int | None


@dataclass(frozen=True)
class InvoicePaid:
    envelope: EventEnvelope
    invoice: InvoiceFields


@dataclass(frozen=True)
class InvoicePaymentFailed:
    envelope: EventEnvelope
    invoice: InvoiceFields


@dataclass(frozen=True)
class UnknownEvent:
    envelope: EventEnvelope


BillingEvent = (
    CheckoutCompleted
    | SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | InvoicePaid
    | InvoicePaymentFailed
    | UnknownEvent
)


class MalformedEventError(ValueError):
    pass


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, Mapping):
        return _text(value.get("id"))
    return _text(value)


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _first_item(container: Any) -> Mapping[str, Any]:
    data = _mapping(container).get("data")
    if isinstance(data, list) and data:
        return _mapping(data[0])
    return {}


def _line_product_id(line: Mapping[str, Any]) -> str | None:
    product_id = _object_id(_mapping(line.get("price")).get("product"))
    if product_id:
        return product_id
    price_details = _mapping(_mapping(line.get("pricing")).get("price_details"))
    return _object_id(price_details.get("product"))


def subscription_fields(subscription: Mapping[str, Any]) -> SubscriptionFields:
    first_item = _first_item(subscription.get("items"))
    # Newer API versions moved the billing period onto the subscription items.
    period_start = _int(subscription.get("current_period_start"))
    if period_start is None:
        period_start = _int(first_item.get("current_period_start"))
    period_end = _int(subscription.get("current_period_end"))
    if period_end is None:
        period_end = _int(first_item.get("current_period_end"))

    return SubscriptionFields(
        subscription_id=_text(subscription.get("id")),
        customer_id=_object_id(subscription.get("customer")),
        status=_text(subscription.get("status")),
        product_id=_line_product_id(first_item),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


def _invoice_fields(invoice: Mapping[str, Any]) -> InvoiceFields:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id is None:
        parent = _mapping(invoice.get("parent"))
        subscription_id = _object_id(_mapping(parent.get("subscription_details")).get("subscription"))

    return InvoiceFields(
        invoice_id=_text(invoice.get("id")),
        customer_id=_object_id(invoice.get("customer")),
        customer_email=_text(invoice.get("customer_email")),
        customer_name=_text(invoice.get("customer_name")),
        subscription_id=subscription_id,
        billing_reason=_text(invoice.get("billing_reason")),
        product_id=_line_product_id(_first_item(invoice.get("lines"))),
        attempt_count=_int(invoice.get("attempt_count")),
    )


def _checkout_completed(envelope: EventEnvelope, session: Mapping[str, Any]) -> CheckoutCompleted:
    details = _mapping(session.get("customer_details"))
    return CheckoutCompleted(
        envelope=envelope,
        session_id=_text(session.get("id")),
        mode=_text(session.get("mode")),
        customer_id=_object_id(session.get("customer")),
        customer_email=_text(session.get("customer_email")) or _text(details.get("email")),
        customer_name=_text(details.get("name")),
        subscription_id=_object_id(session.get("subscription")),
    )


def parse_event(raw_event: Any) -> BillingEvent:
    if not isinstance(raw_event, Mapping):
        raise MalformedEventError("Webhook payload is not a JSON object")

    event_id = _text(raw_event.get("id"))
    event_type = _text(raw_event.get("type"))
    if not event_id or not event_type:
        raise MalformedEventError("Webhook payload is missing id or type")

    envelope = EventEnvelope(id=event_id, type=event_type, created=_int(raw_event.get("created")))
    data_object = _mapping(_mapping(raw_event.get("data")).get("object"))

    if event_type == CHECKOUT_SESSION_COMPLETED:
        return _checkout_completed(envelope, data_object)
    if event_type == CUSTOMER_SUBSCRIPTION_CREATED:
        return SubscriptionCreated(envelope, subscription_fields(data_object))
    if event_type == CUSTOMER_SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(envelope, subscription_fields(data_object))
    if event_type == CUSTOMER_SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(envelope, subscription_fields(data_object))
    if event_type == INVOICE_PAID:
        return InvoicePaid(envelope, _invoice_fields(data_object))
    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(envelope, _invoice_fields(data_object))
    return UnknownEvent(envelope)
