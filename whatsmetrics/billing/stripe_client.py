from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import stripe
from fastapi.concurrency import run_in_threadpool

from whatsmetrics.core.settings import get_settings


class StripeNotConfiguredError(RuntimeError):
    pass


class InvalidSignatureError(ValueError):
    pass


def stripe_secret_key() -> str:
    key = (get_settings().STRIPE_SECRET_KEY or "").strip()
    if not key:
        raise StripeNotConfiguredError("STRIPE_SECRET_KEY is not set")
    return key


def _request_options() -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"api_key": stripe_secret_key()}
    if settings.STRIPE_API_VERSION:
        options["stripe_version"] = settings.STRIPE_API_VERSION
    return options


def construct_event(payload: bytes, signature: str, secret: str) -> Mapping[str, Any]:
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        raise InvalidSignatureError(str(exc) or "signature verification failed") from exc


async def retrieve_subscription(subscription_id: str) -> Mapping[str, Any]:
    return await run_in_threadpool(stripe.Subscription.retrieve, subscription_id, **_request_options())


async def retrieve_customer(customer_id: str) -> Mapping[str, Any]:
    return await run_in_threadpool(stripe.Customer.retrieve, customer_id, **_request_options())


def _list_data(result: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    data = result.get("data")
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, Mapping)]


async def find_customer_by_email(email: str) -> Mapping[str, Any] | None:
    result = await run_in_threadpool(stripe.Customer.list, email=email, limit=1, **_request_options())
    customers = _list_data(result)
    return customers[0] if customers else None


async def list_coupons(*, limit: int = 100) -> list[Mapping[str, Any]]:
    return _list_data(await run_in_threadpool(stripe.Coupon.list, limit=limit, **_request_options()))


async def find_promotion_code(code: str) -> Mapping[str, Any] | None:
    result = await run_in_threadpool(stripe.PromotionCode.list, code=code, limit=1, **_request_options())
    codes = _list_data(result)
    return codes[0] if codes else None


async def create_checkout_session(params: dict[str, Any]) -> Mapping[str, Any]:
    return await run_in_threadpool(stripe.checkout.Session.create, **params, **_request_options())


async def find_active_subscription(customer_id: str) -> Mapping[str, Any] | None:
    result = await run_in_threadpool(
        stripe.Subscription.list,
        customer=customer_id,
        status="active",
        limit=1,
        **_request_options(),
    )
    subscriptions = _list_data(result)
    return subscriptions[0] if subscriptions else None


async def retrieve_or_create_coupon(coupon_id: str, create_params: dict[str, Any]) -> Mapping[str, Any]:
    try:
        return await run_in_threadpool(stripe.Coupon.retrieve, coupon_id, **_request_options())
    except stripe.InvalidRequestError:
        return await run_in_threadpool(stripe.Coupon.create, id=coupon_id, **create_params, **_request_options())


async def apply_subscription_coupon(subscription_id: str, coupon_id: str) -> Mapping[str, Any]:
    return await run_in_threadpool(
        stripe.Subscription.modify,
        subscription_id,
        discounts=[{"coupon": coupon_id}],
        **_request_options(),
    )
