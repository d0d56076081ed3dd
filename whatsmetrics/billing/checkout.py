"""Checkout sessions and the retention offer, on behalf of a signed-in user."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import stripe
from fastapi import HTTPException, status

from whatsmetrics.billing.actions import SendNotification
from whatsmetrics.billing.reconciler import notify
from whatsmetrics.billing.stripe_client import (
    StripeNotConfiguredError,
    apply_subscription_coupon,
    create_checkout_session,
    find_active_subscription,
    find_customer_by_email,
    find_promotion_code,
    list_coupons,
    retrieve_or_create_coupon,
)
from whatsmetrics.core.logging import get_logger
from whatsmetrics.worker.retry import sanitize_error

logger = get_logger("billing.checkout")

RETENTION_COUPON_ID = "retention_50_off_2months"
RETENTION_PERCENT_OFF = 50
RETENTION_DURATION_MONTHS = 2
RETENTION_COUPON_PARAMS: dict[str, Any] = {
    "percent_off": RETENTION_PERCENT_OFF,
    "duration": "repeating",
    "duration_in_months": RETENTION_DURATION_MONTHS,
    "name": "Oferta de Retenção - 50% por 2 meses",
}
RETENTION_PLAN_NAME = "Oferta Especial - 50% OFF"
RETENTION_MESSAGE = "Cupom de 50% aplicado com sucesso!"


def _stripe_failure(exc: Exception, default_message: str) -> HTTPException:
    if isinstance(exc, StripeNotConfiguredError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=sanitize_error(exc, default_message=default_message),
    )


async def resolve_discount(coupon_code: str) -> dict[str, str] | None:
    """Match a coupon by name or id, then a promotion code; lookup failures drop the discount."""
    wanted = coupon_code.strip().lower()
    if not wanted:
        return None

    try:
        for coupon in await list_coupons():
            name = coupon.get("name")
            coupon_id = str(coupon.get("id") or "")
            if coupon_id.lower() == wanted or (isinstance(name, str) and name.lower() == wanted):
                logger.info("checkout.coupon_applied", extra={"component": "billing", "coupon_id": coupon_id})
                return {"coupon": coupon_id}

        promotion = await find_promotion_code(coupon_code.strip())
    except stripe.StripeError as exc:
        logger.warning(
            "checkout.coupon_lookup_failed",
            extra={"component": "billing", "error": sanitize_error(exc, default_message="coupon lookup failed")},
        )
        return None

    if promotion is not None and promotion.get("id"):
        logger.info("checkout.promotion_code_applied", extra={"component": "billing", "promotion_id": promotion["id"]})
        return {"promotion_code": str(promotion["id"])}

    logger.info("checkout.coupon_not_found", extra={"component": "billing"})
    return None


async def start_checkout(
    *,
    user_id: str,
    email: str,
    price_id: str,
    coupon_code: str | None,
    origin: str,
) -> str:
    try:
        customer = await find_customer_by_email(email)
    except (StripeNotConfiguredError, stripe.StripeError) as exc:
        raise _stripe_failure(exc, "Failed to look up Stripe customer.") from exc

    customer_id = customer.get("id") if isinstance(customer, Mapping) else None
    base_url = origin.rstrip("/")
    params: dict[str, Any] = {
        "line_items": [{"price": price_id, "quantity": 1}],
        "mode": "subscription",
        "success_url": f"{base_url}/dashboard/checkout-success",
        "cancel_url": f"{base_url}/dashboard/pricing?canceled=true",
        "metadata": {"user_id": user_id},
    }
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = email

    discount = await resolve_discount(coupon_code) if coupon_code else None
    # Stripe rejects allow_promotion_codes together with explicit discounts.
    if discount is not None:
        params["discounts"] = [discount]
    else:
        params["allow_promotion_codes"] = True

    try:
        session = await create_checkout_session(params)
    except stripe.StripeError as exc:
        raise _stripe_failure(exc, "Failed to create checkout session.") from exc

    url = session.get("url")
    if not isinstance(url, str) or not url:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Checkout session has no URL.")

    logger.info(
        "checkout.session_created",
        extra={
            "component": "billing",
            "session_id": session.get("id"),
            "existing_customer": bool(customer_id),
            "discounted": discount is not None,
        },
    )
    return url


async def apply_retention_offer(*, email: str) -> dict[str, Any]:
    try:
        customer = await find_customer_by_email(email)
        if customer is None or not customer.get("id"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No Stripe customer found")

        subscription = await find_active_subscription(str(customer["id"]))
        if subscription is None or not subscription.get("id"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

        coupon = await retrieve_or_create_coupon(RETENTION_COUPON_ID, RETENTION_COUPON_PARAMS)
        await apply_subscription_coupon(str(subscription["id"]), str(coupon.get("id") or RETENTION_COUPON_ID))
    except (StripeNotConfiguredError, stripe.StripeError) as exc:
        raise _stripe_failure(exc, "Failed to apply retention coupon.") from exc

    logger.info(
        "checkout.retention_coupon_applied",
        extra={"component": "billing", "stripe_subscription_id": subscription["id"]},
    )

    customer_name = customer.get("name")
    await notify(
        SendNotification(
            to=email,
            type="subscription_created",
            plan_name=RETENTION_PLAN_NAME,
            customer_name=customer_name if isinstance(customer_name, str) and customer_name else email,
        )
    )

    return {
        "success": True,
        "message": RETENTION_MESSAGE,
        "discount": {
            "percent_off": RETENTION_PERCENT_OFF,
            "duration_months": RETENTION_DURATION_MONTHS,
        },
    }
