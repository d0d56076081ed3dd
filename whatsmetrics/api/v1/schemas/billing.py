from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

BillingPlan = Literal["basic", "professional", "premium"]
SubscriptionStatus = Literal[
    "active",
    "trialing",
    "past_due",
    "unpaid",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "paused",
]


class EntitlementsOut(BaseModel):
    plan: BillingPlan
    features: list[str]
    ai_requests_per_month: int | None


class WorkspaceSubscriptionOut(BaseModel):
    workspace_id: UUID
    subscribed: bool
    plan: BillingPlan | None
    status: SubscriptionStatus | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    entitlements: EntitlementsOut | None


class CheckoutSessionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    price_id: str = Field(alias="priceId", min_length=1, max_length=255)
    coupon_code: str | None = Field(default=None, alias="couponCode", max_length=255)


class CheckoutSessionOut(BaseModel):
    url: str


class RetentionDiscountOut(BaseModel):
    percent_off: int
    duration_months: int


class RetentionOfferOut(BaseModel):
    success: bool
    message: str
    discount: RetentionDiscountOut
