from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status

from whatsmetrics.api.v1.schemas.billing import (
    CheckoutSessionIn,
    CheckoutSessionOut,
    RetentionOfferOut,
    WorkspaceSubscriptionOut,
)
from whatsmetrics.billing.catalog import get_entitlements, parse_plan_slug
from whatsmetrics.billing.checkout import apply_retention_offer, start_checkout
from whatsmetrics.core.settings import get_settings
from whatsmetrics.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from whatsmetrics.core.supabase_rest import select_plan_slug_by_id, select_workspace_subscription

router = APIRouter()
supabase_auth_dependency = Depends(verify_supabase_auth)

_ENTITLED_STATUSES = {"active", "trialing", "past_due"}
_KNOWN_STATUSES = _ENTITLED_STATUSES | {"unpaid", "canceled", "incomplete", "incomplete_expired", "paused"}


@router.get("/workspaces/{workspace_id}/subscription")
async def workspace_subscription(
    workspace_id: UUID,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
) -> WorkspaceSubscriptionOut:
    row = await select_workspace_subscription(auth.access_token, str(workspace_id))
    if not isinstance(row, dict):
        return WorkspaceSubscriptionOut(
            workspace_id=workspace_id,
            subscribed=False,
            plan=None,
            status=None,
            stripe_customer_id=None,
            stripe_subscription_id=None,
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=False,
            entitlements=None,
        )

    plan_id = row.get("plan_id")
    slug = await select_plan_slug_by_id(auth.access_token, str(plan_id)) if plan_id else None
    plan = parse_plan_slug(slug)
    raw_status = row.get("status")
    status_value = raw_status if raw_status in _KNOWN_STATUSES else None
    subscribed = status_value in _ENTITLED_STATUSES

    return WorkspaceSubscriptionOut.model_validate(
        {
            "workspace_id": row.get("workspace_id") or str(workspace_id),
            "subscribed": subscribed,
            "plan": plan.value,
            "status": status_value,
            "stripe_customer_id": row.get("stripe_customer_id"),
            "stripe_subscription_id": row.get("stripe_subscription_id"),
            "current_period_start": row.get("current_period_start"),
            "current_period_end": row.get("current_period_end"),
            "cancel_at_period_end": bool(row.get("cancel_at_period_end")),
            "entitlements": get_entitlements(plan).as_dict() if subscribed else None,
        }
    )


def _user_identity(auth: VerifiedSupabaseAuth) -> tuple[str, str]:
    user_id = auth.claims.get("sub")
    email = auth.claims.get("email")
    if not isinstance(user_id, str) or not isinstance(email, str) or not email.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User email is not available.",
        )
    return user_id, email.strip()


@router.post("/billing/checkout")
async def create_checkout_session(
    payload: CheckoutSessionIn,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    origin: str | None = Header(default=None),
) -> CheckoutSessionOut:
    user_id, email = _user_identity(auth)
    url = await start_checkout(
        user_id=user_id,
        email=email,
        price_id=payload.price_id,
        coupon_code=payload.coupon_code,
        origin=origin or get_settings().SITE_URL,
    )
    return CheckoutSessionOut(url=url)


@router.post("/billing/retention-coupon")
async def apply_retention_coupon(
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
) -> RetentionOfferOut:
    _, email = _user_identity(auth)
    return RetentionOfferOut.model_validate(await apply_retention_offer(email=email))
