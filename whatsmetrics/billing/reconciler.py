"""Apply planned reconciliation actions to the subscription store.

Every sub-operation reports a ``SyncOutcome`` instead of silently returning,
so the webhook handler can record unresolved events and, when configured,
ask Stripe to redeliver them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import HTTPException

from whatsmetrics.billing.actions import (
    Ignore,
    MarkCanceled,
    ReconciliationAction,
    SendNotification,
    SyncCheckout,
    SyncSubscriptionUpdate,
)
from whatsmetrics.billing.catalog import email_plan_name, resolve_plan
from whatsmetrics.billing.events import subscription_fields
from whatsmetrics.billing.stripe_client import retrieve_customer, retrieve_subscription
from whatsmetrics.core.logging import get_logger
from whatsmetrics.core.settings import get_settings
from whatsmetrics.core.supabase_admin_auth import find_user_by_email
from whatsmetrics.core.supabase_rest import (
    insert_workspace_subscription,
    select_owned_workspace_id,
    select_plan_id_by_slug,
    select_profile_workspace_id,
    select_workspace_subscription_service,
    update_subscriptions_by_stripe_id,
    update_workspace_subscription,
)
from whatsmetrics.notifications.dispatch import enqueue_notification, post_notification
from whatsmetrics.worker.retry import sanitize_error

logger = get_logger("billing.reconciler")


class SyncOutcome(str, Enum):
    SYNCED = "synced"
    TENANT_NOT_FOUND = "tenant_not_found"
    WORKSPACE_NOT_FOUND = "workspace_not_found"
    PLAN_UNKNOWN = "plan_unknown"
    STALE_EVENT = "stale_event"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    STORE_WRITE_FAILED = "store_write_failed"


UNRESOLVED_OUTCOMES = frozenset(
    {
        SyncOutcome.TENANT_NOT_FOUND,
        SyncOutcome.WORKSPACE_NOT_FOUND,
        SyncOutcome.PLAN_UNKNOWN,
        SyncOutcome.STORE_UNAVAILABLE,
        SyncOutcome.STORE_WRITE_FAILED,
    }
)


@dataclass(frozen=True)
class SyncResult:
    outcome: SyncOutcome
    workspace_id: str | None = None
    snapshot: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ReconciliationResult:
    action: str
    outcome: SyncOutcome | None = None
    notifications: list[bool] = field(default_factory=list)
    detail: str | None = None

    @property
    def unresolved(self) -> bool:
        return self.outcome in UNRESOLVED_OUTCOMES


def epoch_to_iso(value: int | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _is_stale(existing: dict[str, Any], stripe_subscription_id: str, event_created: int | None) -> bool:
    if event_created is None:
        return False
    if existing.get("stripe_subscription_id") != stripe_subscription_id:
        return False
    watermark = _parse_timestamp(existing.get("last_event_at"))
    if watermark is None:
        return False
    return datetime.fromtimestamp(event_created, UTC) < watermark


async def resolve_workspace_id(email: str) -> tuple[SyncOutcome | None, str | None]:
    user = await find_user_by_email(email)
    user_id = user.get("id") if isinstance(user, dict) else None
    if not isinstance(user_id, str) or not user_id:
        logger.warning(
            "reconciler.tenant_not_found",
            extra={"component": "billing", "email_domain": email.rsplit("@", 1)[-1]},
        )
        return SyncOutcome.TENANT_NOT_FOUND, None

    workspace_id = await select_profile_workspace_id(user_id)
    if not workspace_id:
        workspace_id = await select_owned_workspace_id(user_id)
    if not workspace_id:
        logger.warning(
            "reconciler.workspace_not_found",
            extra={"component": "billing", "user_id": user_id},
        )
        return SyncOutcome.WORKSPACE_NOT_FOUND, None
    return None, workspace_id


async def sync_subscription(
    *,
    email: str,
    stripe_customer_id: str | None,
    stripe_subscription_id: str,
    product_id: str | None,
    status: str | None,
    current_period_start: int | None,
    current_period_end: int | None,
    cancel_at_period_end: bool,
    event_created: int | None = None,
) -> SyncResult:
    """Upsert the workspace snapshot for the Stripe customer with ``email``."""
    try:
        miss, workspace_id = await resolve_workspace_id(email)
        if miss is not None or workspace_id is None:
            return SyncResult(outcome=miss or SyncOutcome.WORKSPACE_NOT_FOUND)

        plan = resolve_plan(product_id)
        plan_id = await select_plan_id_by_slug(plan.slug.value)
        if not plan_id:
            logger.warning(
                "reconciler.plan_not_found",
                extra={"component": "billing", "product_id": product_id, "slug": plan.slug.value},
            )
            return SyncResult(outcome=SyncOutcome.PLAN_UNKNOWN, workspace_id=workspace_id)

        existing = await select_workspace_subscription_service(workspace_id)
    except HTTPException as exc:
        error_text = sanitize_error(exc, default_message="subscription store lookup failed")
        logger.error(
            "reconciler.store_unavailable",
            extra={"component": "billing", "error": error_text},
        )
        return SyncResult(outcome=SyncOutcome.STORE_UNAVAILABLE, error=error_text)

    if existing is not None and _is_stale(existing, stripe_subscription_id, event_created):
        logger.info(
            "reconciler.stale_event_ignored",
            extra={
                "component": "billing",
                "workspace_id": workspace_id,
                "stripe_subscription_id": stripe_subscription_id,
                "last_event_at": existing.get("last_event_at"),
            },
        )
        return SyncResult(outcome=SyncOutcome.STALE_EVENT, workspace_id=workspace_id, previous=existing)

    row: dict[str, Any] = {
        "workspace_id": workspace_id,
        "plan_id": plan_id,
        "stripe_customer_id": stripe_customer_id,
        "stripe_subscription_id": stripe_subscription_id,
        "status": "active" if status == "active" else status,
        "current_period_start": epoch_to_iso(current_period_start),
        "current_period_end": epoch_to_iso(current_period_end),
        "cancel_at_period_end": cancel_at_period_end,
    }
    if event_created is not None:
        row["last_event_at"] = epoch_to_iso(event_created)

    try:
        if existing is not None and existing.get("id"):
            snapshot = await update_workspace_subscription(str(existing["id"]), row)
            log_message = "reconciler.subscription_updated"
        else:
            snapshot = await insert_workspace_subscription(row)
            log_message = "reconciler.subscription_created"
    except HTTPException as exc:
        error_text = sanitize_error(exc, default_message="subscription store write failed")
        logger.error(
            "reconciler.store_write_failed",
            extra={"component": "billing", "workspace_id": workspace_id, "error": error_text},
        )
        return SyncResult(
            outcome=SyncOutcome.STORE_WRITE_FAILED,
            workspace_id=workspace_id,
            previous=existing,
            error=error_text,
        )

    logger.info(
        log_message,
        extra={
            "component": "billing",
            "workspace_id": workspace_id,
            "plan": plan.slug.value,
            "status": row["status"],
        },
    )
    return SyncResult(
        outcome=SyncOutcome.SYNCED,
        workspace_id=workspace_id,
        snapshot=snapshot or row,
        previous=existing,
    )


async def cancel_subscription(stripe_subscription_id: str, *, event_created: int | None = None) -> SyncResult:
    """Soft-delete: the matching snapshot keeps its row with status ``canceled``."""
    payload: dict[str, Any] = {"status": "canceled"}
    if event_created is not None:
        payload["last_event_at"] = epoch_to_iso(event_created)

    try:
        rows = await update_subscriptions_by_stripe_id(stripe_subscription_id, payload)
    except HTTPException as exc:
        error_text = sanitize_error(exc, default_message="subscription cancel failed")
        logger.error(
            "reconciler.cancel_failed",
            extra={
                "component": "billing",
                "stripe_subscription_id": stripe_subscription_id,
                "error": error_text,
            },
        )
        return SyncResult(outcome=SyncOutcome.STORE_WRITE_FAILED, error=error_text)

    if not rows:
        logger.info(
            "reconciler.cancel_no_matching_subscription",
            extra={"component": "billing", "stripe_subscription_id": stripe_subscription_id},
        )
        return SyncResult(outcome=SyncOutcome.SUBSCRIPTION_NOT_FOUND)

    workspace_id = rows[0].get("workspace_id")
    logger.info(
        "reconciler.subscription_canceled",
        extra={
            "component": "billing",
            "stripe_subscription_id": stripe_subscription_id,
            "workspace_id": workspace_id,
        },
    )
    return SyncResult(
        outcome=SyncOutcome.SYNCED,
        workspace_id=workspace_id if isinstance(workspace_id, str) else None,
        snapshot=rows[0],
    )


async def notify(message: SendNotification, *, stripe_event_id: str | None = None) -> bool:
    """Hand a subscription email to the notification path; never raises."""
    settings = get_settings()
    try:
        if settings.notify_delivery_mode == "inline":
            await post_notification(message)
        else:
            await enqueue_notification(message, stripe_event_id=stripe_event_id)
    except Exception as exc:
        logger.warning(
            "reconciler.notification_failed",
            extra={
                "component": "billing",
                "notification_type": message.type,
                "delivery_mode": settings.notify_delivery_mode,
                "error": sanitize_error(exc, default_message="notification failed"),
            },
        )
        return False

    logger.info(
        "reconciler.notification_dispatched",
        extra={
            "component": "billing",
            "notification_type": message.type,
            "delivery_mode": settings.notify_delivery_mode,
        },
    )
    return True


def _defer_notifications(sync: SyncResult) -> bool:
    """True when the email waits for Stripe to redeliver an unresolved event."""
    if sync.outcome not in UNRESOLVED_OUTCOMES or not get_settings().WEBHOOK_RETRY_UNRESOLVED:
        return False
    logger.info(
        "reconciler.notification_deferred",
        extra={"component": "billing", "outcome": sync.outcome.value},
    )
    return True


async def _execute_checkout(action: SyncCheckout, stripe_event_id: str | None) -> ReconciliationResult:
    subscription = subscription_fields(await retrieve_subscription(action.subscription_id))

    sync = await sync_subscription(
        email=action.customer_email,
        stripe_customer_id=action.customer_id or subscription.customer_id,
        stripe_subscription_id=action.subscription_id,
        product_id=subscription.product_id,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        event_created=action.event_created,
    )
    if _defer_notifications(sync):
        return ReconciliationResult(action="sync_checkout", outcome=sync.outcome)

    sent = await notify(
        SendNotification(
            to=action.customer_email,
            type="subscription_created",
            plan_name=email_plan_name(subscription.product_id),
            customer_name=action.customer_name,
        ),
        stripe_event_id=stripe_event_id,
    )
    return ReconciliationResult(action="sync_checkout", outcome=sync.outcome, notifications=[sent])


def _cancel_already_announced(sync: SyncResult, stripe_subscription_id: str) -> bool:
    if sync.outcome is SyncOutcome.STALE_EVENT or _defer_notifications(sync):
        return True
    previous = sync.previous
    if not isinstance(previous, dict):
        return False
    return (
        previous.get("stripe_subscription_id") == stripe_subscription_id
        and previous.get("cancel_at_period_end") is True
    )


async def _execute_subscription_update(
    action: SyncSubscriptionUpdate,
    stripe_event_id: str | None,
) -> ReconciliationResult:
    subscription = action.subscription
    customer = await retrieve_customer(str(subscription.customer_id))
    email = customer.get("email") if not customer.get("deleted") else None
    if not isinstance(email, str) or not email:
        logger.info(
            "reconciler.customer_without_email",
            extra={"component": "billing", "stripe_customer_id": subscription.customer_id},
        )
        return ReconciliationResult(action="sync_subscription_update", detail="customer_without_email")

    sync = await sync_subscription(
        email=email,
        stripe_customer_id=subscription.customer_id,
        stripe_subscription_id=str(subscription.subscription_id),
        product_id=subscription.product_id,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        event_created=action.event_created,
    )
    result = ReconciliationResult(action="sync_subscription_update", outcome=sync.outcome)

    if subscription.cancel_at_period_end and not _cancel_already_announced(sync, str(subscription.subscription_id)):
        customer_name = customer.get("name")
        sent = await notify(
            SendNotification(
                to=email,
                type="subscription_canceled",
                plan_name=email_plan_name(subscription.product_id),
                subscription_end=epoch_to_iso(subscription.current_period_end),
                customer_name=customer_name if isinstance(customer_name, str) and customer_name else None,
            ),
            stripe_event_id=stripe_event_id,
        )
        result.notifications.append(sent)
    return result


async def execute(action: ReconciliationAction, *, stripe_event_id: str | None = None) -> ReconciliationResult:
    if isinstance(action, SyncCheckout):
        return await _execute_checkout(action, stripe_event_id)

    if isinstance(action, SyncSubscriptionUpdate):
        return await _execute_subscription_update(action, stripe_event_id)

    if isinstance(action, MarkCanceled):
        sync = await cancel_subscription(action.subscription_id, event_created=action.event_created)
        return ReconciliationResult(action="mark_canceled", outcome=sync.outcome)

    if isinstance(action, SendNotification):
        sent = await notify(action, stripe_event_id=stripe_event_id)
        return ReconciliationResult(action="send_notification", notifications=[sent])

    reason = action.reason if isinstance(action, Ignore) else "unsupported_action"
    logger.info("reconciler.event_ignored", extra={"component": "billing", "reason": reason})
    return ReconciliationResult(action="ignore", detail=reason)
