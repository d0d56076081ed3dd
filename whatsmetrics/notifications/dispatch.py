from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx

from whatsmetrics.billing.actions import SendNotification
from whatsmetrics.core.logging import get_logger
from whatsmetrics.core.settings import get_settings
from whatsmetrics.core.supabase_rest import insert_email_job

logger = get_logger("notifications.dispatch")


class NotificationNotConfiguredError(RuntimeError):
    pass


class NotificationDeliveryError(RuntimeError):
    pass


def notification_payload(message: SendNotification) -> dict[str, Any]:
    """Request body understood by the subscription email function."""
    payload: dict[str, Any] = {"to": message.to, "type": message.type}
    if message.plan_name:
        payload["planName"] = message.plan_name
    if message.subscription_end:
        payload["subscriptionEnd"] = message.subscription_end
    if message.customer_name:
        payload["customerName"] = message.customer_name
    return payload


def message_from_payload(payload: dict[str, Any]) -> SendNotification:
    def _optional(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) and value.strip() else None

    return SendNotification(
        to=str(payload.get("to") or "").strip(),
        type=payload.get("type"),  # type: ignore[arg-type]
        plan_name=_optional("planName"),
        subscription_end=_optional("subscriptionEnd"),
        customer_name=_optional("customerName"),
    )


async def post_notification(message: SendNotification) -> None:
    settings = get_settings()
    service_role_key = (settings.SUPABASE_SERVICE_ROLE_KEY or "").strip()
    if not service_role_key:
        raise NotificationNotConfiguredError("Supabase service role is not configured for notifications.")

    url = f"{settings.SUPABASE_URL.rstrip('/')}/functions/v1/{settings.NOTIFY_FUNCTION_NAME}"
    headers = {
        "Authorization": f"Bearer {service_role_key}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(url, json=notification_payload(message), headers=headers)
    except httpx.HTTPError as exc:
        raise NotificationDeliveryError("Failed to reach the subscription email function.") from exc

    if response.status_code >= 400:
        raise NotificationDeliveryError(
            f"Subscription email function returned {response.status_code}: {response.text[:200]}"
        )

    logger.info(
        "notifications.function_delivered",
        extra={"component": "notifications", "notification_type": message.type},
    )


async def enqueue_notification(message: SendNotification, *, stripe_event_id: str | None = None) -> str | None:
    row = await insert_email_job(
        {
            "to_email": message.to,
            "type": message.type,
            "payload": notification_payload(message),
            "status": "queued",
            "attempts": 0,
            "run_after": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "stripe_event_id": stripe_event_id,
        }
    )
    job_id = row.get("id") if isinstance(row, dict) else None
    return str(job_id) if job_id else None
