from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from whatsmetrics.billing.actions import plan_reconciliation
from whatsmetrics.billing.events import BillingEvent, parse_event
from whatsmetrics.billing.reconciler import ReconciliationResult, epoch_to_iso, execute
from whatsmetrics.billing.stripe_client import InvalidSignatureError, construct_event, stripe_secret_key
from whatsmetrics.core.logging import bind_stripe_event_id, get_logger, unbind_stripe_event_id
from whatsmetrics.core.settings import get_settings
from whatsmetrics.core.supabase_rest import select_webhook_event, upsert_webhook_event
from whatsmetrics.worker.retry import sanitize_error

logger = get_logger("billing.webhook")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
}


def webhook_response(status_code: int, content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


async def _ledger_status(event_id: str) -> str | None:
    try:
        row = await select_webhook_event(event_id)
    except (HTTPException, ValueError) as exc:
        logger.warning(
            "stripe_webhook.ledger_read_failed",
            extra={"component": "billing", "error": sanitize_error(exc, default_message="ledger read failed")},
        )
        return None
    value = row.get("status") if isinstance(row, dict) else None
    return value if isinstance(value, str) else None


async def _record_event(
    event: BillingEvent,
    status: str,
    *,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "stripe_event_id": event.envelope.id,
        "event_type": event.envelope.type,
        "event_created_at": epoch_to_iso(event.envelope.created),
        "status": status,
        "error": error,
        "processed_at": _now_iso() if status != "received" else None,
    }
    try:
        await upsert_webhook_event(payload)
    except (HTTPException, ValueError) as exc:
        logger.warning(
            "stripe_webhook.ledger_write_failed",
            extra={
                "component": "billing",
                "ledger_status": status,
                "error": sanitize_error(exc, default_message="ledger write failed"),
            },
        )


def _verify_or_parse(raw_body: bytes, signature: str | None) -> Any:
    """Return the event payload, or None when the request must be rejected as unsigned."""
    settings = get_settings()
    webhook_secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()

    if webhook_secret and signature:
        raw_event = construct_event(raw_body, signature, webhook_secret)
        logger.info("stripe_webhook.signature_verified", extra={"component": "billing"})
        return raw_event

    if not settings.allow_unsigned_webhooks:
        logger.warning(
            "stripe_webhook.unsigned_rejected",
            extra={"component": "billing", "verification_configured": bool(webhook_secret), "signed": bool(signature)},
        )
        return None

    raw_event = json.loads(raw_body)
    logger.warning(
        "stripe_webhook.unsigned_accepted",
        extra={"component": "billing", "verification_configured": bool(webhook_secret), "signed": bool(signature)},
    )
    return raw_event


async def _reconcile(event: BillingEvent) -> ReconciliationResult | None:
    if await _ledger_status(event.envelope.id) == "processed":
        logger.info("stripe_webhook.duplicate_ignored", extra={"component": "billing"})
        return None

    await _record_event(event, "received")
    result = await execute(plan_reconciliation(event), stripe_event_id=event.envelope.id)
    if result.unresolved:
        await _record_event(event, "unresolved", error=result.outcome.value if result.outcome else None)
    else:
        await _record_event(event, "processed")

    logger.info(
        "stripe_webhook.processed",
        extra={
            "component": "billing",
            "action": result.action,
            "outcome": result.outcome.value if result.outcome else None,
            "notifications": result.notifications,
            "detail": result.detail,
        },
    )
    return result


async def handle_webhook(raw_body: bytes, signature: str | None) -> JSONResponse:
    """Verify, reconcile and acknowledge one Stripe delivery.

    Only a bad signature (400) or an unhandled failure (500) produce a non-2xx
    answer; Stripe redelivers the latter. Unresolved reconciliations are also
    answered 500 when ``WEBHOOK_RETRY_UNRESOLVED`` is enabled.
    """
    settings = get_settings()
    event: BillingEvent | None = None
    event_token = None

    try:
        stripe_secret_key()
        logger.info("stripe_webhook.received", extra={"component": "billing", "payload_size": len(raw_body)})

        try:
            raw_event = _verify_or_parse(raw_body, signature)
        except InvalidSignatureError as exc:
            logger.warning(
                "stripe_webhook.invalid_signature",
                extra={"component": "billing", "error": sanitize_error(exc, default_message="invalid signature")},
            )
            return webhook_response(400, {"error": "Invalid signature"})
        if raw_event is None:
            return webhook_response(400, {"error": "Invalid signature"})

        event = parse_event(raw_event)
        event_token = bind_stripe_event_id(event.envelope.id)
        logger.info("stripe_webhook.event", extra={"component": "billing", "event_type": event.envelope.type})

        result = await _reconcile(event)
        if result is not None and result.unresolved and settings.WEBHOOK_RETRY_UNRESOLVED:
            return webhook_response(500, {"error": f"Unresolved event: {result.outcome.value}"})
        return webhook_response(200, {"received": True})
    except Exception as exc:
        error_text = sanitize_error(exc, default_message="webhook processing failed")
        logger.exception("stripe_webhook.error", extra={"component": "billing"})
        if event is not None:
            await _record_event(event, "failed", error=error_text)
        return webhook_response(500, {"error": error_text})
    finally:
        if event_token is not None:
            unbind_stripe_event_id(event_token)
