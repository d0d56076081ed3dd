from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi.concurrency import run_in_threadpool

from whatsmetrics.billing.actions import NOTIFICATION_TYPES, SendNotification
from whatsmetrics.core.logging import get_logger
from whatsmetrics.core.settings import get_settings
from whatsmetrics.core.supabase_rest import (
    fetch_due_email_jobs,
    mark_email_job_failed,
    mark_email_job_running,
    mark_email_job_sent,
)
from whatsmetrics.notifications.dispatch import message_from_payload, post_notification
from whatsmetrics.notifications.emailer import send_email
from whatsmetrics.notifications.templates import subscription_email
from whatsmetrics.worker.retry import retry_at_iso, sanitize_error

logger = get_logger("worker.notification_sender")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _safe_int(value: object | None) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return 0
    return 0


class NotificationSender:
    """Drains ``subscription_email_jobs`` rows queued by the reconciler."""

    def __init__(
        self,
        *,
        transport: str = "function",
        batch_limit: int = 50,
        max_attempts: int = 5,
    ) -> None:
        self.transport = transport
        self.batch_limit = max(1, batch_limit)
        self.max_attempts = max(1, max_attempts)

    async def process_queued_jobs_once(self) -> int:
        jobs = await fetch_due_email_jobs(now_iso=_now_iso(), limit=self.batch_limit)
        processed = 0
        for job in jobs:
            if await self._process_job(job):
                processed += 1
        return processed

    async def _process_job(self, job: dict[str, Any]) -> bool:
        job_id = str(job.get("id") or "").strip()
        payload = job.get("payload") if isinstance(job.get("payload"), dict) else {}
        payload.setdefault("to", job.get("to_email"))
        payload.setdefault("type", job.get("type"))
        message = message_from_payload(payload)
        if not job_id:
            return False

        next_attempt = _safe_int(job.get("attempts")) + 1
        await mark_email_job_running(job_id, next_attempt)

        try:
            if not message.to or message.type not in NOTIFICATION_TYPES:
                raise ValueError("subscription email job has no recipient or an unknown type")
            await self._deliver(message)
        except Exception as exc:
            error_text = sanitize_error(exc, default_message="subscription email failed")
            terminal = next_attempt >= self.max_attempts
            await mark_email_job_failed(
                job_id,
                next_attempt,
                error_text,
                run_after=None if terminal else retry_at_iso(next_attempt),
                terminal=terminal,
            )
            logger.warning(
                "notification_sender.job_failed",
                extra={
                    "component": "worker",
                    "job_id": job_id,
                    "notification_type": message.type,
                    "attempts": next_attempt,
                    "terminal": terminal,
                    "error": error_text,
                },
            )
            return False

        await mark_email_job_sent(job_id, next_attempt, sent_at=_now_iso())
        logger.info(
            "notification_sender.job_sent",
            extra={
                "component": "worker",
                "job_id": job_id,
                "notification_type": message.type,
                "transport": self.transport,
            },
        )
        return True

    async def _deliver(self, message: SendNotification) -> None:
        if self.transport == "smtp":
            rendered = subscription_email(
                message.type,
                plan_name=message.plan_name,
                subscription_end=message.subscription_end,
                customer_name=message.customer_name,
                site_url=get_settings().SITE_URL,
            )
            await run_in_threadpool(
                send_email,
                to=message.to,
                subject=rendered["subject"],
                html=rendered["html"],
                text=rendered["text"],
                notification_type=message.type,
            )
            return

        await post_notification(message)
