from __future__ import annotations

import asyncio
import os

import uvicorn

from whatsmetrics.core.logging import configure_logging, get_logger
from whatsmetrics.core.settings import get_settings
from whatsmetrics.worker.notification_sender import NotificationSender
from whatsmetrics.worker.retry import sanitize_error

logger = get_logger("worker.supervisor")


async def run_worker_tick(notification_sender: NotificationSender) -> dict[str, int]:
    errors = 0
    emails_sent = 0
    try:
        emails_sent = await notification_sender.process_queued_jobs_once()
    except Exception as exc:  # pragma: no cover
        errors += 1
        logger.error(
            "worker.tick_notification_jobs_error",
            extra={"component": "worker", "error": sanitize_error(exc, default_message="worker error")},
        )
    return {"notification_emails_sent": emails_sent, "errors": errors}


async def run_worker_supervisor_loop() -> None:
    settings = get_settings()
    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY must be configured for worker mode")

    notification_sender = NotificationSender(
        transport=settings.notify_transport,
        batch_limit=settings.NOTIFY_JOB_BATCH_LIMIT,
        max_attempts=settings.NOTIFY_MAX_ATTEMPTS,
    )
    logger.info(
        "worker.started",
        extra={"component": "worker", "transport": settings.notify_transport},
    )

    while True:
        payload = await run_worker_tick(notification_sender)
        if payload["notification_emails_sent"] == 0:
            await asyncio.sleep(max(1, settings.WORKER_POLL_INTERVAL_SECONDS))


def main() -> None:
    configure_logging()
    settings = get_settings()
    mode = settings.WHATSMETRICS_MODE.strip().lower()

    if mode == "worker":
        asyncio.run(run_worker_supervisor_loop())
        return

    host = os.getenv("API_HOST", settings.API_HOST)
    port = int(os.getenv("PORT", str(settings.API_PORT)))
    uvicorn.run("whatsmetrics.main:app", host=host, port=port)


if __name__ == "__main__":
    main()
