from __future__ import annotations

import smtplib
from email.message import EmailMessage

from whatsmetrics.core.logging import get_logger
from whatsmetrics.core.settings import get_settings

logger = get_logger("notifications.emailer")


class EmailNotConfiguredError(RuntimeError):
    pass


class EmailSendError(RuntimeError):
    pass


def build_message(*, sender: str, to: str, subject: str, html: str, text: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    return message


def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    text: str,
    notification_type: str | None = None,
) -> None:
    settings = get_settings()
    host = (settings.SMTP_HOST or "").strip()
    sender = (settings.EMAIL_FROM or "").strip()
    if not host or not sender:
        raise EmailNotConfiguredError("SMTP transport is not configured.")

    message = build_message(sender=sender, to=to, subject=subject, html=html, text=text)
    log_fields = {
        "component": "notifications",
        "notification_type": notification_type,
        "recipient_domain": recipient_domain(to),
    }

    try:
        if settings.SMTP_USE_SSL:
            with smtplib.SMTP_SSL(host=host, port=settings.SMTP_PORT, timeout=10) as server:
                _login_if_configured(server)
                server.send_message(message)
        else:
            with smtplib.SMTP(host=host, port=settings.SMTP_PORT, timeout=10) as server:
                if settings.SMTP_USE_TLS:
                    server.starttls()
                _login_if_configured(server)
                server.send_message(message)
    except (OSError, smtplib.SMTPException) as exc:
        logger.warning("notifications.email_send_failed", extra=log_fields)
        raise EmailSendError("Failed to send subscription email.") from exc

    logger.info("notifications.email_sent", extra=log_fields)


def recipient_domain(recipient: str) -> str:
    value = recipient.strip().lower()
    if "@" not in value:
        return "unknown"
    return value.rsplit("@", maxsplit=1)[-1] or "unknown"


def _login_if_configured(server: smtplib.SMTP) -> None:
    settings = get_settings()
    username = (settings.SMTP_USERNAME or "").strip()
    if username and settings.SMTP_PASSWORD:
        server.login(username, settings.SMTP_PASSWORD)
