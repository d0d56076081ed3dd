from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException

_BACKOFF_SECONDS = [60, 300, 900, 3600, 21600]
_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"\b(sk|rk)_(live|test)_[a-z0-9]+", re.IGNORECASE),
    re.compile(r"\bwhsec_[a-z0-9]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
)


def backoff_seconds(attempt: int) -> int:
    index = min(max(attempt, 1), len(_BACKOFF_SECONDS)) - 1
    return _BACKOFF_SECONDS[index]


def retry_at_iso(attempt: int, *, now: datetime | None = None) -> str:
    started = now or datetime.now(UTC)
    return (started + timedelta(seconds=backoff_seconds(attempt))).isoformat().replace("+00:00", "Z")


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        # Stripe errors carry a customer-safe message alongside the raw one.
        user_message = getattr(exc, "user_message", None)
        message = user_message.strip() if isinstance(user_message, str) and user_message.strip() else str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]
