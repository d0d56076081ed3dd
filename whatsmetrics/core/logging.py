from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

from whatsmetrics.core.settings import get_settings

SERVICE_NAME = "whatsmetrics-billing"

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
_stripe_event_id_var: ContextVar[str | None] = ContextVar("stripe_event_id", default=None)
_configured = False

_RESERVED_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}
_SENSITIVE_KEY_FRAGMENTS = ("secret", "token", "password", "apikey", "api_key", "signature", "key")


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str | None:
    return _request_id_var.get()


def bind_stripe_event_id(event_id: str | None) -> Token[str | None]:
    """Tag every log line emitted while handling one Stripe event."""
    return _stripe_event_id_var.set(event_id)


def unbind_stripe_event_id(token: Token[str | None]) -> None:
    _stripe_event_id_var.reset(token)


def _json_safe_value(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_json_safe_value(item) for item in value]
    return str(value)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "msg": record.getMessage(),
            "component": getattr(record, "component", record.name),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        stripe_event_id = getattr(record, "stripe_event_id", None) or _stripe_event_id_var.get()
        if stripe_event_id:
            payload["stripe_event_id"] = stripe_event_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_KEYS or key.startswith("_") or key in payload:
                continue
            if key in {"component", "request_id", "stripe_event_id"}:
                continue
            payload[key] = "[redacted]" if _is_sensitive_key(key) else _json_safe_value(value)

        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            payload["error"] = str(record.exc_info[1])[:500] if record.exc_info[1] else "unknown"

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def configure_logging() -> None:
    global _configured
    if _configured:
        return

    settings = get_settings()
    level_name = settings.LOG_LEVEL.strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
