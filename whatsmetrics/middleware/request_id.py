import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from whatsmetrics.core.logging import get_logger, reset_request_id, set_request_id

logger = get_logger("api.request")

_MAX_REQUEST_ID_LENGTH = 128


def _inbound_request_id(request: Request) -> str | None:
    value = (request.headers.get("X-Request-ID") or "").strip()
    if not value or len(value) > _MAX_REQUEST_ID_LENGTH:
        return None
    return value


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every response and to the log lines it produces."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = _inbound_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id
        request_id_token = set_request_id(request_id)
        started = perf_counter()
        response: Response | None = None
        log_fields = {"component": "api", "method": request.method, "path": request.url.path}

        logger.info("request.start", extra=log_fields)
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request.error", extra=log_fields)
            raise
        finally:
            logger.info(
                "request.end",
                extra={
                    **log_fields,
                    "status_code": response.status_code if response is not None else 500,
                    "duration_ms": int((perf_counter() - started) * 1000),
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            reset_request_id(request_id_token)
