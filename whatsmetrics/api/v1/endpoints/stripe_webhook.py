from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from whatsmetrics.billing.webhook import CORS_HEADERS, handle_webhook

router = APIRouter()


@router.options("/webhooks/stripe")
async def stripe_webhook_preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
) -> JSONResponse:
    # Signature verification needs the body exactly as Stripe sent it.
    raw_body = await request.body()
    return await handle_webhook(raw_body, stripe_signature)
