from fastapi import APIRouter

from whatsmetrics.api.v1.endpoints import billing, health, stripe_webhook

router = APIRouter()
router.include_router(health.router)
router.include_router(stripe_webhook.router)
router.include_router(billing.router)
