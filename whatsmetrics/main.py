from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from whatsmetrics.api.v1.router import router as v1_router
from whatsmetrics.core.logging import configure_logging
from whatsmetrics.core.settings import get_settings
from whatsmetrics.middleware.request_id import RequestIDMiddleware

configure_logging()
settings = get_settings()

app = FastAPI(title="WhatsMetrics Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "apikey", "x-client-info", "stripe-signature"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestIDMiddleware)

app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
