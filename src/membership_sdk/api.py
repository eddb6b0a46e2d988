import os
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .admin.api import get_billing_gateway, router as admin_router
from .auth import limiter
from .connectors.base import BillingGateway
from .database import close_db, get_db, init_db
from .errors import MembershipError
from .webhooks.processor import WebhookProcessor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables = os.getenv("DB_CREATE_TABLES", "false").lower() in ("1", "true", "yes")
    await init_db(create_tables_on_start=create_tables)
    yield
    await close_db()


app = FastAPI(title="Membership Reconciliation & Administration API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(admin_router)


@app.exception_handler(MembershipError)
async def membership_error_handler(request: Request, exc: MembershipError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.kind}] {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.get("/health")
async def health():
    return {"ok": True}


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Verify, de-duplicate and process a Stripe webhook delivery.

    Duplicate deliveries are acknowledged without reprocessing. Processing
    failures return a 5xx so the provider retries.
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        event = gateway.parse_webhook(headers, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    outcome = await WebhookProcessor(db, gateway).process_event(event.id, event.type, event.data)
    return {
        "received": True,
        "event_id": outcome.event_id,
        "duplicate": not outcome.admitted,
        "handled": outcome.handled,
    }
