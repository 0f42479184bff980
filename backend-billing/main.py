import logging
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Depends, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import crud
from config import settings
from database import get_db
from dependencies import (
    CurrentAccount,
    get_checkout_service,
    get_current_account,
    get_portal_service,
    get_reconciler,
    get_webhook_verifier,
)
from errors import AccountNotFound, BillingError, InvalidSignature
from billing.checkout import CheckoutService
from billing.events import WebhookVerifier
from billing.portal import PortalService
from billing.reconciler import SubscriptionReconciler

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def configure_tracing(app: FastAPI):
    from opentelemetry import trace
    from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.propagate import set_global_textmap
    from opentelemetry.propagators.cloud_trace_propagator import (
        CloudTraceFormatPropagator,
    )
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    set_global_textmap(CloudTraceFormatPropagator())
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(BatchSpanProcessor(CloudTraceSpanExporter()))
    trace.set_tracer_provider(tracer_provider)
    FastAPIInstrumentor.instrument_app(app)


# Initialize Limiter
limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="Coaching Billing API", version="1.0.0")

if settings.ENABLE_TRACING:
    configure_tracing(app)

# Add CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(CamelModel):
    plan_id: str = Field(..., max_length=100)
    success_url: str = Field(..., max_length=2048)
    cancel_url: str = Field(..., max_length=2048)


class CheckoutResponse(CamelModel):
    redirect_url: str
    session_id: str


class PortalResponse(CamelModel):
    redirect_url: str


class SubscriptionStatusResponse(BaseModel):
    subscription_status: Optional[str] = None
    subscription_plan: Optional[str] = None
    subscription_ends_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.post("/checkout", response_model=CheckoutResponse)
@limiter.limit("20/minute")
def create_checkout(
    body: CheckoutRequest,
    request: Request,
    current: CurrentAccount = Depends(get_current_account),
    service: CheckoutService = Depends(get_checkout_service),
):
    session = service.create_checkout(current.account_id, body.plan_id, body.success_url, body.cancel_url)
    return CheckoutResponse(redirect_url=session.redirect_url, session_id=session.session_id)


@app.post("/billing-portal", response_model=PortalResponse)
@limiter.limit("20/minute")
def create_billing_portal(
    request: Request,
    current: CurrentAccount = Depends(get_current_account),
    service: PortalService = Depends(get_portal_service),
):
    return PortalResponse(redirect_url=service.create_portal_session(current.account_id))


@app.get("/subscription-status", response_model=SubscriptionStatusResponse)
def subscription_status(
    current: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
):
    account = crud.get_account(db, current.account_id)
    if not account:
        raise AccountNotFound()
    return SubscriptionStatusResponse(
        subscription_status=account.subscription_status,
        subscription_plan=account.subscription_plan,
        subscription_ends_at=account.subscription_ends_at,
        trial_ends_at=account.trial_ends_at,
    )


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Stripe delivery endpoint. Authenticated by signature only.

    400 tells Stripe the delivery is bad and must not be retried as-is;
    500 asks Stripe to redeliver. Bodies never carry internal detail.
    """
    if not verifier.secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        return JSONResponse(status_code=500, content={"received": False})

    payload = await request.body()
    try:
        event = verifier.verify(payload, stripe_signature)
    except InvalidSignature as e:
        logger.warning(f"Rejected webhook delivery: {e.message}")
        return JSONResponse(status_code=400, content={"received": False})

    try:
        await run_in_threadpool(reconciler.apply, event)
    except Exception:
        logger.error(f"Error reconciling {event.event_type} {event.event_id}", exc_info=True)
        return JSONResponse(status_code=500, content={"received": False})

    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    # Listen on 0.0.0.0 because we are inside a container
    uvicorn.run(app, host="0.0.0.0", port=8080)
