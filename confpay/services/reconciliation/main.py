"""HTTP surface for provider webhooks, record lookups and reconciliation tooling."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request

from confpay.common.config import settings
from confpay.common.db import SessionLocal
from confpay.common.logging import configure_logging, logger, trace_id_ctx
from confpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from confpay.common.startup import log_startup_config
from confpay.common.tracing import instrument_app, setup_tracing
from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.errors import (
    InvalidRequestError,
    PricingConfigNotFoundError,
    ProviderError,
    RecordNotFoundError,
    UnknownVerticalError,
    WebhookAuthError,
    WebhookPayloadError,
)
from confpay.services.reconciliation.models import RecordKind
from confpay.services.reconciliation.schemas import (
    AmountMismatch,
    CheckoutRequest,
    CheckoutResponse,
    DiscountSessionRequest,
    PayPalOrderRequest,
    RecordResponse,
    SweepReport,
    SyncReport,
)
from confpay.services.reconciliation.service import ReconciliationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "PAYPAL_BASE_URL",
        "PAYPAL_CLIENT_SECRET",
        "STALE_SWEEP_INTERVAL_SECONDS",
    ],
)
service = ReconciliationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the stale-record sweeper with the app lifecycle."""

    sweeper_task = None
    if settings.stale_sweep_interval_seconds > 0:
        sweeper_task = asyncio.create_task(service.stale_sweeper())
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()


app = FastAPI(title="confpay Reconciliation", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _kind(kind: str) -> RecordKind:
    try:
        return RecordKind(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown record kind {kind}") from exc


async def _webhook(vertical: str, request: Request, signature: str | None, kind: RecordKind) -> dict:
    payload = await request.body()
    try:
        ack = service.handle_webhook(vertical, payload, signature, kind)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=f"unknown vertical {exc}") from exc
    except WebhookAuthError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid signature: {exc.reason}") from exc
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}") from exc
    return ack.body()


@app.post("/webhooks/{vertical}")
async def payment_webhook(
    vertical: str,
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """Provider webhook for payment records of one vertical."""

    return await _webhook(vertical, request, stripe_signature, RecordKind.PAYMENT)


@app.post("/webhooks/{vertical}/discounts")
async def discount_webhook(
    vertical: str,
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """Provider webhook for discount records of one vertical."""

    return await _webhook(vertical, request, stripe_signature, RecordKind.DISCOUNT)


@app.get("/records/{vertical}/{kind}", response_model=list[RecordResponse])
def list_records(
    vertical: str,
    kind: str,
    customer_email: str | None = None,
    status: PaymentStatus | None = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    """Most recent records of one kind, optionally filtered by customer email and status."""

    try:
        records = service.list_records(vertical, _kind(kind), customer_email=customer_email, status=status, limit=limit)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [RecordResponse.model_validate(record) for record in records]


@app.get("/records/{vertical}/{kind}/{session_id}", response_model=RecordResponse)
def get_record(vertical: str, kind: str, session_id: str):
    """Stored state of one record."""

    try:
        return RecordResponse.model_validate(service.get_record(vertical, _kind(kind), session_id))
    except (UnknownVerticalError, RecordNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/records/{vertical}/{kind}/{session_id}/refresh", response_model=RecordResponse)
def refresh_record(vertical: str, kind: str, session_id: str):
    """Pull the session from the provider and update the stored record."""

    try:
        return RecordResponse.model_validate(service.refresh_session(vertical, _kind(kind), session_id))
    except (UnknownVerticalError, RecordNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/records/{vertical}/{kind}/{session_id}/expire", response_model=RecordResponse)
def expire_record(vertical: str, kind: str, session_id: str):
    """Expire the provider session and mark the record EXPIRED."""

    try:
        return RecordResponse.model_validate(service.expire_session(vertical, _kind(kind), session_id))
    except (UnknownVerticalError, RecordNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/records/{vertical}/{kind}/by-intent/{intent_id}/refresh", response_model=RecordResponse)
def refresh_record_by_intent(vertical: str, kind: str, intent_id: str):
    """Pull a payment intent from the provider and update the record carrying it."""

    try:
        return RecordResponse.model_validate(service.refresh_payment_intent(vertical, _kind(kind), intent_id))
    except (UnknownVerticalError, RecordNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/checkout/{vertical}", response_model=CheckoutResponse)
def create_checkout(vertical: str, req: CheckoutRequest, pricing_config_id: int = Query(...)):
    """Open a provider checkout for a pricing configuration."""

    try:
        return service.create_checkout_session(vertical, req, pricing_config_id)
    except (UnknownVerticalError, PricingConfigNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/discounts/{vertical}", response_model=CheckoutResponse)
def create_discount(vertical: str, req: DiscountSessionRequest):
    """Open a provider checkout for an ad-hoc discounted amount."""

    try:
        return service.create_discount_session(vertical, req)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/paypal/{vertical}/orders", response_model=CheckoutResponse)
def create_paypal_order(vertical: str, req: PayPalOrderRequest):
    """Create a PayPal order and return its approval URL."""

    try:
        return service.create_paypal_order(vertical, req)
    except (UnknownVerticalError, PricingConfigNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/paypal/{vertical}/orders/{order_id}/capture", response_model=RecordResponse)
def capture_paypal_order(vertical: str, order_id: str):
    """Capture an approved PayPal order and update its payment record."""

    try:
        return RecordResponse.model_validate(service.capture_paypal_order(vertical, order_id))
    except (UnknownVerticalError, RecordNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.post("/sync/all/{session_id}", response_model=list[SyncReport])
def sync_all(session_id: str):
    """Sync one session id in every vertical."""

    return service.sync_all_verticals(session_id)


@app.post("/sync/{vertical}/{session_id}", response_model=SyncReport)
def sync_session(vertical: str, session_id: str):
    """Converge the payment and discount record of one session."""

    try:
        return service.sync_session(vertical, session_id)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/sync/{vertical}", response_model=SweepReport)
def sync_vertical(vertical: str):
    """Sync every session of one vertical."""

    try:
        return service.sweep(vertical)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/maintenance/expire-stale")
def expire_stale(vertical: str | None = None):
    """Expire PENDING records past their provider expiry."""

    try:
        expired = service.expire_stale(vertical)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info("expire_stale_requested vertical=%s", vertical)
    return {"expired": expired}


@app.get("/anomalies/{vertical}/amount-mismatch", response_model=list[AmountMismatch])
def amount_mismatch(vertical: str):
    """Payment records whose amount differs from their pricing configuration."""

    try:
        return service.amount_mismatches(vertical)
    except UnknownVerticalError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/statistics")
def statistics():
    """Record counts by status and completed amounts per vertical."""

    return service.statistics()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
