from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text

from billing import (
    BaseWebhookAdapter,
    PaymentProvider,
    ReconciliationCoordinator,
    get_webhook_adapter,
    init_billing_db,
    process_webhook,
    session_scope,
)
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    LOG_LEVEL,
    PAYPAL_WEBHOOK_ID,
    PAYSTACK_SECRET_KEY,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
    WEBHOOK_SIGNATURE_REQUIRED,
)
from errors import explain_error
from observability import configure_json_logging, get_logger, log_event

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("crm_billing.api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if STARTUP_BOOTSTRAP_ENABLED:
        init_billing_db()
    yield


app = FastAPI(title="CRM Billing Reconciliation", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)

_COORDINATOR: Optional[ReconciliationCoordinator] = None


def get_coordinator() -> ReconciliationCoordinator:
    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = ReconciliationCoordinator()
    return _COORDINATOR


def get_adapter(provider: PaymentProvider) -> BaseWebhookAdapter:
    return get_webhook_adapter(provider, signature_required=WEBHOOK_SIGNATURE_REQUIRED)


def _normalize_request_path(path: str) -> str:
    normalized = path or "/"
    if ROOT_PATH and normalized.startswith(ROOT_PATH):
        stripped = normalized[len(ROOT_PATH):]
        normalized = stripped if stripped.startswith("/") else f"/{stripped}"
    return normalized or "/"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=_normalize_request_path(request.url.path),
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=_normalize_request_path(request.url.path),
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


class WebhookAckResponse(BaseModel):
    received: bool
    outcome: Optional[str] = None
    provider: Optional[str] = None
    event_type: Optional[str] = None
    provider_correlation_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    notification_id: Optional[str] = None
    notification_enqueued: bool = False
    detail: Optional[str] = None


class BillingPlanResponse(BaseModel):
    plan_id: str
    name: str
    amount_minor: int
    amount: str
    currency: str
    interval: str
    features: List[str] = Field(default_factory=list)


async def _handle_webhook(request: Request, provider: PaymentProvider) -> JSONResponse:
    trace_id = _request_trace_id(request)
    raw = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}
    result = await asyncio.to_thread(
        process_webhook,
        get_coordinator(),
        get_adapter(provider),
        raw,
        headers,
        trace_id=trace_id,
    )
    body: Dict[str, Any] = dict(result.body)
    if result.status_code == 200:
        body = WebhookAckResponse(**body).model_dump()
    else:
        error_code = str(body.get("error_code") or "")
        hint = explain_error(error_code)
        if hint:
            body["hint"] = hint["hint"]
        body["trace_id"] = trace_id
    return JSONResponse(
        status_code=result.status_code,
        content=body,
        headers={**result.headers, "X-Trace-Id": trace_id},
    )


@app.post("/webhooks/paystack", response_model=WebhookAckResponse)
async def paystack_webhook(request: Request) -> JSONResponse:
    """
    Paystack event endpoint.

    Requires `x-paystack-signature` (HMAC-SHA512 of the raw body). Every handled
    outcome is acknowledged with 200; 503 asks Paystack to redeliver.
    """

    return await _handle_webhook(request, PaymentProvider.PAYSTACK)


@app.post("/webhooks/paypal", response_model=WebhookAckResponse)
async def paypal_webhook(request: Request) -> JSONResponse:
    """
    PayPal event endpoint.

    Verifies the `paypal-transmission-*` headers offline against the PayPal
    signing certificate before the body is trusted.
    """

    return await _handle_webhook(request, PaymentProvider.PAYPAL)


@app.get("/billing/plans", response_model=List[BillingPlanResponse])
async def billing_plans() -> List[BillingPlanResponse]:
    catalog = get_coordinator().catalog
    return [BillingPlanResponse(**plan.to_dict()) for plan in catalog.list()]


@app.get("/billing/plans/{plan_id}", response_model=BillingPlanResponse)
async def billing_plan(plan_id: str) -> BillingPlanResponse:
    plan = get_coordinator().catalog.get(plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="plan not found")
    return BillingPlanResponse(**plan.to_dict())


def _build_health_report() -> Dict[str, Any]:
    coordinator = get_coordinator()
    report: Dict[str, Any] = {
        "status": "ok",
        "api": "ok",
        "db": "ok",
        "version": app.version,
        "root_path": ROOT_PATH,
        "api_host": API_HOST,
        "api_port": API_PORT,
        "tenant_lock_backend": coordinator.locks.backend,
        "details": {},
    }

    db_started = time.perf_counter()
    try:
        with session_scope(coordinator.session_factory) as session:
            session.execute(text("SELECT 1"))
        report["details"]["db_latency_ms"] = int((time.perf_counter() - db_started) * 1000)
    except Exception as exc:  # noqa: BLE001
        report["db"] = "error"
        report["details"]["db"] = str(exc)
        report["status"] = "degraded"

    missing: list[str] = []
    if WEBHOOK_SIGNATURE_REQUIRED:
        if not PAYSTACK_SECRET_KEY:
            missing.append("PAYSTACK_SECRET_KEY")
        if not PAYPAL_WEBHOOK_ID:
            missing.append("PAYPAL_WEBHOOK_ID")
    if missing:
        report["details"]["webhook_config_missing"] = missing
        report["status"] = "degraded"
    return report


@app.get("/health")
async def health() -> dict:
    return await asyncio.to_thread(_build_health_report)
