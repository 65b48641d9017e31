"""HTTP surface for gateway webhooks, checkout, and the retry workers.

Webhooks always acknowledge with 200 so gateways do not start retry storms.
The exceptions are a failed status write (500, the gateway should redeliver)
and, when enabled per provider, a malformed body (400).
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter
from urllib.parse import parse_qsl
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from dealpay.common.config import settings
from dealpay.common.db import SessionLocal
from dealpay.common.logging import configure_logging, log_context, logger
from dealpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    webhook_latency_seconds,
    webhook_notifications_total,
)
from dealpay.common.startup import log_startup_config
from dealpay.common.state_machine import is_terminal
from dealpay.common.tracing import instrument_app, setup_tracing
from dealpay.services.payments.checkout import CheckoutService, UpstreamError, VivaWalletClient
from dealpay.services.payments.fulfillment import FulfillmentService
from dealpay.services.payments.models import PaymentOrder
from dealpay.services.payments.normalizers import MYPOS, VIVA_WALLET, ProviderAdapter
from dealpay.services.payments.reconciler import Reconciler, StatusPersistError
from dealpay.services.payments.schemas import CheckoutRequest, OrderStatusResponse

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Client-Info, Apikey, X-Api-Key, X-User-Id",
}

configure_logging()
setup_tracing(settings)
log_startup_config(settings)
fulfillment = FulfillmentService(
    SessionLocal,
    service_name=settings.service_name,
    allow_negative_stock=settings.inventory_allow_negative_stock,
    max_retries=settings.fulfillment_max_retries,
)
reconciler = Reconciler(SessionLocal, fulfillment, service_name=settings.service_name)
checkout = CheckoutService(
    SessionLocal,
    VivaWalletClient(
        base_url=settings.viva_wallet_base_url,
        accounts_url=settings.viva_wallet_accounts_url,
        client_id=settings.viva_wallet_client_id,
        client_secret=settings.viva_wallet_client_secret,
        timeout=settings.viva_wallet_timeout_seconds,
    ),
    checkout_url=settings.viva_wallet_checkout_url,
    source_code=settings.viva_wallet_source_code,
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and retry consumer with the app lifecycle."""

    if not settings.workers_enabled:
        yield
        return
    publisher_task = asyncio.create_task(fulfillment.outbox_publisher())
    consumer_task = asyncio.create_task(fulfillment.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await fulfillment.kafka.close()


app = FastAPI(title="Dealpay Payments", lifespan=lifespan)
instrument_app(app, settings)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
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


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


async def _read_payload(request: Request) -> dict | None:
    """Decode a JSON or form-encoded notification body into a dict."""

    body = await request.body()
    try:
        if "application/x-www-form-urlencoded" in request.headers.get("content-type", ""):
            return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        data = json.loads(body)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def _process_notification(
    request: Request, adapter: ProviderAdapter, reject_malformed: bool, trace_id: str | None
) -> str:
    """Run one notification through the reconciler.

    Returns `ok`, `rejected` (malformed body under the strict policy) or
    `error` (status write failed).
    """

    trace_id = trace_id or str(uuid4())
    payload = await _read_payload(request)
    with log_context(trace_id=trace_id, provider=adapter.name):
        if payload is None:
            logger.warning("malformed_notification_body provider=%s", adapter.name)
            webhook_notifications_total.labels(
                service=settings.service_name, provider=adapter.name, outcome="malformed_body"
            ).inc()
            return "rejected" if reject_malformed else "ok"

        with log_context(correlation_id=adapter.correlation_id(payload)):
            logger.info("notification_received provider=%s payload=%s", adapter.name, payload)
            with webhook_latency_seconds.labels(service=settings.service_name, provider=adapter.name).time():
                try:
                    reconciler.reconcile(adapter, payload, trace_id=trace_id)
                except StatusPersistError:
                    return "error"
                except Exception:
                    logger.exception("notification_handling_failed provider=%s", adapter.name)
    return "ok"


@app.options("/webhooks/mypos")
@app.options("/webhooks/viva-wallet")
@app.options("/checkout/viva-wallet/orders")
def preflight():
    """Permissive CORS preflight."""

    return Response(status_code=200, headers=CORS_HEADERS)


@app.get("/webhooks/mypos")
def mypos_webhook_status():
    return JSONResponse(
        {"status": "active", "message": "myPOS Webhook Active"},
        headers=CORS_HEADERS,
    )


@app.post("/webhooks/mypos")
async def mypos_webhook(request: Request, x_trace_id: str | None = Header(default=None)):
    """myPOS payment notification."""

    result = await _process_notification(request, MYPOS, settings.mypos_reject_malformed_body, x_trace_id)
    if result == "rejected":
        return JSONResponse({"status": "error", "detail": "malformed body"}, status_code=400, headers=CORS_HEADERS)
    if result == "error":
        return JSONResponse({"status": "error"}, status_code=500, headers=CORS_HEADERS)
    return JSONResponse({"status": "ok"}, headers=CORS_HEADERS)


@app.get("/webhooks/viva-wallet")
def viva_wallet_webhook_status(key: str | None = None):
    """Echo the verification key Viva Wallet sends when registering the URL."""

    return PlainTextResponse(key or "Viva Wallet Webhook Active", headers=CORS_HEADERS)


@app.post("/webhooks/viva-wallet")
async def viva_wallet_webhook(request: Request, x_trace_id: str | None = Header(default=None)):
    """Viva Wallet transaction notification."""

    result = await _process_notification(request, VIVA_WALLET, settings.viva_wallet_reject_malformed_body, x_trace_id)
    if result == "rejected":
        return PlainTextResponse("Bad Request", status_code=400, headers=CORS_HEADERS)
    if result == "error":
        return PlainTextResponse("ERROR", status_code=500, headers=CORS_HEADERS)
    return PlainTextResponse("OK", headers=CORS_HEADERS)


@app.post("/checkout/viva-wallet/orders")
async def create_viva_wallet_checkout(
    req: CheckoutRequest,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Create a Viva Wallet checkout and a pending payment order."""

    enforce_api_key(x_api_key)
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing user session")
    try:
        result = await checkout.create_viva_wallet_order(req, x_user_id)
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=exc.detail) from exc
    except SQLAlchemyError as exc:
        logger.error("checkout_order_persist_failed order_id=%s error=%s", req.order_id, exc)
        raise HTTPException(status_code=500, detail="failed to record payment order") from exc
    return JSONResponse(result.model_dump(by_alias=True), headers=CORS_HEADERS)


@app.get("/orders/{correlation_id}", response_model=OrderStatusResponse)
def get_order(correlation_id: str):
    """Fetch current payment status for one gateway order."""

    with SessionLocal() as db:
        order = db.execute(
            select(PaymentOrder).where(PaymentOrder.correlation_id == correlation_id)
        ).scalar_one_or_none()
        if not order:
            raise HTTPException(status_code=404, detail="order not found")
        return OrderStatusResponse(
            correlation_id=order.correlation_id,
            order_id=order.order_id,
            status=order.status,
            terminal=is_terminal(order.status),
            fulfilled=order.fulfilled_at is not None,
        )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
