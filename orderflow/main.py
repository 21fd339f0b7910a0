import asyncio
import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from . import settings
from .db import init_schema
from .errors import OrderflowError, OrderNotFound, RefundNotFound
from .models import (
    DeclineRequest,
    ItemsRequest,
    PayRequest,
    QuoteRequest,
    SelectDeliveryRequest,
    SellerActionRequest,
    ShippingRequest,
    StartCheckoutRequest,
)
from .services import Services, build_services
from .store import PostgresOrderStore
from .sweeper import run_sweeper

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    "invalid_request": 400,
    "not_found": 404,
    "conflict": 409,
    "setup_incomplete": 422,
    "invalid_details": 422,
    "declined": 402,
    "temporarily_unavailable": 503,
}
UNPROCESSABLE_CODES = {"MISSING_ADDRESS_FIELDS", "INVALID_AMOUNT"}


def status_for(error: OrderflowError) -> int:
    if error.code in UNPROCESSABLE_CODES:
        return 422
    return STATUS_BY_CATEGORY.get(error.category, 400)


def valid_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def create_app(services: Optional[Services] = None, sweep: Optional[bool] = None, webhook_secret: Optional[str] = None) -> FastAPI:
    services = services or build_services()
    sweep = settings.SWEEP_ENABLED if sweep is None else sweep
    webhook_secret = settings.PAYSTACK_SECRET_KEY if webhook_secret is None else webhook_secret

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(services.store, PostgresOrderStore):
            init_schema(services.store.url)
        stop = asyncio.Event()
        task = None
        if sweep:
            task = asyncio.create_task(run_sweeper(services.tracker, settings.SWEEP_INTERVAL_SECONDS, stop))
        try:
            yield
        finally:
            stop.set()
            if task is not None:
                await task

    app = FastAPI(title="Orderflow", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(OrderflowError)
    async def orderflow_error(request: Request, exc: OrderflowError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.code, "message": exc.user_message},
        )

    @app.get("/health")
    def health():
        return {"ok": True}

    # Delivery quotes

    @app.post("/delivery/quotes")
    async def delivery_quotes(req: QuoteRequest):
        quotes = await services.aggregator.get_quotes(req.origin, req.destination, req.parcel)
        return {"zone": quotes[0].zone if quotes else None, "quotes": quotes}

    # Checkout

    @app.post("/checkout")
    def start_checkout(req: StartCheckoutRequest):
        return services.checkout.start(req.buyer, req.seller, req.items)

    @app.get("/checkout/{session_id}")
    def get_checkout(session_id: str):
        return services.checkout.get(session_id)

    @app.delete("/checkout/{session_id}")
    def abandon_checkout(session_id: str):
        services.checkout.abandon(session_id)
        return {"ok": True}

    @app.put("/checkout/{session_id}/items")
    def set_items(session_id: str, req: ItemsRequest):
        return services.checkout.set_items(session_id, req.items)

    @app.put("/checkout/{session_id}/shipping")
    def set_shipping(session_id: str, req: ShippingRequest):
        return services.checkout.set_shipping_address(session_id, req.address)

    @app.post("/checkout/{session_id}/next")
    async def next_step(session_id: str):
        return await services.checkout.advance(session_id)

    @app.post("/checkout/{session_id}/back")
    def previous_step(session_id: str):
        return services.checkout.go_back(session_id)

    @app.post("/checkout/{session_id}/delivery")
    def select_delivery(session_id: str, req: SelectDeliveryRequest):
        return services.checkout.select_quote(session_id, req.quote_index)

    @app.post("/checkout/{session_id}/pay")
    async def pay(session_id: str, req: PayRequest):
        return await services.checkout.pay(session_id, payment_method=req.payment_method)

    # Orders

    @app.get("/orders/{order_id}")
    def get_order(order_id: str):
        order = services.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    @app.get("/orders/{order_id}/refund")
    def get_refund(order_id: str):
        refund = services.store.get_refund(order_id)
        if refund is None:
            raise RefundNotFound(f"No refund recorded for order {order_id}")
        return refund

    @app.post("/orders/{order_id}/commit")
    async def commit_order(order_id: str, req: SellerActionRequest):
        return await services.tracker.commit(order_id, req.seller_id)

    @app.post("/orders/{order_id}/decline")
    async def decline_order(order_id: str, req: DeclineRequest):
        refund = await services.tracker.decline(order_id, req.seller_id, req.reason)
        return {"order": services.store.get_order(order_id), "refund": refund}

    @app.post("/orders/{order_id}/refund/retry")
    async def retry_refund(order_id: str):
        return await services.compensator.retry_refund(order_id)

    # Jobs, for an external scheduler when the in-process sweeper is off

    @app.post("/jobs/expire-commits")
    async def expire_commits():
        return await services.tracker.expire_overdue()

    @app.post("/jobs/commit-reminders")
    async def commit_reminders():
        return {"sent": await services.tracker.send_reminders()}

    # Gateway webhooks

    @app.post("/webhooks/paystack")
    async def paystack_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None)):
        body = await request.body()
        if not valid_signature(webhook_secret, body, x_paystack_signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            event = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        kind = event.get("event", "")
        data = event.get("data") or {}
        if kind not in ("refund.processed", "refund.failed"):
            logger.info(f"Ignoring Paystack event {kind}")
            return {"ok": True, "handled": False}

        reference = data.get("id") or data.get("refund_reference")
        if reference is None:
            raise HTTPException(status_code=400, detail="Refund event without a reference")
        status = "processed" if kind == "refund.processed" else "failed"
        refund = services.compensator.settle_refund(str(reference), status, data)
        return {"ok": True, "handled": refund is not None}

    return app


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
