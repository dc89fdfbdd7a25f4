"""
Order Pipeline — Payments API

Every route that can learn "approved" (manual confirm, status tick, SSE
stream, webhook, card approval) ends in the same confirmation coordinator.
"""
import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse

from orderflow.api.deps import get_services
from orderflow.clients.payment_gateway import Payer
from orderflow.core.config import get_settings
from orderflow.core.errors import NotFound
from orderflow.models.order import PaymentStatus
from orderflow.schemas.payment import (
    CardPaymentRequest,
    CardPaymentResponse,
    ConfirmationResponse,
    ManualConfirmationRequest,
    PaymentStatusResponse,
    PixPaymentResponse,
    WebhookPayload,
)
from orderflow.services.container import ServiceContainer

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(tags=["payments"])


@router.post(
    "/orders/{order_id}/payments/pix",
    response_model=PixPaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_pix_payment(order_id: str, services: ServiceContainer = Depends(get_services)):
    pix = await services.payments.create_pix_payment(order_id)
    return PixPaymentResponse(**asdict(pix))


@router.post("/orders/{order_id}/payments/card", response_model=CardPaymentResponse)
async def charge_card(
    order_id: str,
    payload: CardPaymentRequest,
    services: ServiceContainer = Depends(get_services),
):
    outcome = await services.payments.charge_card(
        order_id,
        payload.token,
        payload.payment_method_id,
        Payer(**payload.payer.model_dump()),
    )
    return CardPaymentResponse(**asdict(outcome))


@router.post("/orders/{order_id}/payments/confirm", response_model=ConfirmationResponse)
async def confirm_payment(
    order_id: str,
    payload: ManualConfirmationRequest | None = None,
    services: ServiceContainer = Depends(get_services),
):
    """Staff confirms a payment taken at the counter (cash, card machine, ...)."""
    payload = payload or ManualConfirmationRequest()
    result = await services.coordinator.confirm_payment(
        order_id, payload.source, payload.payment_method, payload.payment_id,
    )
    return ConfirmationResponse(**asdict(result))


@router.get("/orders/{order_id}/payments/status", response_model=PaymentStatusResponse)
async def payment_status(order_id: str, services: ServiceContainer = Depends(get_services)):
    check = await services.payments.check_status(order_id)
    return PaymentStatusResponse(**asdict(check))


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def _sse_generator(
    order: dict[str, Any],
    services: ServiceContainer,
    request: Request,
) -> AsyncGenerator[str, None]:
    """Relay the order's shared poll loop to this client."""
    queue, task = services.watches.subscribe(order["mercadopago_payment_id"], order["id"], order["pix_expires_at"])
    try:
        yield f": watching payment for order {order['id']}\n\n"
        yield f"retry: {settings.SSE_RETRY_MILLISECONDS}\n\n"

        idle = 0.0
        while True:
            if await request.is_disconnected():
                logger.info("Client left the payment stream for order %s", order["id"])
                break

            if task.done() and queue.empty():
                if task.cancelled() or task.exception() is not None:
                    yield _sse("error", {"order_id": order["id"], "message": "Payment watch stopped"})
                else:
                    result = task.result()
                    yield _sse("result", {
                        "order_id": result.order_id,
                        "outcome": result.outcome.value,
                        "status": result.status,
                        "checks": result.checks,
                    })
                break

            try:
                event, data = await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                idle += 1.0
                if idle >= settings.SSE_KEEPALIVE_INTERVAL_SECONDS:
                    idle = 0.0
                    yield ": keepalive\n\n"
                continue
            idle = 0.0
            yield _sse(event, data)
    finally:
        await services.watches.unsubscribe(order["id"], queue)


@router.get("/orders/{order_id}/payments/stream")
async def stream_payment_status(
    order_id: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    """
    SSE endpoint for the payment screen. Streams status changes until the
    payment is confirmed, fails or its code expires; closing the EventSource
    stops the poller.
    """
    order = await services.orders.get_order(order_id)
    if order["payment_status"] == PaymentStatus.CONFIRMED.value:
        async def already_confirmed():
            yield _sse("confirmed", {"order_id": order_id, "notification_sent": False})

        return StreamingResponse(already_confirmed(), media_type="text/event-stream")
    if not order["mercadopago_payment_id"] or not order["pix_expires_at"]:
        raise NotFound("No pending instant payment for this order", order_id=order_id)

    return StreamingResponse(
        _sse_generator(order, services, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@router.post("/payments/webhook")
async def payment_webhook(payload: WebhookPayload, services: ServiceContainer = Depends(get_services)):
    """Gateway notification; the payment is re-read from the gateway before acting."""
    return await services.payments.handle_webhook(payload.model_dump())
