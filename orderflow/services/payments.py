"""
Order Pipeline — Payment creation and gateway result intake

Every path that learns a payment was approved hands over to the
PaymentConfirmationCoordinator; this module never flips payment state itself.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from orderflow.clients.payment_gateway import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    GatewayPayment,
    Payer,
    PaymentGatewayClient,
    describe_status_detail,
)
from orderflow.core.clock import utcnow
from orderflow.core.errors import Conflict, GatewayError, InvalidArgument, InvalidTransition, NotFound
from orderflow.db.store import OrderStore
from orderflow.models.notification import ConfirmationSource
from orderflow.models.order import OrderStatus, PaymentStatus
from orderflow.services.confirmation import ConfirmationResult, PaymentConfirmationCoordinator
from orderflow.services.order_items import has_live_payment_code
from orderflow.services.pricing import to_money
from orderflow.services.state_machine import can_transition, is_terminal, transition_patch

logger = logging.getLogger(__name__)


@dataclass
class PixPayment:
    payment_id: str
    qr_code: str
    qr_code_base64: str | None
    amount: Decimal
    expires_at: datetime


@dataclass
class CardPaymentOutcome:
    success: bool
    payment_id: str
    status: str
    status_detail: str | None
    message: str
    confirmation: ConfirmationResult | None = None


@dataclass
class PaymentCheck:
    order_id: str
    payment_id: str | None
    status: str
    status_detail: str | None = None
    expires_at: datetime | None = None
    confirmation: ConfirmationResult | None = None


def placeholder_payer(order: dict[str, Any]) -> Payer:
    """Counter customers give a name and phone, not an e-mail."""
    name = (order.get("customer_name") or "Cliente").split()
    digits = "".join(ch for ch in (order.get("customer_phone") or "") if ch.isdigit())
    return Payer(
        email=f"{digits or order['id'][:8]}@placeholder.com",
        first_name=name[0],
        last_name=" ".join(name[1:]) or "Cliente",
    )


class PaymentService:
    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentGatewayClient,
        coordinator: PaymentConfirmationCoordinator,
        *,
        code_ttl: timedelta = timedelta(minutes=15),
        webhook_url: str | None = None,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._coordinator = coordinator
        self._code_ttl = code_ttl
        self._webhook_url = webhook_url
        self._clock = clock

    async def _load_order(self, order_id: str) -> dict[str, Any]:
        rows = await self._store.select("orders", {"id": order_id, "deleted_at": None}, limit=1)
        if not rows:
            raise NotFound("Order not found", order_id=order_id)
        return rows[0]

    def _ensure_payable(self, order: dict[str, Any]) -> None:
        if is_terminal(order["status"]):
            raise InvalidTransition(
                f"Cannot take payment for a {order['status']} order",
                current_status=order["status"],
            )
        if order["payment_status"] != PaymentStatus.PENDING.value:
            raise InvalidTransition(
                "Order payment status must be pending",
                current_status=order["payment_status"],
            )

    async def create_pix_payment(self, order_id: str) -> PixPayment:
        if not order_id:
            raise InvalidArgument("Order ID is required")
        order = await self._load_order(order_id)
        self._ensure_payable(order)

        now = self._clock()
        if has_live_payment_code(order, now):
            raise Conflict(
                "PIX already generated and not expired",
                qr_code=order["pix_qr_code"],
                expires_at=order["pix_expires_at"],
            )
        if order["pix_qr_code"]:
            # expired code: clear it before a new one can exist
            await self._store.update(
                "orders",
                {"id": order_id},
                {"pix_qr_code": None, "pix_generated_at": None, "pix_expires_at": None},
            )

        amount = to_money(order["total_amount"])
        payment = await self._gateway.create_payment(
            order_id,
            amount,
            placeholder_payer(order),
            description=f"Order #{order['order_number']} - {order['customer_name']}",
            expires_at=now + self._code_ttl,
            notification_url=self._webhook_url,
            metadata={"waiter_id": order["waiter_id"]} if order["waiter_id"] else None,
        )
        if not payment.code:
            raise GatewayError("Failed to generate PIX QR code", payment_id=payment.id)
        expires_at = payment.expires_at or now + self._code_ttl

        patch: dict[str, Any] = {
            "pix_qr_code": payment.code,
            "pix_generated_at": now,
            "pix_expires_at": expires_at,
            "mercadopago_payment_id": payment.id,
        }
        if order["status"] == OrderStatus.PENDING.value:
            patch.update(transition_patch(order["status"], OrderStatus.PENDING_PAYMENT, now))
        updated = await self._store.update("orders", {"id": order_id, "payment_confirmed_at": None}, patch)
        if not updated:
            raise Conflict("Order was paid while the payment code was being generated", order_id=order_id)

        logger.info("PIX generated for order %s: payment=%s expires=%s", order_id, payment.id, expires_at)
        return PixPayment(
            payment_id=payment.id,
            qr_code=payment.code,
            qr_code_base64=payment.code_base64,
            amount=amount,
            expires_at=expires_at,
        )

    async def charge_card(
        self,
        order_id: str,
        token: str,
        payment_method_id: str,
        payer: Payer,
    ) -> CardPaymentOutcome:
        if not order_id:
            raise InvalidArgument("Order ID is required")
        if not token:
            raise InvalidArgument("Card token is required")
        order = await self._load_order(order_id)
        self._ensure_payable(order)

        payment = await self._gateway.create_payment(
            order_id,
            to_money(order["total_amount"]),
            payer,
            description=f"Order #{order['order_number']}",
            card_token=token,
            payment_method_id=payment_method_id,
            notification_url=self._webhook_url,
        )
        logger.info("Card payment %s for order %s: %s (%s)", payment.id, order_id, payment.status, payment.status_detail)

        confirmation = None
        if payment.status in SUCCESS_STATUSES:
            confirmation = await self._coordinator.confirm_payment(
                order_id, ConfirmationSource.GATEWAY, payment_method="credit_card", payment_id=payment.id,
            )
        return CardPaymentOutcome(
            success=payment.status in SUCCESS_STATUSES,
            payment_id=payment.id,
            status=payment.status,
            status_detail=payment.status_detail,
            message=describe_status_detail(payment.status_detail),
            confirmation=confirmation,
        )

    async def check_status(self, order_id: str) -> PaymentCheck:
        """One client poll tick."""
        order = await self._load_order(order_id)
        payment_id = order["mercadopago_payment_id"]
        if order["payment_status"] == PaymentStatus.CONFIRMED.value:
            return PaymentCheck(order_id, payment_id, "approved")
        if not payment_id:
            raise NotFound("No payment has been created for this order", order_id=order_id)

        payment = await self._gateway.get_payment_status(payment_id)
        check = PaymentCheck(
            order_id, payment_id, payment.status, payment.status_detail, order["pix_expires_at"],
        )
        if payment.status in SUCCESS_STATUSES:
            check.confirmation = await self.confirm_from_gateway(order_id, payment, ConfirmationSource.WEBHOOK)
        return check

    async def confirm_from_gateway(
        self,
        order_id: str,
        payment: GatewayPayment,
        source: ConfirmationSource,
    ) -> ConfirmationResult:
        method = payment.payment_method_id
        if method and method != "pix":
            method = "credit_card"
        return await self._coordinator.confirm_payment(order_id, source, payment_method=method, payment_id=payment.id)

    async def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        if payload.get("type") != "payment":
            return {"success": True, "message": "Not a payment webhook"}
        payment_id = str((payload.get("data") or {}).get("id") or "")
        if not payment_id:
            raise InvalidArgument("Webhook payload has no payment id")

        payment = await self._gateway.get_payment_status(payment_id)
        order_id = payment.external_reference
        if not order_id:
            raise InvalidArgument("No order ID in payment metadata", payment_id=payment_id)

        if payment.status in SUCCESS_STATUSES:
            result = await self.confirm_from_gateway(order_id, payment, ConfirmationSource.WEBHOOK)
            return {
                "success": result.success,
                "order_id": order_id,
                "status": payment.status,
                "notification_sent": result.notification_sent,
                "error": result.error,
            }

        if payment.status in FAILURE_STATUSES:
            await self._cancel_for_failed_payment(order_id, payment)
        return {"success": True, "order_id": order_id, "status": payment.status}

    async def _cancel_for_failed_payment(self, order_id: str, payment: GatewayPayment) -> None:
        if payment.payment_method_id and payment.payment_method_id != "pix":
            # a declined card leaves the order open for another attempt
            logger.info("Card payment %s for order %s was %s, order stays open", payment.id, order_id, payment.status)
            return
        order = await self._load_order(order_id)
        if order["payment_status"] == PaymentStatus.CONFIRMED.value:
            logger.warning("Ignoring %s for order %s: payment already confirmed", payment.status, order_id)
            return
        if order["mercadopago_payment_id"] not in (None, payment.id):
            logger.info("Ignoring %s for superseded payment %s on order %s", payment.status, payment.id, order_id)
            return
        if not can_transition(order["status"], OrderStatus.CANCELLED):
            return
        patch = transition_patch(order["status"], OrderStatus.CANCELLED, self._clock())
        await self._store.update(
            "orders",
            {"id": order_id, "status": order["status"], "payment_confirmed_at": None},
            patch,
        )
        logger.info("Order %s cancelled after payment %s was %s", order_id, payment.id, payment.status)
