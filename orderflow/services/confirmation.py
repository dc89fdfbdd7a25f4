"""
Order Pipeline — Payment confirmation coordinator

Single entry point for every path that learns a payment succeeded (staff
button, gateway webhook, client polling, direct card approval):

  1. validate input
  2. dedup: a payment_confirmed / order_created notification sent for this
     order inside the window means someone already confirmed → short-circuit.
     A failing lookup counts as "not notified" (fail-open).
  3. one filtered update flips the order to in_preparation / confirmed.
     Failure here fails the whole confirmation.
  4. notify the customer, best effort
  5. append to payment_confirmation_log

Concurrent confirmations of the same order are tolerated: the update only
matches rows whose payment is still unconfirmed, so payment_confirmed_at is
written once even if two callers slip past the dedup check together.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from orderflow.core.clock import utcnow
from orderflow.core.errors import (
    DuplicateKey,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    PaymentAlreadyConfirmed,
    PermissionDenied,
    PipelineError,
    UpdateFailed,
)
from orderflow.db.store import OrderStore, StoreError, gte, not_in
from orderflow.models.notification import ConfirmationSource, NotificationStatus, NotificationType
from orderflow.models.order import OrderStatus, PaymentStatus
from orderflow.services.notifications import NotificationDispatcher
from orderflow.services.state_machine import CONFIRMATION_ENTRY_STATUSES, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

DEDUP_NOTIFICATION_TYPES = (
    NotificationType.PAYMENT_CONFIRMED.value,
    NotificationType.ORDER_CREATED.value,
)


@dataclass
class ConfirmationResult:
    success: bool
    order_id: str
    notification_sent: bool
    error: str | None = None
    warning: str | None = None
    duplicate: bool = False


def classify_store_error(exc: StoreError, order_id: str) -> PipelineError:
    if exc.code == StoreError.NOT_FOUND:
        return NotFound(f"Order not found: {order_id}", order_id=order_id)
    if exc.code == StoreError.DUPLICATE_KEY:
        return DuplicateKey("Duplicate key violation - order may already be confirmed", order_id=order_id)
    if exc.code == StoreError.PERMISSION_DENIED:
        return PermissionDenied("Permission denied - insufficient privileges to update order", order_id=order_id)
    return UpdateFailed(f"Database update failed: {exc}", order_id=order_id)


class PaymentConfirmationCoordinator:
    def __init__(
        self,
        store: OrderStore,
        dispatcher: NotificationDispatcher,
        *,
        dedup_window: timedelta = timedelta(minutes=5),
        clock: Callable = utcnow,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._dedup_window = dedup_window
        self._clock = clock

    async def confirm_payment(
        self,
        order_id: str,
        source: ConfirmationSource | str,
        payment_method: str | None = None,
        payment_id: str | None = None,
    ) -> ConfirmationResult:
        raw_source = str(getattr(source, "value", source))
        logger.info(
            "Payment confirmation requested: order=%s source=%s method=%s payment=%s",
            order_id, raw_source, payment_method, payment_id,
        )
        audit = {"source": raw_source, "payment_method": payment_method, "payment_id": payment_id}

        try:
            try:
                source = ConfirmationSource(source)
            except ValueError:
                raise InvalidArgument(f"Unknown confirmation source: {source}") from None
            if not order_id:
                raise InvalidArgument("Order ID is required")

            if await self._was_recently_notified(order_id):
                logger.info("Confirmation for order %s skipped: notification recently sent", order_id)
                await self._log_event(order_id, "duplicate_confirmation_attempt",
                                      error="notification_recently_sent", **audit)
                return ConfirmationResult(
                    success=True,
                    order_id=order_id,
                    notification_sent=False,
                    warning="Notification already sent recently",
                    duplicate=True,
                )

            try:
                order = await self._apply_confirmation(order_id, payment_method, payment_id)
            except PaymentAlreadyConfirmed as exc:
                logger.info("Order %s payment was already confirmed", order_id)
                await self._log_event(order_id, "duplicate_confirmation_attempt", error=exc.message, **audit)
                return ConfirmationResult(
                    success=True,
                    order_id=order_id,
                    notification_sent=False,
                    warning=exc.message,
                    duplicate=True,
                )
        except Exception as exc:
            logger.exception("Payment confirmation failed for order %s", order_id)
            await self._log_event(order_id, "payment_confirmation_failed", error=str(exc), **audit)
            return ConfirmationResult(
                success=False,
                order_id=order_id,
                notification_sent=False,
                error=str(exc),
            )

        notification_sent = await self._notify_customer(order, audit)
        await self._log_event(order_id, "payment_confirmed", notification_sent=notification_sent, **audit)
        logger.info(
            "Payment confirmed: order=%s number=%s source=%s notification_sent=%s",
            order_id, order.get("order_number"), source.value, notification_sent,
        )
        return ConfirmationResult(
            success=True,
            order_id=order_id,
            notification_sent=notification_sent,
            warning=None if notification_sent else "Customer notification was not sent",
        )

    async def _was_recently_notified(self, order_id: str) -> bool:
        since = self._clock() - self._dedup_window
        try:
            rows = await self._store.select(
                "notifications",
                {
                    "order_id": order_id,
                    "notification_type": DEDUP_NOTIFICATION_TYPES,
                    "status": NotificationStatus.SENT.value,
                    "sent_at": gte(since),
                },
                limit=1,
            )
        except StoreError as exc:
            logger.error("Dedup check failed for order %s, proceeding: %s", order_id, exc)
            return False
        if rows:
            logger.info(
                "Recent notification found for order %s: %s sent at %s",
                order_id, rows[0]["notification_type"], rows[0]["sent_at"],
            )
        return bool(rows)

    async def _apply_confirmation(
        self,
        order_id: str,
        payment_method: str | None,
        payment_id: str | None,
    ) -> dict[str, Any]:
        patch: dict[str, Any] = {
            "status": OrderStatus.IN_PREPARATION.value,
            "payment_status": PaymentStatus.CONFIRMED.value,
            "payment_confirmed_at": self._clock(),
        }
        if payment_method:
            patch["payment_method"] = payment_method
        if payment_id:
            patch["mercadopago_payment_id"] = payment_id

        try:
            rows = await self._store.update(
                "orders",
                {
                    "id": order_id,
                    "payment_confirmed_at": None,
                    "status": [s.value for s in CONFIRMATION_ENTRY_STATUSES],
                },
                patch,
            )
            if rows:
                return rows[0]

            # Nothing matched: find out why before deciding.
            existing = await self._store.select("orders", {"id": order_id}, limit=1)
            if not existing:
                raise NotFound(f"Order not found: {order_id}", order_id=order_id)
            current = existing[0]
            if current["payment_confirmed_at"] is not None:
                raise PaymentAlreadyConfirmed("Payment already confirmed", order_id=order_id)
            if current["status"] in {s.value for s in TERMINAL_STATUSES}:
                raise InvalidTransition(
                    f"Cannot confirm payment for a {current['status']} order",
                    current_status=current["status"],
                )

            # Food went out before the money came in: keep the kitchen status.
            patch.pop("status")
            rows = await self._store.update(
                "orders",
                {
                    "id": order_id,
                    "payment_confirmed_at": None,
                    "status": not_in(s.value for s in TERMINAL_STATUSES),
                },
                patch,
            )
            if not rows:
                raise PaymentAlreadyConfirmed("Payment already confirmed", order_id=order_id)
            return rows[0]
        except StoreError as exc:
            raise classify_store_error(exc, order_id) from exc

    async def _notify_customer(self, order: dict[str, Any], audit: dict[str, Any]) -> bool:
        order_id = order["id"]
        if not order.get("customer_phone"):
            logger.warning("Order %s has no customer phone, skipping notification", order_id)
            await self._log_event(order_id, "notification_skipped", error="no_phone_number", **audit)
            return False
        try:
            await self._dispatcher.notify(NotificationType.PAYMENT_CONFIRMED, order_id, order=order)
        except Exception as exc:
            logger.error("Payment notification failed for order %s: %s", order_id, exc, exc_info=True)
            await self._log_event(order_id, "notification_failed", error=str(exc), **audit)
            return False
        return True

    async def _log_event(
        self,
        order_id: str,
        event: str,
        *,
        source: str,
        payment_method: str | None = None,
        payment_id: str | None = None,
        notification_sent: bool = False,
        error: str | None = None,
    ) -> None:
        entry = {
            "order_id": order_id or "",
            "event": event,
            "source": source,
            "payment_method": payment_method,
            "payment_id": payment_id,
            "notification_sent": notification_sent,
            "notification_error": error,
            "created_at": self._clock(),
        }
        try:
            await self._store.insert("payment_confirmation_log", [entry])
        except StoreError as exc:
            logger.error("Could not write payment_confirmation_log %s for order %s: %s", event, order_id, exc)
