"""
Order Pipeline — Customer notification dispatcher

notify() renders the message for an order event, records it in the
notifications table, delivers it through the messaging channel and marks the
record sent or failed. Any failure is raised as NotificationError; callers
treat it as non-fatal.
"""
import logging
import re
from typing import Any, Callable

from orderflow.clients.messaging import MessagingClient, MessagingError
from orderflow.core.clock import utcnow
from orderflow.core.errors import NotificationError
from orderflow.db.store import OrderStore, StoreError
from orderflow.models.notification import NotificationStatus, NotificationType

logger = logging.getLogger(__name__)

TEMPLATES: dict[NotificationType, str] = {
    NotificationType.ORDER_CREATED: (
        "Hi {first_name}! We received order #{order_number}.\n"
        "Total: R$ {total}\n"
        "Track it here: {status_url}"
    ),
    NotificationType.PAYMENT_CONFIRMED: (
        "Payment confirmed! Order #{order_number} is now being prepared.\n"
        "Total paid: R$ {total}"
    ),
    NotificationType.ORDER_READY: (
        "{first_name}, order #{order_number} is ready for pickup at the counter!"
    ),
    NotificationType.ORDER_COMPLETED: (
        "Order #{order_number} completed. Thanks, {first_name}, enjoy your meal!"
    ),
    NotificationType.ORDER_CANCELLED: (
        "Order #{order_number} was cancelled. Please talk to our staff if this is unexpected."
    ),
}


def normalize_phone(phone: str | None, country_code: str = "55") -> str | None:
    """
    Digits-only international number, e.g. "(11) 99999-9999" -> "5511999999999".
    Returns None when the number cannot be a valid mobile number.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        digits = digits[1:]
    if not digits.startswith(country_code) and len(digits) <= 11:
        digits = country_code + digits
    if not 12 <= len(digits) <= 15:
        return None
    return digits


def render_message(event_type: NotificationType, order: dict[str, Any], base_url: str = "") -> str:
    name = (order.get("customer_name") or "").strip()
    context = {
        "first_name": name.split(" ")[0] if name else "there",
        "order_number": order.get("order_number") or str(order["id"])[:8],
        "total": f"{order.get('total_amount') or 0:.2f}",
        "status_url": f"{base_url}/order-status/{order['id']}",
    }
    return TEMPLATES[event_type].format(**context)


class NotificationDispatcher:
    def __init__(
        self,
        store: OrderStore,
        messaging: MessagingClient,
        *,
        base_url: str = "",
        country_code: str = "55",
        clock: Callable = utcnow,
    ):
        self._store = store
        self._messaging = messaging
        self._base_url = base_url.rstrip("/")
        self._country_code = country_code
        self._clock = clock

    async def notify(
        self,
        event_type: NotificationType | str,
        order_id: str,
        order: dict[str, Any] | None = None,
    ) -> None:
        event_type = NotificationType(event_type)
        try:
            if order is None:
                rows = await self._store.select("orders", {"id": order_id}, limit=1)
                if not rows:
                    raise NotificationError(f"Order {order_id} not found", order_id=order_id)
                order = rows[0]

            phone = normalize_phone(order.get("customer_phone"), self._country_code)
            if phone is None:
                raise NotificationError(
                    f"Order {order_id} has no valid phone number",
                    order_id=order_id,
                )

            message = render_message(event_type, order, self._base_url)
            record = (await self._store.insert("notifications", [{
                "order_id": order_id,
                "notification_type": event_type.value,
                "phone": phone,
                "message": message,
                "status": NotificationStatus.PENDING.value,
                "attempts": 0,
            }]))[0]
        except StoreError as exc:
            raise NotificationError(f"Could not record notification: {exc}", order_id=order_id) from exc

        try:
            await self._messaging.send_text(phone, message)
        except MessagingError as exc:
            logger.warning("Notification %s for order %s failed: %s", event_type.value, order_id, exc)
            await self._mark(record["id"], NotificationStatus.FAILED, error_message=str(exc))
            raise NotificationError(str(exc), order_id=order_id) from exc

        await self._mark(record["id"], NotificationStatus.SENT, sent_at=self._clock())
        logger.info("Notification %s sent for order %s", event_type.value, order_id)

    async def _mark(self, notification_id: str, status: NotificationStatus, **fields) -> None:
        try:
            await self._store.update(
                "notifications",
                {"id": notification_id},
                {"status": status.value, "attempts": 1, **fields},
            )
        except StoreError as exc:
            if status == NotificationStatus.SENT:
                # delivered, but the dedup window will not see it
                logger.error("Notification %s delivered but not marked sent: %s", notification_id, exc)
                return
            raise NotificationError(f"Could not update notification {notification_id}: {exc}") from exc
