"""
Order Pipeline — Order creation and kitchen-side status changes
"""
import logging
from decimal import Decimal
from typing import Any, Callable

from orderflow.core.clock import utcnow
from orderflow.core.errors import Conflict, InvalidArgument, NotFound
from orderflow.db.store import OrderStore, StoreError
from orderflow.models.notification import NotificationType
from orderflow.models.order import OrderStatus, PaymentStatus
from orderflow.services.order_items import NewItem, load_catalog, snapshot_rows, validate_items
from orderflow.services.pricing import commission_for, items_amount
from orderflow.services.state_machine import transition_patch

logger = logging.getLogger(__name__)

STATUS_NOTIFICATIONS: dict[OrderStatus, NotificationType] = {
    OrderStatus.READY: NotificationType.ORDER_READY,
    OrderStatus.COMPLETED: NotificationType.ORDER_COMPLETED,
    OrderStatus.CANCELLED: NotificationType.ORDER_CANCELLED,
}

NotificationEnqueuer = Callable[[str, str], Any]

# order_number is max + 1 under a unique index; a concurrent create can take it first
ORDER_NUMBER_ATTEMPTS = 2


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        *,
        commission_rate: Decimal = Decimal("0.10"),
        enqueue_notification: NotificationEnqueuer | None = None,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._commission_rate = commission_rate
        self._enqueue_notification = enqueue_notification
        self._clock = clock

    async def create_order(
        self,
        customer_name: str,
        customer_phone: str | None,
        items: list[NewItem],
        *,
        waiter_id: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """
        Customer orders wait for payment; staff-assisted orders go straight to
        the kitchen and collect payment later.
        """
        if not customer_name:
            raise InvalidArgument("Customer name is required")
        if not items:
            raise InvalidArgument("At least one item is required")
        validate_items(items)

        staff_assisted = bool(waiter_id)
        status = OrderStatus.IN_PREPARATION if staff_assisted else OrderStatus.PENDING_PAYMENT

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            try:
                order, inserted, total = await self._insert_order(
                    customer_name, customer_phone, items, waiter_id, notes, status,
                )
                break
            except StoreError as exc:
                if exc.code != StoreError.DUPLICATE_KEY or attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Order number taken by a concurrent create, retrying: %s", exc)

        logger.info(
            "Order %s (#%s) created: status=%s total=%s waiter=%s",
            order["id"], order["order_number"], status.value, total, waiter_id,
        )
        return {**order, "items": inserted}

    async def _insert_order(
        self,
        customer_name: str,
        customer_phone: str | None,
        items: list[NewItem],
        waiter_id: str | None,
        notes: str | None,
        status: OrderStatus,
    ) -> tuple[dict[str, Any], list[dict[str, Any]], Decimal]:
        async with self._store.transaction() as tx:
            catalog = await load_catalog(tx, items)
            latest = await tx.select("orders", order_by="order_number", descending=True, limit=1)
            order_number = (latest[0]["order_number"] + 1) if latest else 1

            item_rows = snapshot_rows("", items, catalog)
            total = items_amount(item_rows)
            order = (await tx.insert("orders", [{
                "order_number": order_number,
                "customer_name": customer_name,
                "customer_phone": customer_phone,
                "notes": notes,
                "total_amount": total,
                "commission_amount": commission_for(total, self._commission_rate),
                "status": status.value,
                "payment_status": PaymentStatus.PENDING.value,
                "waiter_id": waiter_id,
                "created_by_waiter": bool(waiter_id),
                "created_at": self._clock(),
            }]))[0]
            for row in item_rows:
                row["order_id"] = order["id"]
            inserted = await tx.insert("order_items", item_rows)
        return order, inserted, total

    async def get_order(self, order_id: str) -> dict[str, Any]:
        rows = await self._store.select("orders", {"id": order_id, "deleted_at": None}, limit=1)
        if not rows:
            raise NotFound("Order not found", order_id=order_id)
        items = await self._store.select("order_items", {"order_id": order_id}, order_by="created_at")
        return {**rows[0], "items": items}

    async def change_status(self, order_id: str, target: OrderStatus | str) -> dict[str, Any]:
        """Kitchen action: advance, complete or cancel an order."""
        target = OrderStatus(target)
        rows = await self._store.select("orders", {"id": order_id, "deleted_at": None}, limit=1)
        if not rows:
            raise NotFound("Order not found", order_id=order_id)
        current = rows[0]["status"]

        patch = transition_patch(current, target, self._clock())
        # Filtering on the status we read turns a concurrent change into a miss.
        updated = await self._store.update("orders", {"id": order_id, "status": current}, patch)
        if not updated:
            raise Conflict(
                "Order status changed concurrently, reload and try again",
                order_id=order_id,
                expected_status=current,
            )

        logger.info("Order %s moved %s -> %s", order_id, current, target.value)
        event = STATUS_NOTIFICATIONS.get(target)
        if event is not None and updated[0].get("customer_phone"):
            self._schedule_notification(order_id, event)
        return updated[0]

    def _schedule_notification(self, order_id: str, event: NotificationType) -> None:
        if self._enqueue_notification is None:
            return
        try:
            self._enqueue_notification(order_id, event.value)
        except Exception as exc:
            logger.warning("Could not enqueue %s notification for order %s: %s", event.value, order_id, exc)
