"""
Order Pipeline — Mid-flight item addition

A waiter may add items to their own order while it is in preparation.
Item rows and the order's new total/commission are written in one database
transaction with the order row locked, so a failure leaves neither behind.
A still-valid instant-payment code was issued for the old total and is
cleared in the same update; the caller must start a new payment cycle.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from orderflow.core.clock import as_utc, utcnow
from orderflow.core.errors import InvalidArgument, InvalidTransition, NotFound, PermissionDenied, ValidationError
from orderflow.db.store import OrderStore, StoreTransaction
from orderflow.models.order import OrderStatus
from orderflow.services.pricing import commission_for, items_amount, to_money

logger = logging.getLogger(__name__)


@dataclass
class NewItem:
    product_id: str
    quantity: int
    notes: str | None = None


@dataclass
class AddItemsResult:
    order: dict[str, Any]
    added_items: list[dict[str, Any]] = field(default_factory=list)
    new_total: Decimal = Decimal("0.00")
    new_commission: Decimal = Decimal("0.00")
    added_amount: Decimal = Decimal("0.00")
    pix_invalidated: bool = False


def has_live_payment_code(order: dict[str, Any], now) -> bool:
    expires_at = as_utc(order.get("pix_expires_at"))
    return bool(order.get("pix_qr_code")) and expires_at is not None and expires_at > now


async def load_catalog(tx: StoreTransaction, items: list[NewItem]) -> dict[str, dict[str, Any]]:
    """Fetch menu rows for the requested items and reject unknown or unavailable ones."""
    product_ids = sorted({item.product_id for item in items})
    menu_rows = await tx.select("menu_items", {"id": product_ids})
    catalog = {row["id"]: row for row in menu_rows}
    for item in items:
        menu_item = catalog.get(item.product_id)
        if menu_item is None:
            raise ValidationError(f"Product {item.product_id} not found", product_id=item.product_id)
        if not menu_item["available"]:
            raise ValidationError(
                f"Product {menu_item['name']} is not available",
                product_id=item.product_id,
                product_name=menu_item["name"],
            )
    return catalog


def snapshot_rows(order_id: str, items: list[NewItem], catalog: dict[str, dict[str, Any]]) -> list[dict]:
    return [
        {
            "order_id": order_id,
            "menu_item_id": item.product_id,
            "item_name": catalog[item.product_id]["name"],
            "unit_price": to_money(catalog[item.product_id]["price"]),
            "quantity": item.quantity,
            "notes": item.notes,
        }
        for item in items
    ]


def validate_items(items: list[NewItem]) -> None:
    for item in items:
        if not item.product_id:
            raise InvalidArgument("Every item needs a product id")
        if item.quantity < 1:
            raise InvalidArgument(
                f"Quantity for product {item.product_id} must be at least 1",
                product_id=item.product_id,
            )


class OrderMutationHandler:
    def __init__(self, store: OrderStore, *, commission_rate: Decimal = Decimal("0.10"), clock: Callable = utcnow):
        self._store = store
        self._commission_rate = commission_rate
        self._clock = clock

    async def add_items(self, order_id: str, items: list[NewItem], waiter_id: str) -> AddItemsResult:
        if not order_id or not items:
            raise InvalidArgument("Order ID and items array are required")
        if not waiter_id:
            raise InvalidArgument("Waiter ID is required")
        validate_items(items)

        async with self._store.transaction() as tx:
            rows = await tx.select("orders", {"id": order_id, "deleted_at": None}, limit=1, for_update=True)
            if not rows:
                raise NotFound("Order not found", order_id=order_id)
            order = rows[0]

            if not order["waiter_id"]:
                raise PermissionDenied("Order must be created by a waiter", order_id=order_id)
            if order["waiter_id"] != waiter_id:
                raise PermissionDenied(
                    "You can only add items to your own orders",
                    order_id=order_id,
                    waiter_id=waiter_id,
                )
            if order["status"] != OrderStatus.IN_PREPARATION.value:
                raise InvalidTransition(
                    "Can only add items to orders in preparation",
                    current_status=order["status"],
                )

            catalog = await load_catalog(tx, items)
            now = self._clock()
            pix_invalidated = has_live_payment_code(order, now)

            inserted = await tx.insert("order_items", snapshot_rows(order_id, items, catalog))
            added_amount = items_amount(inserted)
            new_total = to_money(to_money(order["total_amount"]) + added_amount)
            new_commission = commission_for(new_total, self._commission_rate)

            patch: dict[str, Any] = {"total_amount": new_total, "commission_amount": new_commission}
            if pix_invalidated:
                patch.update(pix_qr_code=None, pix_generated_at=None, pix_expires_at=None)
            updated = await tx.update("orders", {"id": order_id}, patch)

        logger.info(
            "[AUDIT] Items added to order %s by waiter %s: %s | old_total=%s new_total=%s added=%s pix_invalidated=%s",
            order_id, waiter_id,
            ", ".join(f"{r['quantity']}x {r['item_name']} @ {r['unit_price']}" for r in inserted),
            order["total_amount"], new_total, added_amount, pix_invalidated,
        )
        return AddItemsResult(
            order=updated[0],
            added_items=inserted,
            new_total=new_total,
            new_commission=new_commission,
            added_amount=added_amount,
            pix_invalidated=pix_invalidated,
        )
