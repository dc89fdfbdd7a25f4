"""
Order Pipeline — Order status lifecycle

  pending ─► pending_payment ─► paid ─► in_preparation ─► ready ─► completed
     │                │                        ▲
     └────────────────┴── (staff / payment) ───┘
  any non-terminal ─► cancelled

completed and cancelled are terminal. ready never goes back to
in_preparation: a kitchen mistake is handled by cancelling and re-ordering.
"""
from datetime import datetime
from typing import Any

from orderflow.core.errors import InvalidTransition
from orderflow.models.order import OrderStatus

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PENDING_PAYMENT,
        OrderStatus.IN_PREPARATION,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PENDING_PAYMENT: frozenset({
        OrderStatus.PAID,
        OrderStatus.IN_PREPARATION,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAID: frozenset({
        OrderStatus.IN_PREPARATION,
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.IN_PREPARATION: frozenset({
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.READY: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Moves that require a confirmed payment and therefore belong to the
# payment coordinator, never to a kitchen action.
PAYMENT_GATED = frozenset({
    (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.IN_PREPARATION),
})

TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.READY: "ready_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Statuses the coordinator may move into in_preparation when confirming.
CONFIRMATION_ENTRY_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items()
    if status == OrderStatus.IN_PREPARATION or OrderStatus.IN_PREPARATION in targets
)


def is_terminal(status: str | OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def transition_patch(
    current: str | OrderStatus,
    target: str | OrderStatus,
    now: datetime,
    *,
    via_payment: bool = False,
) -> dict[str, Any]:
    """
    Validate a status change and return the row patch it requires.
    Raises InvalidTransition with the current status in its payload.
    """
    current, target = OrderStatus(current), OrderStatus(target)
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move order from '{current.value}' to '{target.value}'",
            current_status=current.value,
            target_status=target.value,
        )
    if (current, target) in PAYMENT_GATED and not via_payment:
        raise InvalidTransition(
            f"Moving from '{current.value}' to '{target.value}' requires a confirmed payment",
            current_status=current.value,
            target_status=target.value,
        )

    patch: dict[str, Any] = {"status": target.value}
    field = TIMESTAMP_FIELDS.get(target)
    if field:
        patch[field] = now
    if target == OrderStatus.CANCELLED:
        # a cancelled order can never be paid, so its payment code is dead
        patch.update(pix_qr_code=None, pix_generated_at=None, pix_expires_at=None)
    return patch
