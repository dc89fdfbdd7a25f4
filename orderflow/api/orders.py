"""
Order Pipeline — Orders API

  POST /orders                 create (customer or staff-assisted)
  GET  /orders/{id}            order with items
  POST /orders/{id}/items      waiter adds items mid-preparation
  POST /orders/{id}/status     kitchen status change
"""
from fastapi import APIRouter, Depends, status

from orderflow.api.deps import get_services
from orderflow.schemas.order import (
    AddItemsRequest,
    AddItemsResponse,
    CreateOrderRequest,
    OrderResponse,
    StatusChangeRequest,
)
from orderflow.services.container import ServiceContainer
from orderflow.services.order_items import NewItem

router = APIRouter(prefix="/orders", tags=["orders"])


def _new_items(payload_items) -> list[NewItem]:
    return [NewItem(product_id=i.product_id, quantity=i.quantity, notes=i.notes) for i in payload_items]


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(payload: CreateOrderRequest, services: ServiceContainer = Depends(get_services)):
    """
    Place an order. With a waiterId the order goes straight to the kitchen and
    payment is collected later; otherwise it waits for payment.
    """
    order = await services.orders.create_order(
        payload.customer_name,
        payload.customer_phone,
        _new_items(payload.items),
        waiter_id=payload.waiter_id,
        notes=payload.notes,
    )
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, services: ServiceContainer = Depends(get_services)):
    return OrderResponse.model_validate(await services.orders.get_order(order_id))


@router.post("/{order_id}/items", response_model=AddItemsResponse, status_code=status.HTTP_201_CREATED)
async def add_items(order_id: str, payload: AddItemsRequest, services: ServiceContainer = Depends(get_services)):
    result = await services.mutations.add_items(order_id, _new_items(payload.items), payload.waiter_id)
    return AddItemsResponse(
        order=OrderResponse.model_validate(result.order),
        added_items=result.added_items,
        new_total=result.new_total,
        new_commission=result.new_commission,
        added_amount=result.added_amount,
        pix_invalidated=result.pix_invalidated,
    )


@router.post("/{order_id}/status", response_model=OrderResponse)
async def change_status(
    order_id: str,
    payload: StatusChangeRequest,
    services: ServiceContainer = Depends(get_services),
):
    return OrderResponse.model_validate(await services.orders.change_status(order_id, payload.status))
