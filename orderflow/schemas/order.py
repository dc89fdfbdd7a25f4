"""
Order Pipeline — Order schemas

Payloads use camelCase on the wire; snake_case field names are accepted too.
Amounts go out as two-place decimal strings.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orderflow.models.order import OrderStatus
from orderflow.services.pricing import to_money

Money = Annotated[Decimal, AfterValidator(to_money)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class OrderItemRequest(CamelModel):
    product_id: str = Field(..., examples=["item-001"])
    quantity: int = Field(..., ge=1, le=50)
    notes: str | None = Field(None, max_length=500)


class CreateOrderRequest(CamelModel):
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_phone: str | None = Field(None, max_length=32)
    items: list[OrderItemRequest] = Field(..., min_length=1, max_length=50)
    waiter_id: str | None = None
    notes: str | None = Field(None, max_length=500)


class AddItemsRequest(CamelModel):
    items: list[OrderItemRequest] = Field(..., min_length=1, max_length=50)
    waiter_id: str = Field(..., min_length=1)


class StatusChangeRequest(CamelModel):
    status: OrderStatus


class OrderItemResponse(CamelModel):
    id: str
    menu_item_id: str
    item_name: str
    unit_price: Money
    quantity: int
    notes: str | None = None


class OrderResponse(CamelModel):
    id: str
    order_number: int
    customer_name: str
    customer_phone: str | None = None
    notes: str | None = None
    total_amount: Money
    commission_amount: Money | None = None
    status: str
    payment_status: str
    payment_method: str | None = None
    pix_qr_code: str | None = None
    pix_expires_at: datetime | None = None
    waiter_id: str | None = None
    created_by_waiter: bool = False
    created_at: datetime | None = None
    payment_confirmed_at: datetime | None = None
    ready_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    items: list[OrderItemResponse] | None = None


class AddItemsResponse(CamelModel):
    success: bool = True
    order: OrderResponse
    added_items: list[OrderItemResponse]
    new_total: Money
    new_commission: Money
    added_amount: Money
    pix_invalidated: bool
