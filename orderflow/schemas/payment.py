"""
Order Pipeline — Payment schemas
"""
from datetime import datetime
from typing import Any

from pydantic import Field

from orderflow.models.notification import ConfirmationSource
from orderflow.schemas.order import CamelModel, Money


class PixPaymentResponse(CamelModel):
    payment_id: str
    qr_code: str
    qr_code_base64: str | None = None
    amount: Money
    expires_at: datetime


class PayerRequest(CamelModel):
    email: str = Field(..., min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    identification_type: str | None = None
    identification_number: str | None = None


class CardPaymentRequest(CamelModel):
    token: str = Field(..., min_length=1)
    payment_method_id: str = Field(..., examples=["visa"])
    payer: PayerRequest


class ConfirmationResponse(CamelModel):
    success: bool
    order_id: str
    notification_sent: bool
    error: str | None = None
    warning: str | None = None
    duplicate: bool = False


class CardPaymentResponse(CamelModel):
    success: bool
    payment_id: str
    status: str
    status_detail: str | None = None
    message: str
    confirmation: ConfirmationResponse | None = None


class ManualConfirmationRequest(CamelModel):
    source: ConfirmationSource = ConfirmationSource.MANUAL
    payment_method: str | None = Field(None, examples=["cash"])
    payment_id: str | None = None


class PaymentStatusResponse(CamelModel):
    order_id: str
    payment_id: str | None = None
    status: str
    status_detail: str | None = None
    expires_at: datetime | None = None
    confirmation: ConfirmationResponse | None = None


class WebhookPayload(CamelModel):
    type: str | None = None
    action: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
