"""
Order Pipeline — Payment gateway client (Mercado Pago compatible)

Creates instant-payment (PIX) and card payments and reads payment status.
All calls go through RetryingTransport; a retryable failure that survives
every attempt surfaces as TransientError, any other non-2xx as GatewayError.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from orderflow.clients.transport import RETRYABLE_STATUS_CODES, RetryingTransport
from orderflow.core.clock import as_utc
from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import GatewayError, TransientError

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"approved"})
FAILURE_STATUSES = frozenset({"rejected", "cancelled", "refunded", "charged_back"})

STATUS_DETAIL_MESSAGES: dict[str, str] = {
    "cc_rejected_insufficient_amount": "Insufficient funds",
    "cc_rejected_bad_filled_card_number": "Invalid card number",
    "cc_rejected_bad_filled_date": "Invalid expiration date",
    "cc_rejected_bad_filled_security_code": "Invalid security code",
    "cc_rejected_call_for_authorize": "Contact your bank to authorize the payment",
    "cc_rejected_card_disabled": "Card disabled",
    "cc_rejected_duplicated_payment": "Duplicated payment",
    "cc_rejected_high_risk": "Payment refused for security reasons",
    "cc_rejected_max_attempts": "Maximum number of attempts exceeded",
    "cc_rejected_other_reason": "Payment refused by the bank",
    "accredited": "Payment approved",
    "pending_contingency": "Payment under review",
    "pending_review_manual": "Payment under manual review",
}


def describe_status_detail(status_detail: str | None) -> str:
    return STATUS_DETAIL_MESSAGES.get(status_detail or "", "Error processing payment")


@dataclass
class Payer:
    email: str
    first_name: str | None = None
    last_name: str | None = None
    identification_type: str | None = None
    identification_number: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"email": self.email}
        if self.first_name:
            payload["first_name"] = self.first_name
        if self.last_name:
            payload["last_name"] = self.last_name
        if self.identification_type and self.identification_number:
            payload["identification"] = {
                "type": self.identification_type,
                "number": self.identification_number,
            }
        return payload


@dataclass
class GatewayPayment:
    id: str
    status: str
    status_detail: str | None = None
    payment_method_id: str | None = None
    code: str | None = None
    code_base64: str | None = None
    expires_at: datetime | None = None
    external_reference: str | None = None


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport or RetryingTransport(context="payment-gateway"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, transport=None) -> "PaymentGatewayClient":
        settings = settings or get_settings()
        return cls(
            settings.MERCADOPAGO_API_URL,
            settings.MERCADOPAGO_ACCESS_TOKEN,
            transport=RetryingTransport.from_settings("payment-gateway", settings, transport),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise TransientError(f"Payment gateway unreachable: {exc}") from exc

        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        logger.error("Payment gateway %s %s failed: %d %s", method, path, response.status_code, body)
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientError(
                "Payment gateway temporarily unavailable",
                upstream_status=response.status_code,
            )
        raise GatewayError(
            body.get("message") or f"Payment gateway returned {response.status_code}",
            upstream_status=response.status_code,
        )

    async def create_payment(
        self,
        order_id: str,
        amount: Decimal,
        payer: Payer,
        *,
        description: str,
        expires_at: datetime | None = None,
        card_token: str | None = None,
        payment_method_id: str = "pix",
        notification_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayPayment:
        """
        Create a payment for an order. Without a card token this issues an
        instant-payment code; with one it charges the tokenized card.
        """
        payload: dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": description,
            "payment_method_id": payment_method_id,
            "payer": payer.as_payload(),
            "external_reference": order_id,
            "metadata": {"order_id": order_id, **(metadata or {})},
        }
        if card_token:
            payload["token"] = card_token
            payload["installments"] = 1
        if expires_at is not None:
            payload["date_of_expiration"] = expires_at.isoformat(timespec="milliseconds")
        if notification_url:
            payload["notification_url"] = notification_url

        # One key per logical attempt; transport retries reuse the same request.
        prefix = "card" if card_token else "pix"
        headers = {"X-Idempotency-Key": f"{prefix}-{order_id}-{uuid.uuid4().hex}"}

        data = await self._request("POST", "/v1/payments", json=payload, headers=headers)
        return self._parse(data, fallback_expiry=expires_at)

    async def get_payment_status(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return self._parse(data)

    @staticmethod
    def _parse(data: dict[str, Any], fallback_expiry: datetime | None = None) -> GatewayPayment:
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        expires = data.get("date_of_expiration")
        metadata = data.get("metadata") or {}
        return GatewayPayment(
            id=str(data["id"]),
            status=data.get("status", "pending"),
            status_detail=data.get("status_detail"),
            payment_method_id=data.get("payment_method_id"),
            code=transaction.get("qr_code"),
            code_base64=transaction.get("qr_code_base64"),
            expires_at=as_utc(expires) if expires else fallback_expiry,
            external_reference=data.get("external_reference") or metadata.get("order_id"),
        )
