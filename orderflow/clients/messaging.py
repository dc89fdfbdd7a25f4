"""
Order Pipeline — Outbound text messaging client (Evolution API compatible)
"""
import logging

import httpx

from orderflow.clients.transport import RetryingTransport
from orderflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MessagingClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.instance = instance
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport or RetryingTransport(context="messaging"),
            timeout=timeout,
            headers={"apikey": api_key},
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, transport=None) -> "MessagingClient":
        settings = settings or get_settings()
        return cls(
            settings.MESSAGING_API_URL,
            settings.MESSAGING_API_KEY,
            settings.MESSAGING_INSTANCE,
            transport=RetryingTransport.from_settings("messaging", settings, transport),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_text(self, number: str, text: str) -> dict:
        """Deliver a text message to a digits-only international number."""
        if not text or not text.strip():
            raise MessagingError("Message text cannot be empty")
        try:
            response = await self._client.post(
                f"/message/sendText/{self.instance}",
                json={"number": number, "text": text.strip()},
            )
        except httpx.TransportError as exc:
            raise MessagingError(f"Messaging service unreachable: {exc}") from exc

        if not response.is_success:
            raise MessagingError(
                f"Messaging service error ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json() if response.content else {}
