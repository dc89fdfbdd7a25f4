"""
Order Pipeline — Retrying HTTP transport

An httpx transport that wraps another transport with bounded, deterministic
exponential backoff (no jitter):

  attempt 1 ── fail ──> wait 1s ── attempt 2 ── fail ──> wait 2s ── ...

Retries happen only on network-level failures (httpx.TransportError) and on
responses whose status is in RETRYABLE_STATUS_CODES. Any other response is
returned straight away. When attempts run out, the last response is returned
or the last network error is re-raised.
"""
import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.core.retry import backoff_delay

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class RetryingTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        context: str = "http",
        max_attempts: int = 4,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.context = context
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        context: str,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **overrides,
    ) -> "RetryingTransport":
        settings = settings or get_settings()
        options = dict(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_MS / 1000.0,
            multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY_MS / 1000.0,
        )
        options.update(overrides)
        return cls(transport, context=context, **options)

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.multiplier, self.max_delay)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.execute(request)

    async def execute(self, request: httpx.Request) -> httpx.Response:
        for attempt in range(1, self.max_attempts + 1):
            last_attempt = attempt == self.max_attempts
            try:
                response = await self._transport.handle_async_request(request)
            except httpx.TransportError as exc:
                logger.warning(
                    "%s %s %s attempt %d/%d: network error %s%s",
                    self.context, request.method, request.url, attempt, self.max_attempts,
                    exc.__class__.__name__, "" if last_attempt else ", will retry",
                )
                if last_attempt:
                    raise
            else:
                status = response.status_code
                if status not in RETRYABLE_STATUS_CODES:
                    logger.info(
                        "%s %s %s attempt %d/%d: status %d",
                        self.context, request.method, request.url, attempt, self.max_attempts, status,
                    )
                    return response
                if last_attempt:
                    logger.error(
                        "%s %s %s attempt %d/%d: status %d, attempts exhausted",
                        self.context, request.method, request.url, attempt, self.max_attempts, status,
                    )
                    return response
                logger.warning(
                    "%s %s %s attempt %d/%d: status %d, will retry",
                    self.context, request.method, request.url, attempt, self.max_attempts, status,
                )
                await response.aclose()

            await self._sleep(self.delay_for(attempt - 1))

        raise RuntimeError("unreachable")  # pragma: no cover

    async def aclose(self) -> None:
        await self._transport.aclose()
