"""
Order Pipeline — Instant-payment status poller

Watches one payment until it is approved, fails, is cancelled or its code
expires. Cadence slows down as the wait grows:

  checks 1-10   every 5s
  checks 11-30  every 10s
  after that    every 15s

A gateway error pauses the loop for the error interval; too many in a row
ends it. Approval is handed to the confirmation coordinator, expiry changes
nothing in the store.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from orderflow.clients.payment_gateway import FAILURE_STATUSES, SUCCESS_STATUSES, PaymentGatewayClient
from orderflow.core.clock import as_utc, utcnow
from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import GatewayError, TransientError
from orderflow.models.notification import ConfirmationSource
from orderflow.services.confirmation import ConfirmationResult, PaymentConfirmationCoordinator

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


class PollOutcome(str, Enum):
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    order_id: str
    payment_id: str
    checks: int
    status: str | None = None
    confirmation: ConfirmationResult | None = None


class PaymentStatusPoller:
    """
    Holds at most one running poll loop. Starting a loop for another order
    cancels the previous one.
    """

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        coordinator: PaymentConfirmationCoordinator,
        *,
        fast_interval: float = 5.0,
        medium_interval: float = 10.0,
        slow_interval: float = 15.0,
        error_interval: float = 20.0,
        max_consecutive_errors: int = 5,
        clock: Callable = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._gateway = gateway
        self._coordinator = coordinator
        self.fast_interval = fast_interval
        self.medium_interval = medium_interval
        self.slow_interval = slow_interval
        self.error_interval = error_interval
        self.max_consecutive_errors = max_consecutive_errors
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._order_id: str | None = None

    @classmethod
    def from_settings(cls, gateway, coordinator, settings: Settings | None = None, **kwargs) -> "PaymentStatusPoller":
        settings = settings or get_settings()
        return cls(
            gateway,
            coordinator,
            fast_interval=settings.POLL_FAST_INTERVAL_SECONDS,
            medium_interval=settings.POLL_MEDIUM_INTERVAL_SECONDS,
            slow_interval=settings.POLL_SLOW_INTERVAL_SECONDS,
            error_interval=settings.POLL_ERROR_INTERVAL_SECONDS,
            max_consecutive_errors=settings.POLL_MAX_CONSECUTIVE_ERRORS,
            **kwargs,
        )

    @property
    def active_order_id(self) -> str | None:
        if self._task is None or self._task.done():
            return None
        return self._order_id

    def interval_for(self, check: int) -> float:
        """Wait after check number ``check`` (1-based)."""
        if check <= 10:
            return self.fast_interval
        if check <= 30:
            return self.medium_interval
        return self.slow_interval

    def _remaining(self, expires_at: datetime) -> float:
        return (expires_at - self._clock()).total_seconds()

    async def poll(
        self,
        payment_id: str,
        order_id: str,
        expires_at: datetime | str,
        on_status_change: StatusCallback | None = None,
    ) -> PollResult:
        expires_at = as_utc(expires_at)
        checks = 0
        errors = 0
        last_status: str | None = None

        async def emit(event: str, data: dict[str, Any]) -> None:
            if on_status_change is None:
                return
            try:
                await on_status_change(event, data)
            except Exception:
                logger.exception("Status callback failed for order %s", order_id)

        while True:
            if self._remaining(expires_at) <= 0:
                logger.info("Payment %s for order %s expired after %d checks", payment_id, order_id, checks)
                await emit("expired", {"order_id": order_id, "payment_id": payment_id})
                return PollResult(PollOutcome.EXPIRED, order_id, payment_id, checks, last_status)

            checks += 1
            try:
                payment = await self._gateway.get_payment_status(payment_id)
            except (TransientError, GatewayError) as exc:
                errors += 1
                logger.warning(
                    "Status check %d for payment %s failed (%d/%d): %s",
                    checks, payment_id, errors, self.max_consecutive_errors, exc.message,
                )
                if errors >= self.max_consecutive_errors:
                    await emit("error", {"order_id": order_id, "message": "Payment status unavailable"})
                    return PollResult(PollOutcome.FAILED, order_id, payment_id, checks, last_status)
                await self._sleep(min(self.error_interval, max(self._remaining(expires_at), 0)))
                continue

            errors = 0
            if payment.status != last_status:
                last_status = payment.status
                await emit("status", {
                    "order_id": order_id,
                    "payment_id": payment_id,
                    "status": payment.status,
                    "status_detail": payment.status_detail,
                })

            if payment.status in SUCCESS_STATUSES:
                confirmation = await self._coordinator.confirm_payment(
                    order_id, ConfirmationSource.WEBHOOK, payment_method="pix", payment_id=payment_id,
                )
                await emit("confirmed", {
                    "order_id": order_id,
                    "payment_id": payment_id,
                    "notification_sent": confirmation.notification_sent,
                })
                return PollResult(PollOutcome.CONFIRMED, order_id, payment_id, checks, payment.status, confirmation)

            if payment.status in FAILURE_STATUSES:
                outcome = PollOutcome.CANCELLED if payment.status == "cancelled" else PollOutcome.FAILED
                logger.info("Payment %s for order %s ended as %s", payment_id, order_id, payment.status)
                return PollResult(outcome, order_id, payment_id, checks, payment.status)

            wait = min(self.interval_for(checks), self._remaining(expires_at))
            if wait > 0:
                await self._sleep(wait)

    def start(
        self,
        payment_id: str,
        order_id: str,
        expires_at: datetime | str,
        on_status_change: StatusCallback | None = None,
    ) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            if self._order_id == order_id:
                return self._task
            logger.info("Stopping poll for order %s, now watching %s", self._order_id, order_id)
            self._task.cancel()

        self._order_id = order_id
        self._task = asyncio.create_task(
            self.poll(payment_id, order_id, expires_at, on_status_change),
            name=f"payment-poll-{order_id}",
        )
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._order_id = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@dataclass
class _Watch:
    payment_id: str
    poller: PaymentStatusPoller
    task: asyncio.Task
    subscribers: set[asyncio.Queue]


class PaymentWatchRegistry:
    """
    One poll loop per order, shared by every client watching it. Each
    subscriber gets its own queue of (event, data) pairs; the loop is stopped
    when the last subscriber leaves.
    """

    def __init__(self, poller_factory: Callable[[], PaymentStatusPoller]):
        self._poller_factory = poller_factory
        self._watches: dict[str, _Watch] = {}

    @property
    def active_order_ids(self) -> set[str]:
        return {order_id for order_id, watch in self._watches.items() if not watch.task.done()}

    def subscribe(
        self,
        payment_id: str,
        order_id: str,
        expires_at: datetime | str,
    ) -> tuple[asyncio.Queue, asyncio.Task]:
        watch = self._watches.get(order_id)
        if watch is not None and watch.payment_id != payment_id and not watch.task.done():
            logger.info("Payment for order %s changed to %s, restarting watch", order_id, payment_id)
            watch.task.cancel()
            watch = None
        if watch is None or watch.task.done():
            watch = self._start(payment_id, order_id, expires_at)

        queue: asyncio.Queue = asyncio.Queue()
        watch.subscribers.add(queue)
        logger.info("Watching order %s with %d subscriber(s)", order_id, len(watch.subscribers))
        return queue, watch.task

    def _start(self, payment_id: str, order_id: str, expires_at: datetime | str) -> _Watch:
        subscribers: set[asyncio.Queue] = set()

        async def fan_out(event: str, data: dict[str, Any]) -> None:
            for queue in list(subscribers):
                queue.put_nowait((event, data))

        poller = self._poller_factory()
        task = poller.start(payment_id, order_id, expires_at, fan_out)
        watch = _Watch(payment_id, poller, task, subscribers)
        self._watches[order_id] = watch
        task.add_done_callback(lambda _: self._forget(order_id, watch))
        return watch

    def _forget(self, order_id: str, watch: _Watch) -> None:
        if self._watches.get(order_id) is watch:
            del self._watches[order_id]

    async def unsubscribe(self, order_id: str, queue: asyncio.Queue) -> None:
        watch = self._watches.get(order_id)
        if watch is None or queue not in watch.subscribers:
            return
        watch.subscribers.discard(queue)
        if not watch.subscribers:
            self._forget(order_id, watch)
            await watch.poller.stop()

    async def close(self) -> None:
        watches, self._watches = list(self._watches.values()), {}
        for watch in watches:
            await watch.poller.stop()
