"""
Payment status poller. Time is simulated: the injected sleep advances the
injected clock, so a 15 minute wait runs instantly.
"""
import asyncio
from datetime import timedelta

import pytest

from orderflow.clients.payment_gateway import GatewayPayment
from orderflow.core.clock import utcnow
from orderflow.core.errors import TransientError
from orderflow.models.notification import ConfirmationSource
from orderflow.services.confirmation import ConfirmationResult
from orderflow.services.poller import PaymentStatusPoller, PollOutcome


class FakeTime:
    def __init__(self):
        self.now = utcnow()
        self.sleeps: list[float] = []

    def clock(self):
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class ScriptedGateway:
    """Returns the scripted statuses in order, then repeats the last one."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def get_payment_status(self, payment_id: str) -> GatewayPayment:
        self.calls += 1
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return GatewayPayment(id=payment_id, status=step)


class RecordingCoordinator:
    def __init__(self):
        self.calls = []

    async def confirm_payment(self, order_id, source, payment_method=None, payment_id=None):
        self.calls.append((order_id, source, payment_method, payment_id))
        return ConfirmationResult(success=True, order_id=order_id, notification_sent=True)


def make_poller(gateway, coordinator, fake_time, **kwargs):
    return PaymentStatusPoller(gateway, coordinator, clock=fake_time.clock, sleep=fake_time.sleep, **kwargs)


def test_cadence_slows_down():
    poller = PaymentStatusPoller(None, None)
    assert [poller.interval_for(n) for n in (1, 10, 11, 30, 31, 100)] == [5, 5, 10, 10, 15, 15]


@pytest.mark.asyncio
async def test_approval_hands_off_to_coordinator():
    fake_time, coordinator = FakeTime(), RecordingCoordinator()
    gateway = ScriptedGateway("pending", "in_process", "approved")
    poller = make_poller(gateway, coordinator, fake_time)

    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15))

    assert result.outcome == PollOutcome.CONFIRMED
    assert result.checks == 3
    assert result.confirmation.notification_sent is True
    assert coordinator.calls == [("order-1", ConfirmationSource.WEBHOOK, "pix", "pay-1")]
    assert fake_time.sleeps == [5, 5]


@pytest.mark.asyncio
async def test_expiry_stops_without_confirming():
    fake_time, coordinator = FakeTime(), RecordingCoordinator()
    poller = make_poller(ScriptedGateway("pending"), coordinator, fake_time)

    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(seconds=12))

    assert result.outcome == PollOutcome.EXPIRED
    assert result.checks == 3
    assert fake_time.sleeps == [5, 5, 2]
    assert coordinator.calls == []


@pytest.mark.asyncio
async def test_already_expired_makes_no_gateway_call():
    fake_time = FakeTime()
    gateway = ScriptedGateway("approved")
    poller = make_poller(gateway, RecordingCoordinator(), fake_time)
    result = await poller.poll("pay-1", "order-1", (fake_time.now - timedelta(seconds=1)).isoformat())
    assert result.outcome == PollOutcome.EXPIRED
    assert gateway.calls == 0


@pytest.mark.asyncio
async def test_long_wait_uses_the_slower_cadence():
    fake_time = FakeTime()
    poller = make_poller(ScriptedGateway("pending"), RecordingCoordinator(), fake_time)
    await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15))
    assert fake_time.sleeps[:10] == [5] * 10
    assert fake_time.sleeps[10:30] == [10] * 20
    assert set(fake_time.sleeps[30:-1]) == {15}
    assert sum(fake_time.sleeps) == pytest.approx(900)


@pytest.mark.asyncio
@pytest.mark.parametrize("status, outcome", [
    ("rejected", PollOutcome.FAILED),
    ("cancelled", PollOutcome.CANCELLED),
])
async def test_terminal_failure(status, outcome):
    fake_time, coordinator = FakeTime(), RecordingCoordinator()
    poller = make_poller(ScriptedGateway("pending", status), coordinator, fake_time)
    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15))
    assert result.outcome == outcome
    assert result.status == status
    assert coordinator.calls == []


@pytest.mark.asyncio
async def test_gives_up_after_consecutive_errors():
    fake_time = FakeTime()
    gateway = ScriptedGateway(TransientError("down"))
    poller = make_poller(gateway, RecordingCoordinator(), fake_time)

    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15))

    assert result.outcome == PollOutcome.FAILED
    assert gateway.calls == 5
    assert fake_time.sleeps == [20, 20, 20, 20]


@pytest.mark.asyncio
async def test_errors_reset_after_a_good_answer():
    fake_time, coordinator = FakeTime(), RecordingCoordinator()
    down = TransientError("down")
    gateway = ScriptedGateway(down, down, down, "pending", down, down, down, "approved")
    poller = make_poller(gateway, coordinator, fake_time)

    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15))

    assert result.outcome == PollOutcome.CONFIRMED
    assert gateway.calls == 8


@pytest.mark.asyncio
async def test_status_changes_are_reported_once():
    fake_time = FakeTime()
    events = []

    async def on_change(event, data):
        events.append((event, data.get("status")))

    gateway = ScriptedGateway("pending", "pending", "in_process", "approved")
    poller = make_poller(gateway, RecordingCoordinator(), fake_time)
    await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15), on_change)

    assert events == [
        ("status", "pending"),
        ("status", "in_process"),
        ("status", "approved"),
        ("confirmed", None),
    ]


@pytest.mark.asyncio
async def test_broken_callback_does_not_stop_polling():
    fake_time = FakeTime()

    async def on_change(event, data):
        raise RuntimeError("client went away")

    poller = make_poller(ScriptedGateway("approved"), RecordingCoordinator(), fake_time)
    result = await poller.poll("pay-1", "order-1", fake_time.now + timedelta(minutes=15), on_change)
    assert result.outcome == PollOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_one_loop_at_a_time():
    async def hang(seconds):
        await asyncio.Event().wait()

    poller = PaymentStatusPoller(ScriptedGateway("pending"), RecordingCoordinator(), sleep=hang)
    expires = utcnow() + timedelta(minutes=15)

    first = poller.start("pay-1", "order-1", expires)
    assert poller.start("pay-1", "order-1", expires) is first
    assert poller.active_order_id == "order-1"

    second = poller.start("pay-2", "order-2", expires)
    assert second is not first
    with pytest.raises(asyncio.CancelledError):
        await first
    assert poller.active_order_id == "order-2"

    await poller.stop()
    assert second.cancelled()
    assert poller.active_order_id is None
