"""
Server-sent payment stream: the generator relays poller events to the
client, shares one poll loop per order and stops it when the last client
goes away.
"""
import asyncio
import json

import pytest

from orderflow.api.payments import _sse_generator
from orderflow.services.poller import PaymentWatchRegistry
from tests.conftest import live_pix, seed_order


class FakeRequest:
    def __init__(self, disconnect_after: int | None = None):
        self.checks = 0
        self.disconnect_after = disconnect_after

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.disconnect_after is not None and self.checks > self.disconnect_after


def parse_events(chunks: list[str]) -> list[tuple[str, dict]]:
    events = []
    for chunk in chunks:
        if chunk.startswith("event: "):
            head, data = chunk.strip().split("\n", 1)
            events.append((head[len("event: "):], json.loads(data[len("data: "):])))
    return events


@pytest.mark.asyncio
async def test_stream_relays_until_confirmed(services, store, gateway_stub):
    order = await seed_order(store)
    pix = await services.payments.create_pix_payment(order["id"])
    gateway_stub.set_status(pix.payment_id, "approved")
    order = (await store.select("orders", {"id": order["id"]}))[0]

    chunks = [chunk async for chunk in _sse_generator(order, services, FakeRequest())]

    assert chunks[0].startswith(": watching payment")
    assert chunks[1].startswith("retry: ")
    names = [name for name, _ in parse_events(chunks)]
    assert names == ["status", "confirmed", "result"]
    assert parse_events(chunks)[-1][1]["outcome"] == "confirmed"
    row = (await store.select("orders", {"id": order["id"]}))[0]
    assert row["payment_status"] == "confirmed"


@pytest.mark.asyncio
async def test_disconnect_stops_the_poll_loop(services, store):
    order = await seed_order(store)
    await services.payments.create_pix_payment(order["id"])
    order = (await store.select("orders", {"id": order["id"]}))[0]

    chunks = [chunk async for chunk in _sse_generator(order, services, FakeRequest(disconnect_after=0))]

    assert len(chunks) == 2
    assert services.watches.active_order_ids == set()


@pytest.mark.asyncio
async def test_two_streams_share_one_poll_loop(services, store, gateway_stub):
    order = await seed_order(store)
    pix = await services.payments.create_pix_payment(order["id"])
    gateway_stub.set_status(pix.payment_id, "approved")
    order = (await store.select("orders", {"id": order["id"]}))[0]

    async def collect():
        return [chunk async for chunk in _sse_generator(order, services, FakeRequest())]

    first, second = await asyncio.gather(collect(), collect())

    for chunks in (first, second):
        assert [name for name, _ in parse_events(chunks)] == ["status", "confirmed", "result"]
    status_checks = [r for r in gateway_stub.requests if r.method == "GET"]
    assert len(status_checks) == 1
    log = await store.select("payment_confirmation_log", {"order_id": order["id"]})
    assert [row["event"] for row in log] == ["payment_confirmed"]


# ─── Watch registry ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_registry_reuses_the_loop_for_the_same_order(services, store):
    created = []

    def factory():
        poller = services.new_poller()
        created.append(poller)
        return poller

    registry = PaymentWatchRegistry(factory)
    order = await seed_order(store, **live_pix())

    queue_a, task_a = registry.subscribe("555", order["id"], order["pix_expires_at"])
    queue_b, task_b = registry.subscribe("555", order["id"], order["pix_expires_at"])

    assert task_a is task_b
    assert queue_a is not queue_b
    assert len(created) == 1

    await registry.unsubscribe(order["id"], queue_a)
    assert registry.active_order_ids == {order["id"]}
    await registry.unsubscribe(order["id"], queue_b)
    assert registry.active_order_ids == set()
    assert task_a.cancelled()


@pytest.mark.asyncio
async def test_registry_restarts_for_a_new_payment(services, store, gateway_stub):
    registry = PaymentWatchRegistry(services.new_poller)
    order = await seed_order(store, **live_pix())
    gateway_stub.add_payment("554", "pending", order["id"])
    gateway_stub.add_payment("555", "pending", order["id"])

    _, old_task = registry.subscribe("554", order["id"], order["pix_expires_at"])
    _, new_task = registry.subscribe("555", order["id"], order["pix_expires_at"])

    assert new_task is not old_task
    await asyncio.sleep(0)
    assert old_task.cancelled()
    await registry.close()
    assert new_task.cancelled()
