"""
HTTP surface, driven in-process through httpx.ASGITransport with the test
service container installed on app.state.
"""
import httpx
import pytest
import pytest_asyncio

from orderflow.main import app
from tests.conftest import live_pix, seed_menu_item, seed_order


@pytest.fixture
def fake_redis(services):
    return services.redis


@pytest_asyncio.fixture
async def client(services, fake_redis):
    app.state.services = services
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.services = None


# ─── Orders ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_and_fetch_order(client, store):
    item = await seed_menu_item(store, "Burger", "12.75")
    r = await client.post("/orders", json={
        "customerName": "Ana Souza",
        "customerPhone": "11987654321",
        "items": [{"productId": item["id"], "quantity": 2}],
    })
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "pending_payment"
    assert body["totalAmount"] == "25.50"
    assert body["commissionAmount"] == "2.55"
    assert body["items"][0]["itemName"] == "Burger"
    assert body["items"][0]["unitPrice"] == "12.75"

    r = await client.get(f"/orders/{body['id']}")
    assert r.status_code == 200
    assert r.json()["orderNumber"] == body["orderNumber"]


@pytest.mark.asyncio
async def test_unknown_order_is_404(client):
    r = await client.get("/orders/nope")
    assert r.status_code == 404
    assert r.json()["detail"] == "Order not found"


@pytest.mark.asyncio
async def test_request_validation(client):
    r = await client.post("/orders", json={"customerName": "Ana", "items": []})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_add_items_contract(client, store):
    burger = await seed_menu_item(store, "Burger", "12.75")
    soda = await seed_menu_item(store, "Soda", "10.00")
    r = await client.post("/orders", json={
        "customerName": "Ana",
        "items": [{"productId": burger["id"], "quantity": 2}],
        "waiterId": "waiter-1",
    })
    order_id = r.json()["id"]

    r = await client.post(f"/orders/{order_id}/items", json={
        "items": [{"productId": soda["id"], "quantity": 1, "notes": "no ice"}],
        "waiterId": "waiter-1",
    })

    assert r.status_code == 201, r.text
    body = r.json()
    assert body["success"] is True
    assert body["newTotal"] == "35.50"
    assert body["newCommission"] == "3.55"
    assert body["addedAmount"] == "10.00"
    assert body["pixInvalidated"] is False
    assert body["addedItems"][0]["notes"] == "no ice"
    assert body["order"]["totalAmount"] == "35.50"


@pytest.mark.asyncio
async def test_add_items_reports_invalidated_code(client, store):
    soda = await seed_menu_item(store, "Soda", "10.00")
    order = await seed_order(store, status="in_preparation", waiter_id="waiter-1", **live_pix())
    r = await client.post(f"/orders/{order['id']}/items", json={
        "items": [{"productId": soda["id"], "quantity": 1}],
        "waiterId": "waiter-1",
    })
    assert r.status_code == 201
    assert r.json()["pixInvalidated"] is True
    assert r.json()["order"]["pixQrCode"] is None


@pytest.mark.asyncio
async def test_add_items_errors(client, store):
    soda = await seed_menu_item(store, "Soda", "10.00")
    gone = await seed_menu_item(store, "Feijoada", "30.00", available=False)
    order = await seed_order(store, status="in_preparation", waiter_id="waiter-1")
    url = f"/orders/{order['id']}/items"

    r = await client.post(url, json={"items": [{"productId": soda["id"], "quantity": 1}], "waiterId": "waiter-2"})
    assert r.status_code == 403
    assert r.json()["detail"] == "You can only add items to your own orders"

    r = await client.post(url, json={"items": [{"productId": gone["id"], "quantity": 1}], "waiterId": "waiter-1"})
    assert r.status_code == 400
    assert "Feijoada" in r.json()["detail"]

    r = await client.post("/orders/missing/items",
                          json={"items": [{"productId": soda["id"], "quantity": 1}], "waiterId": "waiter-1"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_status_change(client, store, services):
    order = await seed_order(store, status="in_preparation")
    r = await client.post(f"/orders/{order['id']}/status", json={"status": "ready"})
    assert r.status_code == 200
    assert r.json()["status"] == "ready"
    assert services.enqueued == [(order["id"], "order_ready")]

    r = await client.post(f"/orders/{order['id']}/status", json={"status": "in_preparation"})
    assert r.status_code == 400
    assert r.json()["current_status"] == "ready"


# ─── Payments ──────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_pix_then_duplicate_pix(client, store):
    order = await seed_order(store)
    r = await client.post(f"/orders/{order['id']}/payments/pix")
    assert r.status_code == 201, r.text
    code = r.json()["qrCode"]
    assert r.json()["amount"] == "25.50"

    r = await client.post(f"/orders/{order['id']}/payments/pix")
    assert r.status_code == 409
    assert r.json()["qr_code"] == code


@pytest.mark.asyncio
async def test_manual_confirmation_and_repeat(client, store):
    order = await seed_order(store)
    r = await client.post(f"/orders/{order['id']}/payments/confirm", json={"paymentMethod": "cash"})
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["notificationSent"] is True

    r = await client.post(f"/orders/{order['id']}/payments/confirm")
    assert r.json()["success"] is True
    assert r.json()["notificationSent"] is False

    r = await client.get(f"/orders/{order['id']}")
    assert r.json()["paymentStatus"] == "confirmed"
    assert r.json()["paymentMethod"] == "cash"


@pytest.mark.asyncio
async def test_card_payment(client, store, gateway_stub):
    gateway_stub.create_status = "rejected"
    gateway_stub.create_status_detail = "cc_rejected_bad_filled_security_code"
    order = await seed_order(store)
    r = await client.post(f"/orders/{order['id']}/payments/card", json={
        "token": "tok_1",
        "paymentMethodId": "master",
        "payer": {"email": "ana@example.com"},
    })
    assert r.status_code == 200
    assert r.json()["success"] is False
    assert r.json()["message"] == "Invalid security code"


@pytest.mark.asyncio
async def test_status_tick_and_webhook(client, store, gateway_stub):
    order = await seed_order(store)
    r = await client.post(f"/orders/{order['id']}/payments/pix")
    payment_id = r.json()["paymentId"]

    r = await client.get(f"/orders/{order['id']}/payments/status")
    assert r.json()["status"] == "pending"

    gateway_stub.set_status(payment_id, "approved")
    r = await client.post("/payments/webhook", json={"type": "payment", "data": {"id": payment_id}})
    assert r.status_code == 200
    assert r.json()["success"] is True

    r = await client.get(f"/orders/{order['id']}")
    assert r.json()["status"] == "in_preparation"


@pytest.mark.asyncio
async def test_gateway_outage_is_503(client, store, gateway_stub):
    gateway_stub.failures = [502, 502, 502, 502]
    order = await seed_order(store)
    r = await client.post(f"/orders/{order['id']}/payments/pix")
    assert r.status_code == 503
    assert r.json()["upstream_status"] == 502


# ─── Idempotency / health ──────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_idempotency_key_replays_order_creation(client, store, fake_redis):
    item = await seed_menu_item(store, "Burger", "12.75")
    payload = {"customerName": "Ana", "items": [{"productId": item["id"], "quantity": 1}]}
    headers = {"Idempotency-Key": "key-123"}

    first = await client.post("/orders", json=payload, headers=headers)
    second = await client.post("/orders", json=payload, headers=headers)

    assert first.status_code == second.status_code == 201
    assert second.headers["X-Idempotency-Replay"] == "true"
    assert second.json()["id"] == first.json()["id"]
    assert len(await store.select("orders")) == 1
    assert "idempotent:/orders:key-123" in fake_redis.data


@pytest.mark.asyncio
async def test_confirm_is_not_cached_by_idempotency(client, store, fake_redis):
    order = await seed_order(store)
    await client.post(f"/orders/{order['id']}/payments/confirm", headers={"Idempotency-Key": "k"})
    assert fake_redis.data == {}


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["dependencies"] == {
        "postgresql": "ok",
        "redis": "ok",
        "payment_gateway": "configured",
        "messaging": "configured",
    }


@pytest.mark.asyncio
async def test_gateway_outage_is_not_replayed(client, store, gateway_stub, fake_redis):
    gateway_stub.failures = [503, 503, 503, 503]
    order = await seed_order(store)
    url = f"/orders/{order['id']}/payments/pix"

    first = await client.post(url, headers={"Idempotency-Key": "pix-1"})
    assert first.status_code == 503
    assert fake_redis.data == {}

    second = await client.post(url, headers={"Idempotency-Key": "pix-1"})
    assert second.status_code == 201
    assert "X-Idempotency-Replay" not in second.headers
    assert f"idempotent:{url}:pix-1" in fake_redis.data


@pytest.mark.asyncio
async def test_redis_is_closed_with_the_container(services):
    await services.aclose()
    assert services.redis.closed is True
