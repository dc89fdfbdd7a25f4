"""
Shared fixtures: an in-memory order database, gateway and messaging stubs
served through httpx.MockTransport, and a fully wired service container.
"""
import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from orderflow.clients.messaging import MessagingClient
from orderflow.clients.payment_gateway import PaymentGatewayClient
from orderflow.core.clock import utcnow
from orderflow.core.config import Settings
from orderflow.db.database import Base
from orderflow.db.store import OrderStore
from orderflow.services.container import build_services
from orderflow.services.notifications import NotificationDispatcher


async def no_sleep(seconds: float) -> None:
    return None


# ─── Stubs ─────────────────────────────────────────────────────────────────────
class GatewayStub:
    """Minimal payment gateway: creates payments and serves their status."""

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.create_status = "pending"
        self.create_status_detail = "pending_waiting_transfer"
        self.failures: list[int] = []

    def set_status(self, payment_id: str, status: str, status_detail: str | None = None) -> None:
        self.payments[payment_id]["status"] = status
        self.payments[payment_id]["status_detail"] = status_detail

    def add_payment(self, payment_id: str, status: str, order_id: str, method: str = "pix") -> None:
        self.payments[payment_id] = {
            "id": int(payment_id),
            "status": status,
            "status_detail": None,
            "external_reference": order_id,
            "payment_method_id": method,
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"message": "gateway unavailable"})

        if request.method == "POST" and request.url.path == "/v1/payments":
            body = json.loads(request.content)
            payment_id = str(1000 + len(self.payments))
            data = {
                "id": int(payment_id),
                "status": self.create_status,
                "status_detail": self.create_status_detail,
                "external_reference": body["external_reference"],
                "payment_method_id": body["payment_method_id"],
                "date_of_expiration": body.get("date_of_expiration"),
                "metadata": body.get("metadata"),
            }
            if body["payment_method_id"] == "pix":
                data["point_of_interaction"] = {
                    "transaction_data": {"qr_code": f"PIX-CODE-{payment_id}", "qr_code_base64": "aW1n"},
                }
            self.payments[payment_id] = data
            return httpx.Response(201, json=data)

        if request.method == "GET" and request.url.path.startswith("/v1/payments/"):
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.payments[payment_id])

        return httpx.Response(404, json={"message": "unknown route"})


class FakeRedis:
    """The slice of redis.asyncio.Redis the service uses."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class MessagingStub:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail_status: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "instance disconnected"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(201, json={"key": {"id": f"MSG{len(self.sent)}"}})


# ─── Settings / database ───────────────────────────────────────────────────────
@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        MERCADOPAGO_API_URL="https://gateway.test",
        MERCADOPAGO_ACCESS_TOKEN="test-token",
        MESSAGING_API_URL="https://messaging.test",
        MESSAGING_API_KEY="test-key",
        MESSAGING_INSTANCE="counter",
        PUBLIC_BASE_URL="https://orders.test",
        RETRY_BASE_DELAY_MS=0,
        RETRY_MAX_DELAY_MS=0,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return OrderStore(engine)


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def messaging_stub():
    return MessagingStub()


@pytest_asyncio.fixture
async def gateway(settings, gateway_stub):
    client = PaymentGatewayClient.from_settings(settings, httpx.MockTransport(gateway_stub))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def messaging(settings, messaging_stub):
    client = MessagingClient.from_settings(settings, httpx.MockTransport(messaging_stub))
    yield client
    await client.aclose()


@pytest.fixture
def dispatcher(store, messaging):
    return NotificationDispatcher(store, messaging, base_url="https://orders.test")


@pytest_asyncio.fixture
async def services(settings, engine, gateway_stub, messaging_stub):
    enqueued: list[tuple[str, str]] = []
    container = build_services(
        settings,
        engine,
        enqueue_notification=lambda order_id, event: enqueued.append((order_id, event)),
        gateway_transport=httpx.MockTransport(gateway_stub),
        messaging_transport=httpx.MockTransport(messaging_stub),
        redis=FakeRedis(),
    )
    container.enqueued = enqueued
    yield container
    await container.aclose()


# ─── Seeding helpers ───────────────────────────────────────────────────────────
async def seed_menu_item(store, name: str, price: str, available: bool = True) -> dict:
    rows = await store.insert("menu_items", [{
        "name": name,
        "price": Decimal(price),
        "category": "main",
        "available": available,
    }])
    return rows[0]


async def seed_order(store, **overrides) -> dict:
    existing = await store.select("orders", order_by="order_number", descending=True, limit=1)
    row = {
        "order_number": (existing[0]["order_number"] + 1) if existing else 1,
        "customer_name": "Maria Silva",
        "customer_phone": "(11) 98765-4321",
        "total_amount": Decimal("25.50"),
        "commission_amount": Decimal("2.55"),
        "status": "pending_payment",
        "payment_status": "pending",
        "created_at": utcnow(),
    }
    row.update(overrides)
    return (await store.insert("orders", [row]))[0]


def live_pix(minutes: int = 10) -> dict:
    now = utcnow()
    return {
        "pix_qr_code": "PIX-LIVE",
        "pix_generated_at": now,
        "pix_expires_at": now + timedelta(minutes=minutes),
        "mercadopago_payment_id": "555",
    }


def expired_pix() -> dict:
    now = utcnow()
    return {
        "pix_qr_code": "PIX-OLD",
        "pix_generated_at": now - timedelta(minutes=30),
        "pix_expires_at": now - timedelta(minutes=15),
        "mercadopago_payment_id": "554",
    }
