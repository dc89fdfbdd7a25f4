"""
Order Pipeline — Service wiring

Builds every collaborator once, in the FastAPI lifespan, so handlers receive
fully configured services and shutdown has one thing to close.
"""
from dataclasses import dataclass, field
from datetime import timedelta

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from orderflow.clients.messaging import MessagingClient
from orderflow.clients.payment_gateway import PaymentGatewayClient
from orderflow.core.config import Settings
from orderflow.core.redis_client import create_redis
from orderflow.db.store import OrderStore
from orderflow.services.confirmation import PaymentConfirmationCoordinator
from orderflow.services.notifications import NotificationDispatcher
from orderflow.services.order_items import OrderMutationHandler
from orderflow.services.orders import NotificationEnqueuer, OrderService
from orderflow.services.payments import PaymentService
from orderflow.services.poller import PaymentStatusPoller, PaymentWatchRegistry


@dataclass
class ServiceContainer:
    settings: Settings
    store: OrderStore
    gateway: PaymentGatewayClient
    messaging: MessagingClient
    dispatcher: NotificationDispatcher
    coordinator: PaymentConfirmationCoordinator
    orders: OrderService
    mutations: OrderMutationHandler
    payments: PaymentService
    redis: aioredis.Redis
    watches: PaymentWatchRegistry = field(init=False)

    def __post_init__(self):
        self.watches = PaymentWatchRegistry(self.new_poller)

    def new_poller(self) -> PaymentStatusPoller:
        return PaymentStatusPoller.from_settings(self.gateway, self.coordinator, self.settings)

    async def aclose(self) -> None:
        await self.watches.close()
        await self.gateway.aclose()
        await self.messaging.aclose()
        await self.redis.aclose()


def build_services(
    settings: Settings,
    engine: AsyncEngine,
    *,
    enqueue_notification: NotificationEnqueuer | None = None,
    gateway_transport=None,
    messaging_transport=None,
    redis: aioredis.Redis | None = None,
) -> ServiceContainer:
    store = OrderStore(engine)
    gateway = PaymentGatewayClient.from_settings(settings, gateway_transport)
    messaging = MessagingClient.from_settings(settings, messaging_transport)
    dispatcher = NotificationDispatcher(
        store,
        messaging,
        base_url=settings.PUBLIC_BASE_URL,
        country_code=settings.DEFAULT_COUNTRY_CODE,
    )
    coordinator = PaymentConfirmationCoordinator(
        store,
        dispatcher,
        dedup_window=timedelta(seconds=settings.CONFIRMATION_DEDUP_WINDOW_SECONDS),
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        gateway=gateway,
        messaging=messaging,
        dispatcher=dispatcher,
        coordinator=coordinator,
        orders=OrderService(
            store,
            commission_rate=settings.COMMISSION_RATE,
            enqueue_notification=enqueue_notification,
        ),
        mutations=OrderMutationHandler(store, commission_rate=settings.COMMISSION_RATE),
        payments=PaymentService(
            store,
            gateway,
            coordinator,
            code_ttl=timedelta(minutes=settings.PIX_EXPIRATION_MINUTES),
            webhook_url=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/payments/webhook",
        ),
        redis=redis if redis is not None else create_redis(settings),
    )
