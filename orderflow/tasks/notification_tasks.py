"""
Order Pipeline — Celery tasks (kitchen-side customer notifications)

The API enqueues one task per ready / completed / cancelled transition so the
kitchen screen never waits on the messaging channel. Workers run in their own
container and open their own database engine per task.
"""
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from orderflow.clients.messaging import MessagingClient
from orderflow.core.celery_app import celery_app
from orderflow.core.config import get_settings
from orderflow.core.errors import NotificationError
from orderflow.db.store import OrderStore
from orderflow.services.notifications import NotificationDispatcher

settings = get_settings()
logger = logging.getLogger(__name__)


async def _deliver(
    order_id: str,
    event: str,
    engine: AsyncEngine | None = None,
    messaging: MessagingClient | None = None,
) -> None:
    own_engine = engine is None
    own_messaging = messaging is None
    engine = engine or create_async_engine(settings.database_url, pool_pre_ping=True)
    messaging = messaging or MessagingClient.from_settings(settings)
    try:
        dispatcher = NotificationDispatcher(
            OrderStore(engine),
            messaging,
            base_url=settings.PUBLIC_BASE_URL,
            country_code=settings.DEFAULT_COUNTRY_CODE,
        )
        await dispatcher.notify(event, order_id)
    finally:
        if own_messaging:
            await messaging.aclose()
        if own_engine:
            await engine.dispose()


@celery_app.task(
    name="send_order_notification",
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    acks_late=True,
)
def send_order_notification(self, order_id: str, event: str):
    """Deliver one customer notification; the order row is re-read at send time."""
    try:
        asyncio.run(_deliver(order_id, event))
        logger.info("Order %s: %s notification delivered", order_id, event)
    except NotificationError as exc:
        logger.warning(
            "Order %s: %s notification failed (attempt %d): %s",
            order_id, event, self.request.retries + 1, exc.message,
        )
        raise self.retry(exc=exc)
