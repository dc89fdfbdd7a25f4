"""
Order Pipeline — Celery application

Only customer notifications run here. Tasks go to the "notifications" queue:

  celery -A orderflow.core.celery_app worker -Q notifications --concurrency 2

Results are not kept; delivery status lives in the notifications table.
"""
from celery import Celery

from orderflow.core.config import get_settings

settings = get_settings()

NOTIFICATION_QUEUE = "notifications"

celery_app = Celery(
    "orderflow",
    broker=settings.celery_broker_url,
    include=["orderflow.tasks.notification_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
    task_default_queue=NOTIFICATION_QUEUE,
    task_routes={"send_order_notification": {"queue": NOTIFICATION_QUEUE}},
    # a message dropped by a dying worker is redelivered, not lost
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)
