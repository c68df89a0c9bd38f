"""Hardline Purchasing — Celery worker configuration."""
from celery import Celery

from purchasing.config import get_settings

settings = get_settings()

celery_app = Celery(
    "purchasing",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=["purchasing.tasks.inventory_sync_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_routes={
        "purchasing.tasks.*": {"queue": "default"},
    },
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "sweep-pending-inventory-sync": {
        "task": "purchasing.tasks.inventory_sync_tasks.sweep_pending_inventory_sync",
        "schedule": settings.INVENTORY_SYNC_SWEEP_SECONDS,
    },
}
