"""Hardline Purchasing — InventorySync delivery Celery tasks.

- deliver_stock_increase:        one outbox row, retried with exponential backoff.
- sweep_pending_inventory_sync:  Celery Beat re-dispatches anything still undelivered.
"""
from __future__ import annotations

import asyncio
import logging
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from purchasing.config import get_settings
from purchasing.services.inventory_sync_service import InventorySyncClient, InventorySyncService
from purchasing.worker import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


def _task_session_maker():
    """Fresh engine per task run: pooled asyncpg connections cannot cross event loops."""
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@celery_app.task(bind=True, max_retries=settings.INVENTORY_SYNC_MAX_RETRIES)
def deliver_stock_increase(self, notification_id: str) -> None:
    """
    Deliver a stock increase to InventorySync.
    Backoff: 2^retry_count * 5 seconds (5s, 10s, 20s, ...).
    """
    try:
        asyncio.run(_deliver_async(notification_id))
    except (httpx.RequestError, httpx.HTTPStatusError) as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Inventory sync %s exhausted retries, left for sweep: %s", notification_id, exc)
            raise
        delay = (2 ** self.request.retries) * 5
        logger.warning("Inventory sync %s failed, retrying in %ss: %s", notification_id, delay, exc)
        raise self.retry(exc=exc, countdown=delay)


async def _deliver_async(notification_id: str) -> None:
    if not settings.INVENTORY_SYNC_URL:
        logger.warning("INVENTORY_SYNC_URL not configured; inventory sync %s stays pending", notification_id)
        return

    client = InventorySyncClient(settings.INVENTORY_SYNC_URL, timeout=settings.INVENTORY_SYNC_TIMEOUT)
    engine, session_maker = _task_session_maker()
    try:
        async with session_maker() as db:
            try:
                await InventorySyncService.deliver(db, UUID(notification_id), client)
            finally:
                # Persist the attempt, successful or not.
                await db.commit()
    finally:
        await engine.dispose()


@celery_app.task
def sweep_pending_inventory_sync() -> int:
    """Re-dispatch every notification not yet delivered. Returns how many were enqueued."""
    ids = asyncio.run(_undelivered_async())
    InventorySyncService.dispatch(ids)
    if ids:
        logger.info("Re-dispatched %d pending inventory sync notification(s)", len(ids))
    return len(ids)


async def _undelivered_async() -> list[UUID]:
    engine, session_maker = _task_session_maker()
    try:
        async with session_maker() as db:
            return await InventorySyncService.undelivered_ids(db)
    finally:
        await engine.dispose()
