"""Hardline Purchasing — InventorySync outbox: stage, deliver, dispatch.

Receiving commits first; stock increases follow. Each notification carries
an idempotency key of "<event_id>:<item_id>" so InventorySync can drop
repeats, which makes at-least-once delivery safe.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable
from uuid import UUID

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from purchasing.models.events import ReceivingEvent
from purchasing.models.inventory_sync import InventorySyncNotification, SyncStatus, stock_increase_key
from purchasing.models.purchase_order import PurchaseOrderItem

logger = logging.getLogger(__name__)


class InventorySyncClient:
    """HTTP client for InventorySync's applyStockIncrease."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def apply_stock_increase(self, product_id: UUID, quantity: Decimal, idempotency_key: str) -> None:
        payload = {
            "product_id": str(product_id),
            "quantity": str(quantity),
            "idempotency_key": idempotency_key,
        }
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                "/stock-increases",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            response.raise_for_status()


class InventorySyncService:
    @staticmethod
    def stage(
        db: AsyncSession,
        po_id: UUID,
        event: ReceivingEvent,
        items: Iterable[PurchaseOrderItem],
        deltas: dict[UUID, Decimal],
    ) -> list[InventorySyncNotification]:
        """Add one outbox row per item touched by the event, inside the receiving transaction."""
        items_by_id = {item.id: item for item in items}
        notifications = []
        for item_id, quantity in deltas.items():
            notification = InventorySyncNotification(
                po_id=po_id,
                event_id=event.id,
                item_id=item_id,
                product_id=items_by_id[item_id].product_id,
                quantity=quantity,
                idempotency_key=stock_increase_key(event.id, item_id),
                status=SyncStatus.PENDING.value,
                attempts=0,
            )
            db.add(notification)
            notifications.append(notification)
        return notifications

    @staticmethod
    async def for_order(db: AsyncSession, po_id: UUID) -> list[InventorySyncNotification]:
        result = await db.execute(
            select(InventorySyncNotification)
            .where(InventorySyncNotification.po_id == po_id)
            .order_by(InventorySyncNotification.created_at, InventorySyncNotification.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def pending_count(db: AsyncSession, po_id: UUID) -> int:
        result = await db.execute(
            select(func.count(InventorySyncNotification.id)).where(
                InventorySyncNotification.po_id == po_id,
                InventorySyncNotification.status != SyncStatus.DELIVERED.value,
            )
        )
        return result.scalar_one()

    @staticmethod
    async def undelivered_ids(db: AsyncSession, limit: int = 500) -> list[UUID]:
        result = await db.execute(
            select(InventorySyncNotification.id)
            .where(InventorySyncNotification.status != SyncStatus.DELIVERED.value)
            .order_by(InventorySyncNotification.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def deliver(
        db: AsyncSession,
        notification_id: UUID,
        client: InventorySyncClient,
    ) -> InventorySyncNotification | None:
        """
        Push one notification downstream and record the outcome on the row.
        Already-delivered rows are a no-op. Transport and HTTP errors are
        recorded as FAILED and re-raised so the caller can retry.
        """
        notification = await db.get(InventorySyncNotification, notification_id)
        if notification is None:
            logger.info("Skipping inventory sync %s: notification not found", notification_id)
            return None
        if notification.status == SyncStatus.DELIVERED.value:
            return notification

        notification.attempts += 1
        notification.last_attempt_at = datetime.now(timezone.utc)
        try:
            await client.apply_stock_increase(
                notification.product_id,
                notification.quantity,
                notification.idempotency_key,
            )
        except (httpx.RequestError, httpx.HTTPStatusError) as exc:
            notification.status = SyncStatus.FAILED.value
            notification.last_error = str(exc)[:2000]
            await db.flush()
            raise

        notification.status = SyncStatus.DELIVERED.value
        notification.delivered_at = datetime.now(timezone.utc)
        notification.last_error = None
        await db.flush()
        logger.info(
            "Stock increase %s delivered (product %s, qty %s)",
            notification.idempotency_key, notification.product_id, notification.quantity,
        )
        return notification

    @staticmethod
    def dispatch(notification_ids: Iterable[UUID]) -> None:
        """Enqueue delivery after commit. A broker outage is left to the periodic sweep."""
        from purchasing.tasks.inventory_sync_tasks import deliver_stock_increase

        for notification_id in notification_ids:
            try:
                deliver_stock_increase.delay(str(notification_id))
            except Exception as exc:
                logger.warning("Could not enqueue inventory sync %s, sweep will retry: %s", notification_id, exc)
