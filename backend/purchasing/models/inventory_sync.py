"""Hardline Purchasing — InventorySync outbox model."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from purchasing.db.base import Base
from purchasing.models.purchase_order import utcnow


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


def stock_increase_key(event_id: uuid.UUID, item_id: uuid.UUID) -> str:
    """Idempotency key sent downstream: one per (receiving event, item)."""
    return f"{event_id}:{item_id}"


class InventorySyncNotification(Base):
    """A stock increase owed to InventorySync. Written in the receiving transaction."""

    __tablename__ = "inventory_sync_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    po_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_orders.id", ondelete="RESTRICT"), index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("receiving_events.id", ondelete="RESTRICT"))
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_order_items.id", ondelete="RESTRICT"))
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncStatus.PENDING.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
