"""Hardline Purchasing — PurchaseOrder, PurchaseOrderItem and order-number sequence models."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from purchasing.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle flag. Only close/cancel commands move it off OPEN."""

    OPEN = "Open"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"


class ReceivingStatus(str, Enum):
    OPEN = "Open"
    PARTIAL = "Partial"
    RECEIVED = "Received"
    CLOSED = "Closed"


class PaymentStatus(str, Enum):
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"


class PaymentTerms(str, Enum):
    IMMEDIATE = "Immediate"
    NET_30 = "Net 30"
    CUSTOM = "Custom"


class PurchaseOrder(Base):
    """Purchase Order — a commitment to buy from a supplier at agreed prices.

    receiving_status / payment_status are a cached projection of the event
    log and are only ever written from StatusDeriver output.
    """

    __tablename__ = "purchase_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    supplier_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    supplier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_terms: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentTerms.NET_30.value)
    custom_payment_terms: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.OPEN.value)
    receiving_status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReceivingStatus.OPEN.value)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["PurchaseOrderItem"]] = relationship(
        "PurchaseOrderItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseOrderItem.position",
    )

    # Optimistic concurrency: every UPDATE is guarded by the loaded version.
    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": lambda current: 0 if current is None else current + 1,
    }

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.CLOSED.value, OrderStatus.CANCELLED.value)


class PurchaseOrderItem(Base):
    """A single line item on a Purchase Order."""

    __tablename__ = "purchase_order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    po_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_orders.id", ondelete="RESTRICT"), index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ordered_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    purchase_order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder", back_populates="items")

    @property
    def remaining_quantity(self) -> Decimal:
        return self.ordered_quantity - self.received_quantity


class OrderNumberSequence(Base):
    """Per-prefix, per-year counter backing sequential order numbers."""

    __tablename__ = "order_number_sequences"

    prefix: Mapped[str] = mapped_column(String(20), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
