"""Hardline Purchasing — Receiving and payment event log models.

Append-only. No UPDATE or DELETE is ever issued against these tables;
corrections are new events (a refund is a negative PaymentEvent).
"""
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from purchasing.db.base import Base
from purchasing.models.purchase_order import utcnow


class ReceivingEvent(Base):
    """One physical arrival of goods against a PO, possibly touching several items."""

    __tablename__ = "receiving_events"
    __table_args__ = (
        UniqueConstraint("po_id", "idempotency_key", name="uq_receiving_events_po_idempotency"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    po_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_orders.id", ondelete="RESTRICT"), index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    received_by: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines: Mapped[list["ReceivingEventLine"]] = relationship(
        "ReceivingEventLine", back_populates="event", cascade="all", lazy="selectin",
    )


class ReceivingEventLine(Base):
    __tablename__ = "receiving_event_lines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("receiving_events.id", ondelete="RESTRICT"), index=True)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_order_items.id", ondelete="RESTRICT"))
    quantity_received: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    # Informational only: never feeds back into line_total or total_amount.
    actual_unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)

    event: Mapped["ReceivingEvent"] = relationship("ReceivingEvent", back_populates="lines")


class PaymentEvent(Base):
    """Money paid against a PO. Negative amount = refund."""

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("po_id", "idempotency_key", name="uq_payment_events_po_idempotency"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    po_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("purchase_orders.id", ondelete="RESTRICT"), index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
