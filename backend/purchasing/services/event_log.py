"""Hardline Purchasing — EventLogService: append-only receiving and payment history."""
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from purchasing.core.exceptions import ConflictError
from purchasing.models.events import PaymentEvent, ReceivingEvent, ReceivingEventLine
from purchasing.services.receiving_processor import ReceiptLine


def _is_idempotency_violation(exc: IntegrityError) -> bool:
    # Postgres names the uq_*_po_idempotency constraint; SQLite lists the idempotency_key column.
    return "idempotency" in str(exc.orig)


async def _flush_append(db: AsyncSession, idempotency_key: str | None) -> None:
    # Unique (po_id, idempotency_key) catches a duplicate that raced past the lookup.
    # Any other integrity failure propagates unchanged.
    try:
        await db.flush()
    except IntegrityError as exc:
        if idempotency_key is None or not _is_idempotency_violation(exc):
            raise
        raise ConflictError(f"Idempotency key '{idempotency_key}' was recorded concurrently; re-fetch the order") from exc


class EventLogService:
    """Append and read only."""

    @staticmethod
    async def receiving_events(db: AsyncSession, po_id: UUID) -> list[ReceivingEvent]:
        result = await db.execute(
            select(ReceivingEvent)
            .where(ReceivingEvent.po_id == po_id)
            .order_by(ReceivingEvent.created_at, ReceivingEvent.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def payment_events(db: AsyncSession, po_id: UUID) -> list[PaymentEvent]:
        result = await db.execute(
            select(PaymentEvent)
            .where(PaymentEvent.po_id == po_id)
            .order_by(PaymentEvent.created_at, PaymentEvent.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def has_events(db: AsyncSession, po_id: UUID) -> bool:
        receiving = await db.execute(select(ReceivingEvent.id).where(ReceivingEvent.po_id == po_id).limit(1))
        if receiving.first() is not None:
            return True
        payment = await db.execute(select(PaymentEvent.id).where(PaymentEvent.po_id == po_id).limit(1))
        return payment.first() is not None

    @staticmethod
    async def find_receiving(db: AsyncSession, po_id: UUID, idempotency_key: str) -> ReceivingEvent | None:
        result = await db.execute(
            select(ReceivingEvent).where(
                ReceivingEvent.po_id == po_id,
                ReceivingEvent.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_payment(db: AsyncSession, po_id: UUID, idempotency_key: str) -> PaymentEvent | None:
        result = await db.execute(
            select(PaymentEvent).where(
                PaymentEvent.po_id == po_id,
                PaymentEvent.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def append_receiving(
        db: AsyncSession,
        po_id: UUID,
        *,
        received_date: date,
        received_by: str,
        lines: list[ReceiptLine],
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> ReceivingEvent:
        event = ReceivingEvent(
            po_id=po_id,
            idempotency_key=idempotency_key,
            received_date=received_date,
            received_by=received_by,
            notes=notes,
            lines=[
                ReceivingEventLine(
                    item_id=line.item_id,
                    quantity_received=Decimal(str(line.quantity)),
                    actual_unit_price=(
                        Decimal(str(line.actual_unit_price)) if line.actual_unit_price is not None else None
                    ),
                )
                for line in lines
            ],
        )
        db.add(event)
        await _flush_append(db, idempotency_key)
        return event

    @staticmethod
    async def append_payment(
        db: AsyncSession,
        po_id: UUID,
        *,
        amount: Decimal,
        method: str,
        paid_at: date,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            po_id=po_id,
            idempotency_key=idempotency_key,
            amount=amount,
            method=method,
            notes=notes,
            paid_at=paid_at,
        )
        db.add(event)
        await _flush_append(db, idempotency_key)
        return event

    @staticmethod
    async def last_paid_dates(db: AsyncSession, po_ids: list[UUID]) -> dict[UUID, date]:
        """Latest payment date per order, for list-screen labels."""
        if not po_ids:
            return {}
        result = await db.execute(
            select(PaymentEvent.po_id, func.max(PaymentEvent.paid_at))
            .where(PaymentEvent.po_id.in_(po_ids), PaymentEvent.amount > 0)
            .group_by(PaymentEvent.po_id)
        )
        return {po_id: paid_at for po_id, paid_at in result.all()}
