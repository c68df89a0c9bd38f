from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from purchasing.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OverpaymentError,
    OverReceiptError,
    ValidationError,
)
from purchasing.models import AuditLog, InventorySyncNotification, PaymentEvent, ReceivingEvent
from purchasing.services.event_log import EventLogService, _flush_append
from purchasing.services.purchase_order_service import PurchaseOrderService
from purchasing.services.receiving_processor import ReceiptLine

RECEIVED_ON = date(2026, 3, 10)


async def _receive(db, po_id, version, *pairs, key=None):
    result = await PurchaseOrderService.receive(
        db, po_id,
        expected_version=version,
        received_date=RECEIVED_ON,
        received_by="dock-1",
        lines=[ReceiptLine(item_id=item_id, quantity=Decimal(str(qty))) for item_id, qty in pairs],
        idempotency_key=key,
    )
    await db.commit()
    return result


async def _pay(db, po_id, version, amount, key=None):
    result = await PurchaseOrderService.pay(
        db, po_id,
        expected_version=version,
        amount=Decimal(str(amount)),
        method="bank transfer",
        paid_at=date(2026, 3, 12),
        idempotency_key=key,
    )
    await db.commit()
    return result


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


def _ids(po):
    """Plain ids, safe to use after a rollback expires the ORM objects."""
    return po.id, [item.id for item in po.items]


async def test_create_assigns_number_and_initial_state(order):
    assert order.order_number == "PO-2026-00001"
    assert order.version == 0
    assert order.status == "Open"
    assert order.receiving_status == "Open"
    assert order.payment_status == "Unpaid"
    assert order.total_amount == Decimal("150.00")
    assert [item.position for item in order.items] == [0, 1]


async def test_order_numbers_are_sequential(db, order, supplier_id):
    second = await PurchaseOrderService.create_po(
        db,
        supplier_id=supplier_id,
        order_date=date(2026, 5, 1),
        payment_terms="Immediate",
        items=[{"product_id": uuid4(), "quantity": Decimal("1"), "unit_price": Decimal("2.50")}],
    )
    assert second.order_number == "PO-2026-00002"


@pytest.mark.parametrize("items", [
    [],
    [{"product_id": uuid4(), "quantity": Decimal("0"), "unit_price": Decimal("1")}],
    [{"product_id": uuid4(), "quantity": Decimal("1"), "unit_price": Decimal("-1")}],
    [{"product_id": uuid4(), "quantity": Decimal("0.00001"), "unit_price": Decimal("1")}],
    [{"product_id": uuid4(), "quantity": Decimal("1"), "unit_price": Decimal("9.12345")}],
])
async def test_create_rejects_bad_items(db, supplier_id, items):
    with pytest.raises(ValidationError):
        await PurchaseOrderService.create_po(
            db, supplier_id=supplier_id, order_date=date(2026, 3, 2), payment_terms="Net 30", items=items,
        )


async def test_create_rejects_unknown_terms(db, supplier_id):
    with pytest.raises(ValidationError):
        await PurchaseOrderService.create_po(
            db,
            supplier_id=supplier_id,
            order_date=date(2026, 3, 2),
            payment_terms="Net 90",
            items=[{"product_id": uuid4(), "quantity": Decimal("1"), "unit_price": Decimal("1")}],
        )


async def test_receiving_and_payment_walkthrough(db, order):
    po_id, (a, b) = _ids(order)

    result = await _receive(db, po_id, 0, (a, 4))
    assert result.order.receiving_status == "Partial"
    assert result.order.version == 1

    result = await _receive(db, po_id, 1, (a, 6), (b, 5))
    po = result.order
    assert [item.received_quantity for item in po.items] == [Decimal("10"), Decimal("5")]
    assert po.receiving_status == "Received"

    with pytest.raises(OverReceiptError):
        await _receive(db, po_id, 2, (a, 1))
    await db.rollback()

    with pytest.raises(OverpaymentError):
        await _pay(db, po_id, 2, 200)
    await db.rollback()

    snapshot = await PurchaseOrderService.get_history(db, po_id)
    assert snapshot.order.version == 2
    assert snapshot.derived.total_paid == Decimal("0")
    assert [item.received_quantity for item in snapshot.order.items] == [Decimal("10"), Decimal("5")]

    result = await _pay(db, po_id, 2, 150)
    assert result.order.payment_status == "Paid"
    assert result.order.version == 3

    result = await PurchaseOrderService.close(db, po_id, expected_version=3)
    await db.commit()
    assert result.order.status == "Closed"
    assert result.order.receiving_status == "Closed"
    assert result.order.version == 4

    with pytest.raises(InvalidTransitionError):
        await _receive(db, po_id, 4, (a, 1))
    await db.rollback()
    with pytest.raises(InvalidTransitionError):
        await _pay(db, po_id, 4, 1)


async def test_receive_stages_one_notification_per_item(db, order):
    po_id, (a, b) = _ids(order)
    result = await _receive(db, po_id, 0, (a, 2), (a, 1), (b, 5))

    notifications = (await db.execute(select(InventorySyncNotification))).scalars().all()
    assert len(result.notification_ids) == 2
    assert {n.id for n in notifications} == set(result.notification_ids)
    quantities = {n.item_id: n.quantity for n in notifications}
    assert quantities == {a: Decimal("3"), b: Decimal("5")}
    assert all(n.idempotency_key == f"{result.event_id}:{n.item_id}" for n in notifications)
    assert all(n.status == "PENDING" for n in notifications)


async def test_rejected_receive_leaves_no_trace(db, order):
    po_id, (a, b) = _ids(order)
    with pytest.raises(OverReceiptError):
        await _receive(db, po_id, 0, (a, 4), (b, 6))
    await db.rollback()

    assert await _count(db, ReceivingEvent) == 0
    assert await _count(db, InventorySyncNotification) == 0
    po = await PurchaseOrderService.get_po(db, po_id)
    assert po.version == 0
    assert all(item.received_quantity == 0 for item in po.items)


async def test_receipt_finer_than_stored_precision_is_rejected(db, order):
    po_id, (a, _) = _ids(order)
    with pytest.raises(ValidationError):
        await _receive(db, po_id, 0, (a, "0.00001"))
    await db.rollback()

    assert await _count(db, ReceivingEvent) == 0
    po = await PurchaseOrderService.get_po(db, po_id)
    assert po.version == 0
    assert po.receiving_status == "Open"
    _, corrected = await PurchaseOrderService.rebuild(db, po_id)
    assert corrected == []


async def test_disjoint_receipts_commute(session_maker, supplier_id):
    async def run(first_a: bool):
        async with session_maker() as db:
            po = await PurchaseOrderService.create_po(
                db,
                supplier_id=supplier_id,
                order_date=date(2026, 3, 2),
                payment_terms="Net 30",
                items=[
                    {"product_id": uuid4(), "quantity": Decimal("10"), "unit_price": Decimal("10")},
                    {"product_id": uuid4(), "quantity": Decimal("5"), "unit_price": Decimal("10")},
                ],
            )
            await db.commit()
            a, b = [item.id for item in po.items]
            batches = [(a, 3), (b, 2)] if first_a else [(b, 2), (a, 3)]
            for version, pair in enumerate(batches):
                await _receive(db, po.id, version, pair)
            snapshot = await PurchaseOrderService.get_history(db, po.id)
            return [item.received_quantity for item in snapshot.order.items], snapshot.order.receiving_status

    assert await run(True) == await run(False)


async def test_receive_replay_is_idempotent(db, order):
    po_id, (a, _) = _ids(order)
    first = await _receive(db, po_id, 0, (a, 4), key="dock-1-batch-7")
    replay = await _receive(db, po_id, 0, (a, 4), key="dock-1-batch-7")

    assert replay.replayed is True
    assert replay.event_id == first.event_id
    assert replay.notification_ids == []
    assert replay.order.version == 1
    assert replay.order.items[0].received_quantity == Decimal("4")
    assert await _count(db, ReceivingEvent) == 1
    assert await _count(db, InventorySyncNotification) == 1


async def test_payment_replay_is_idempotent(db, order):
    po_id = order.id
    await _pay(db, po_id, 0, 50, key="inv-991")
    replay = await _pay(db, po_id, 0, 50, key="inv-991")
    assert replay.replayed is True
    assert await _count(db, PaymentEvent) == 1
    assert replay.order.payment_status == "Partially Paid"


async def test_stale_version_conflicts(db, order):
    po_id, (a, _) = _ids(order)
    await _receive(db, po_id, 0, (a, 1))
    with pytest.raises(ConflictError) as exc_info:
        await _pay(db, po_id, 0, 10)
    assert exc_info.value.current_version == 1


async def test_concurrent_flush_is_a_conflict(session_maker, order):
    po_id = order.id
    async with session_maker() as first, session_maker() as second:
        stale = await PurchaseOrderService.get_po(second, po_id)
        await _pay(first, po_id, 0, 10)

        stale.notes = "edited from a stale read"
        with pytest.raises(ConflictError):
            await PurchaseOrderService._flush(second, stale)


async def test_refunds(db, order):
    po_id = order.id
    await _pay(db, po_id, 0, 150)
    result = await PurchaseOrderService.refund(
        db, po_id, expected_version=1, amount=Decimal("40"), method="bank transfer",
    )
    await db.commit()
    assert result.order.payment_status == "Partially Paid"

    history = await PurchaseOrderService.get_history(db, po_id)
    assert [p.amount for p in history.payment_events] == [Decimal("150.00"), Decimal("-40.00")]
    assert history.derived.balance == Decimal("40.00")

    with pytest.raises(OverpaymentError):
        await PurchaseOrderService.refund(
            db, po_id, expected_version=2, amount=Decimal("111"), method="bank transfer",
        )


async def test_overpayment_flag(db, order):
    po_id = order.id
    result = await PurchaseOrderService.pay(
        db, po_id, expected_version=0, amount=Decimal("175"), method="cash", allow_overpayment=True,
    )
    assert result.order.payment_status == "Paid"


async def test_close_requires_full_receipt(db, order):
    po_id = order.id
    await _pay(db, po_id, 0, 150)
    with pytest.raises(InvalidTransitionError):
        await PurchaseOrderService.close(db, po_id, expected_version=1)


async def test_close_unpaid_needs_flag(db, order):
    po_id, (a, b) = _ids(order)
    await _receive(db, po_id, 0, (a, 10), (b, 5))
    with pytest.raises(InvalidTransitionError):
        await PurchaseOrderService.close(db, po_id, expected_version=1)
    await db.rollback()

    result = await PurchaseOrderService.close(db, po_id, expected_version=1, allow_unpaid=True, closed_by="ap-clerk")
    await db.commit()
    assert result.order.status == "Closed"
    assert result.order.payment_status == "Unpaid"

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "purchase_order.closed"))).scalar_one()
    assert audit.actor == "ap-clerk"
    assert audit.payload["allow_unpaid"] is True


async def test_cancel_only_without_history(db, order):
    po_id = order.id
    result = await PurchaseOrderService.cancel(db, po_id, expected_version=0, reason="duplicate")
    await db.commit()
    assert result.order.status == "Cancelled"
    assert result.order.cancel_reason == "duplicate"

    with pytest.raises(InvalidTransitionError):
        await PurchaseOrderService.amend(db, po_id, expected_version=1, changes={"notes": "late"})


async def test_cancel_rejected_after_payment(db, order):
    po_id = order.id
    await _pay(db, po_id, 0, 10)
    with pytest.raises(InvalidTransitionError):
        await PurchaseOrderService.cancel(db, po_id, expected_version=1)


async def test_amend_items_before_history(db, order):
    po_id, (a, _) = _ids(order)
    result = await PurchaseOrderService.amend(
        db, po_id,
        expected_version=0,
        changes={"notes": "rush", "payment_terms": "Immediate"},
        items=[{"item_id": a, "quantity": Decimal("12"), "unit_price": Decimal("9.50")}],
    )
    await db.commit()
    po = result.order
    assert po.total_amount == Decimal("164.00")
    assert po.payment_terms == "Immediate"
    assert po.notes == "rush"
    assert po.version == 1


async def test_amend_items_locked_after_receipt(db, order):
    po_id, (a, _) = _ids(order)
    await _receive(db, po_id, 0, (a, 1))
    with pytest.raises(InvalidTransitionError):
        await PurchaseOrderService.amend(
            db, po_id, expected_version=1, changes={},
            items=[{"item_id": a, "quantity": Decimal("20")}],
        )
    await db.rollback()

    result = await PurchaseOrderService.amend(
        db, po_id, expected_version=1, changes={"expected_delivery_date": date(2026, 4, 1)},
    )
    assert result.order.expected_delivery_date == date(2026, 4, 1)


async def test_rebuild_repairs_drifted_snapshot(db, order):
    po_id, (a, b) = _ids(order)
    await _receive(db, po_id, 0, (a, 4))

    po = await PurchaseOrderService.get_po(db, po_id)
    po.items[0].received_quantity = Decimal("9")
    po.receiving_status = "Received"
    await db.commit()

    po, corrected = await PurchaseOrderService.rebuild(db, po_id, rebuilt_by="ops")
    await db.commit()
    assert "received_quantity" in corrected
    assert "receiving_status" in corrected
    assert po.items[0].received_quantity == Decimal("4")
    assert po.receiving_status == "Partial"

    _, corrected = await PurchaseOrderService.rebuild(db, po_id)
    assert corrected == []


async def test_unknown_order(db):
    with pytest.raises(NotFoundError):
        await PurchaseOrderService.get_history(db, uuid4())


async def test_list_filters(db, order, supplier_id):
    po_id = order.id
    other = await PurchaseOrderService.create_po(
        db,
        supplier_id=uuid4(),
        order_date=date(2026, 3, 5),
        payment_terms="Net 30",
        items=[{"product_id": uuid4(), "quantity": Decimal("1"), "unit_price": Decimal("5")}],
    )
    await db.commit()
    await _pay(db, po_id, 0, 150)

    pos, total = await PurchaseOrderService.list_pos(db)
    assert total == 2
    assert [po.id for po in pos] == [other.id, po_id]

    pos, total = await PurchaseOrderService.list_pos(db, supplier_id=supplier_id)
    assert [po.id for po in pos] == [po_id]

    pos, total = await PurchaseOrderService.list_pos(db, payment_status="Unpaid")
    assert [po.id for po in pos] == [other.id]

    pos, total = await PurchaseOrderService.list_pos(db, page=2, page_size=1)
    assert total == 2
    assert [po.id for po in pos] == [po_id]

    last_paid = await EventLogService.last_paid_dates(db, [po_id, other.id])
    assert last_paid == {po_id: date(2026, 3, 12)}


async def test_duplicate_idempotency_key_in_log_is_a_conflict(db, order):
    po_id = order.id
    payment = {"amount": Decimal("10.00"), "method": "cash", "paid_at": date(2026, 3, 12), "idempotency_key": "inv-7"}
    await EventLogService.append_payment(db, po_id, **payment)
    with pytest.raises(ConflictError):
        await EventLogService.append_payment(db, po_id, **payment)


class _FailingSession:
    def __init__(self, reason: str):
        self.reason = reason

    async def flush(self):
        raise IntegrityError("INSERT INTO receiving_event_lines", {}, Exception(self.reason))


async def test_other_integrity_errors_propagate():
    with pytest.raises(IntegrityError):
        await _flush_append(_FailingSession("violates check constraint \"ck_receiving_lines_quantity_positive\""), "scan-1")
    with pytest.raises(ConflictError):
        await _flush_append(_FailingSession("duplicate key value violates unique constraint \"uq_receiving_events_po_idempotency\""), "scan-1")


async def test_audit_trail_and_sync_rows(db, order):
    po_id, (a, _) = _ids(order)
    await _receive(db, po_id, 0, (a, 2))
    entries = await PurchaseOrderService.audit_trail(db, po_id)
    assert [e.action for e in entries] == ["purchase_order.created"]

    rows = await PurchaseOrderService.inventory_sync(db, po_id)
    assert [(r.item_id, r.quantity, r.status) for r in rows] == [(a, Decimal("2"), "PENDING")]

    with pytest.raises(NotFoundError):
        await PurchaseOrderService.audit_trail(db, uuid4())
