"""Hardline Purchasing — Purchase Order endpoints."""
import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from purchasing.api.deps import Actor, DbSession, Directory, IdempotencyKey
from purchasing.schemas.common import ApiResponse, Meta
from purchasing.schemas.purchase_order import (
    AuditEntryResponse,
    InventorySyncResponse,
    PaymentEventResponse,
    POAmendRequest,
    POCancelRequest,
    POCloseRequest,
    POCreate,
    POItemResponse,
    POPaymentRequest,
    POReceiveRequest,
    POResponse,
    POSummaryResponse,
    RebuildResponse,
    ReceivingEventResponse,
)
from purchasing.services.event_log import EventLogService
from purchasing.services.inventory_sync_service import InventorySyncService
from purchasing.services.payment_ledger import payment_label
from purchasing.services.purchase_order_service import OrderHistory, PurchaseOrderService
from purchasing.services.receiving_processor import ReceiptLine

logger = logging.getLogger(__name__)

router = APIRouter()


def _last_paid_at(history: OrderHistory) -> date | None:
    dates = [p.paid_at for p in history.payment_events if p.amount > 0]
    return max(dates) if dates else None


def _po_to_summary(po, last_paid_at: date | None, today: date) -> POSummaryResponse:
    return POSummaryResponse(
        id=po.id,
        order_number=po.order_number,
        supplier_id=po.supplier_id,
        supplier_name=po.supplier_name,
        order_date=po.order_date,
        expected_delivery_date=po.expected_delivery_date,
        payment_terms=po.payment_terms,
        status=po.status,
        receiving_status=po.receiving_status,
        payment_status=po.payment_status,
        payment_label=payment_label(po.payment_status, po.payment_terms, po.order_date, last_paid_at, today),
        total_amount=po.total_amount,
        version=po.version,
    )


def _history_to_response(history: OrderHistory) -> POResponse:
    po = history.order
    summary = _po_to_summary(po, _last_paid_at(history), date.today())
    return POResponse(
        **summary.model_dump(),
        custom_payment_terms=po.custom_payment_terms,
        notes=po.notes,
        cancel_reason=po.cancel_reason,
        items=[POItemResponse.model_validate(item) for item in po.items],
        total_paid=history.derived.total_paid,
        balance=history.derived.balance,
        pending_inventory_sync=history.pending_sync_count,
        receiving_history=[ReceivingEventResponse.model_validate(e) for e in history.receiving_events],
        payment_history=[PaymentEventResponse.model_validate(e) for e in history.payment_events],
        created_at=po.created_at,
        updated_at=po.updated_at,
        closed_at=po.closed_at,
        cancelled_at=po.cancelled_at,
    )


async def _snapshot(db, po_id: UUID) -> POResponse:
    return _history_to_response(await PurchaseOrderService.get_history(db, po_id))


@router.get("", response_model=ApiResponse[list[POSummaryResponse]])
async def list_purchase_orders(
    db: DbSession,
    supplier_id: UUID | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    receiving_status: str | None = Query(None),
    payment_status: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
):
    """List Purchase Orders, newest first."""
    pos, total = await PurchaseOrderService.list_pos(
        db,
        supplier_id=supplier_id,
        status=status_filter,
        receiving_status=receiving_status,
        payment_status=payment_status,
        page=page,
        page_size=page_size,
    )
    last_paid = await EventLogService.last_paid_dates(db, [po.id for po in pos])
    today = date.today()
    return ApiResponse(
        data=[_po_to_summary(po, last_paid.get(po.id), today) for po in pos],
        meta=Meta(page=page, page_size=page_size, total_count=total),
    )


@router.post("", response_model=ApiResponse[POResponse], status_code=status.HTTP_201_CREATED)
async def create_purchase_order(body: POCreate, db: DbSession, directory: Directory, actor: Actor = None):
    """Create a new Purchase Order, Open and Unpaid at version 0."""
    po = await PurchaseOrderService.create_po(
        db,
        supplier_id=body.supplier_id,
        supplier_name=body.supplier_name,
        order_date=body.order_date,
        expected_delivery_date=body.expected_delivery_date,
        payment_terms=body.payment_terms,
        custom_payment_terms=body.custom_payment_terms,
        notes=body.notes,
        items=[item.model_dump() for item in body.items],
        created_by=actor,
        directory=directory,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po.id))


@router.get("/{po_id}", response_model=ApiResponse[POResponse])
async def get_purchase_order(po_id: UUID, db: DbSession):
    """Snapshot with items, balance and full receiving/payment history."""
    return ApiResponse(data=await _snapshot(db, po_id))


@router.get("/{po_id}/audit", response_model=ApiResponse[list[AuditEntryResponse]])
async def get_purchase_order_audit(po_id: UUID, db: DbSession):
    """Who created, amended, closed, cancelled or rebuilt the order, oldest first."""
    entries = await PurchaseOrderService.audit_trail(db, po_id)
    return ApiResponse(data=[AuditEntryResponse.model_validate(e) for e in entries])


@router.get("/{po_id}/inventory-sync", response_model=ApiResponse[list[InventorySyncResponse]])
async def get_purchase_order_inventory_sync(po_id: UUID, db: DbSession):
    rows = await PurchaseOrderService.inventory_sync(db, po_id)
    return ApiResponse(data=[InventorySyncResponse.model_validate(r) for r in rows])


@router.patch("/{po_id}", response_model=ApiResponse[POResponse])
async def amend_purchase_order(po_id: UUID, body: POAmendRequest, db: DbSession, actor: Actor = None):
    """
    Amend header fields. Item quantity/price changes are only accepted
    before anything has been received or paid.
    """
    changes = body.model_dump(
        exclude_unset=True,
        include={"expected_delivery_date", "payment_terms", "custom_payment_terms", "notes"},
    )
    items = [item.model_dump() for item in body.items] if body.items else None
    await PurchaseOrderService.amend(
        db, po_id,
        expected_version=body.expected_version,
        changes=changes,
        items=items,
        amended_by=actor,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/receive", response_model=ApiResponse[POResponse])
async def receive_purchase_order(
    po_id: UUID,
    body: POReceiveRequest,
    db: DbSession,
    idempotency_key: IdempotencyKey = None,
):
    """
    Receive a batch of goods. All lines are validated before any is applied.
    Stock increases are sent to InventorySync after the commit.
    """
    result = await PurchaseOrderService.receive(
        db, po_id,
        expected_version=body.expected_version,
        received_date=body.received_date,
        received_by=body.received_by,
        lines=[
            ReceiptLine(item_id=line.item_id, quantity=line.quantity, actual_unit_price=line.actual_unit_price)
            for line in body.lines
        ],
        notes=body.notes,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    await db.commit()
    InventorySyncService.dispatch(result.notification_ids)
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/payments", response_model=ApiResponse[POResponse])
async def pay_purchase_order(
    po_id: UUID,
    body: POPaymentRequest,
    db: DbSession,
    idempotency_key: IdempotencyKey = None,
):
    """Record a payment against the outstanding balance."""
    await PurchaseOrderService.pay(
        db, po_id,
        expected_version=body.expected_version,
        amount=body.amount,
        method=body.method,
        notes=body.notes,
        paid_at=body.paid_at,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/refunds", response_model=ApiResponse[POResponse])
async def refund_purchase_order(
    po_id: UUID,
    body: POPaymentRequest,
    db: DbSession,
    idempotency_key: IdempotencyKey = None,
):
    """Record a refund. The amount is positive; it is stored as a negative payment."""
    await PurchaseOrderService.refund(
        db, po_id,
        expected_version=body.expected_version,
        amount=body.amount,
        method=body.method,
        notes=body.notes,
        paid_at=body.paid_at,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/close", response_model=ApiResponse[POResponse])
async def close_purchase_order(po_id: UUID, body: POCloseRequest, db: DbSession, actor: Actor = None):
    """Close a fully received order (and fully paid, unless allow_unpaid)."""
    await PurchaseOrderService.close(
        db, po_id,
        expected_version=body.expected_version,
        allow_unpaid=body.allow_unpaid,
        closed_by=actor,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/cancel", response_model=ApiResponse[POResponse])
async def cancel_purchase_order(po_id: UUID, body: POCancelRequest, db: DbSession, actor: Actor = None):
    """Cancel an order that has no receiving or payment history."""
    await PurchaseOrderService.cancel(
        db, po_id,
        expected_version=body.expected_version,
        reason=body.reason,
        cancelled_by=actor,
    )
    await db.commit()
    return ApiResponse(data=await _snapshot(db, po_id))


@router.post("/{po_id}/rebuild", response_model=ApiResponse[RebuildResponse])
async def rebuild_purchase_order(po_id: UUID, db: DbSession, actor: Actor = None):
    """Recompute the cached snapshot from the event log."""
    _, corrected = await PurchaseOrderService.rebuild(db, po_id, rebuilt_by=actor)
    await db.commit()
    return ApiResponse(data=RebuildResponse(order=await _snapshot(db, po_id), corrected=corrected))
