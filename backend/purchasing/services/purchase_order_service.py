"""Hardline Purchasing — PurchaseOrderService: the single writer for each purchase order.

Every mutating command follows the same path:

  1. load the order row FOR UPDATE together with its event log
  2. replay short-circuit for a known idempotency key (receive/pay/refund)
  3. lifecycle check      -> InvalidTransitionError
  4. version check        -> ConflictError
  5. delegate validation  -> ReceivingProcessor / PaymentLedger
  6. append the event, re-derive statuses, flush (version bumps here)

Nothing is committed in this module; the request's session commits or
rolls back as a unit, so a rejected command leaves no trace.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from purchasing.config import get_settings
from purchasing.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from purchasing.models.audit import AuditLog
from purchasing.models.events import PaymentEvent, ReceivingEvent
from purchasing.models.inventory_sync import InventorySyncNotification
from purchasing.models.purchase_order import (
    OrderStatus,
    PaymentStatus,
    PaymentTerms,
    PurchaseOrder,
    PurchaseOrderItem,
    ReceivingStatus,
    utcnow,
)
from purchasing.services import audit_service
from purchasing.services.directory_service import StaticDirectory
from purchasing.services.event_log import EventLogService
from purchasing.services.inventory_sync_service import InventorySyncService
from purchasing.services.order_numbers import next_order_number
from purchasing.services.payment_ledger import PaymentLedger
from purchasing.services.receiving_processor import ReceiptLine, ReceivingProcessor
from purchasing.services.status_deriver import (
    DerivedState,
    derive,
    fits_quantum,
    fold_received_quantities,
    line_total,
    order_total,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class CommandResult:
    order: PurchaseOrder
    event_id: UUID | None = None
    notification_ids: list[UUID] = field(default_factory=list)
    replayed: bool = False


@dataclass
class OrderHistory:
    """Read model: committed snapshot plus its full event history."""

    order: PurchaseOrder
    receiving_events: list[ReceivingEvent]
    payment_events: list[PaymentEvent]
    pending_sync_count: int
    derived: DerivedState


def _positive(value: Any, field_name: str) -> Decimal:
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"{field_name} must be a number", field_errors=[{"field": field_name, "message": "Not a number"}])
    if not number.is_finite() or number <= ZERO:
        raise ValidationError(
            f"{field_name} must be greater than zero",
            field_errors=[{"field": field_name, "message": "Must be greater than zero"}],
        )
    if not fits_quantum(number):
        raise ValidationError(
            f"{field_name} cannot have more than four decimal places",
            field_errors=[{"field": field_name, "message": "At most four decimal places"}],
        )
    return number


def _payment_terms(value: str) -> str:
    allowed = [t.value for t in PaymentTerms]
    if value not in allowed:
        raise ValidationError(
            f"Unknown payment terms '{value}'",
            field_errors=[{"field": "payment_terms", "message": f"Must be one of {allowed}"}],
        )
    return value


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(
            f"{field_name} is required",
            field_errors=[{"field": field_name, "message": "Required"}],
        )
    return value.strip()


class PurchaseOrderService:
    """Commands and reads for Purchase Orders."""

    # ── Loading & guards ─────────────────────────────────────────────────────

    @staticmethod
    async def get_po(db: AsyncSession, po_id: UUID, *, for_update: bool = False) -> PurchaseOrder | None:
        """Get single PO with items (selectin loaded), refreshed from the database."""
        q = (
            select(PurchaseOrder)
            .where(PurchaseOrder.id == po_id)
            .options(selectinload(PurchaseOrder.items))
            .execution_options(populate_existing=True)
        )
        if for_update:
            q = q.with_for_update()
        result = await db.execute(q)
        return result.scalar_one_or_none()

    @staticmethod
    async def _load(db: AsyncSession, po_id: UUID) -> PurchaseOrder:
        po = await PurchaseOrderService.get_po(db, po_id, for_update=True)
        if po is None:
            raise NotFoundError("Purchase Order not found")
        return po

    @staticmethod
    def _ensure_open(po: PurchaseOrder, command: str) -> None:
        if po.is_terminal:
            raise InvalidTransitionError(f"Cannot {command} a purchase order in status: {po.status}")

    @staticmethod
    def _ensure_version(po: PurchaseOrder, expected_version: int) -> None:
        if po.version != expected_version:
            raise ConflictError(
                f"Purchase order {po.order_number} is at version {po.version}, not {expected_version}; re-fetch and retry",
                expected_version=expected_version,
                current_version=po.version,
            )

    @staticmethod
    def _reconcile_items(po: PurchaseOrder, receiving_events: list[ReceivingEvent]) -> bool:
        """Make cached item progress match the log. Returns True if anything drifted."""
        folded = fold_received_quantities(po.items, receiving_events)
        drifted = False
        for item in po.items:
            logged = folded.get(item.id, ZERO)
            if Decimal(item.received_quantity) != logged:
                logger.warning(
                    "PO %s item %s snapshot drifted: cached %s, log %s",
                    po.order_number, item.id, item.received_quantity, logged,
                )
                item.received_quantity = logged
                drifted = True
        return drifted

    @staticmethod
    def _apply_derived(
        po: PurchaseOrder,
        receiving_events: list[ReceivingEvent],
        payment_events: list[PaymentEvent],
    ) -> DerivedState:
        derived = derive(
            po.items, receiving_events, payment_events,
            closed=po.status == OrderStatus.CLOSED.value,
        )
        po.receiving_status = derived.receiving_status.value
        po.payment_status = derived.payment_status.value
        po.total_amount = derived.total_amount
        return derived

    @staticmethod
    async def _flush(db: AsyncSession, po: PurchaseOrder) -> None:
        # A failed flush rolls back and expires po, so read what the error needs first.
        order_number = po.order_number
        po.updated_at = utcnow()
        try:
            await db.flush()
        except StaleDataError as exc:
            raise ConflictError(
                f"Purchase order {order_number} was modified concurrently; re-fetch and retry"
            ) from exc

    # ── Create ───────────────────────────────────────────────────────────────

    @staticmethod
    async def create_po(
        db: AsyncSession,
        *,
        supplier_id: UUID,
        order_date: date,
        payment_terms: str,
        items: list[dict],
        notes: str | None = None,
        expected_delivery_date: date | None = None,
        custom_payment_terms: str | None = None,
        supplier_name: str | None = None,
        created_by: str | None = None,
        directory=None,
    ) -> PurchaseOrder:
        """Create a new PO with items, Open/Unpaid at version 0."""
        if not items:
            raise ValidationError(
                "A purchase order needs at least one item",
                field_errors=[{"field": "items", "message": "At least one item is required"}],
            )
        payment_terms = _payment_terms(payment_terms)
        if expected_delivery_date is not None and expected_delivery_date < order_date:
            raise ValidationError(
                "Expected delivery date cannot be before the order date",
                field_errors=[{"field": "expected_delivery_date", "message": "Before order date"}],
            )

        prepared = []
        for index, item in enumerate(items):
            quantity = _positive(item.get("quantity"), f"items[{index}].quantity")
            unit_price = _positive(item.get("unit_price"), f"items[{index}].unit_price")
            prepared.append((item, quantity, unit_price))

        directory = directory or StaticDirectory()
        supplier_name = await directory.supplier_name(supplier_id) or supplier_name

        settings = get_settings()
        order_number = await next_order_number(db, settings.ORDER_NUMBER_PREFIX, order_date.year)

        po = PurchaseOrder(
            order_number=order_number,
            supplier_id=supplier_id,
            supplier_name=supplier_name,
            order_date=order_date,
            expected_delivery_date=expected_delivery_date,
            payment_terms=payment_terms,
            custom_payment_terms=custom_payment_terms,
            notes=notes,
            status=OrderStatus.OPEN.value,
            receiving_status=ReceivingStatus.OPEN.value,
            payment_status=PaymentStatus.UNPAID.value,
        )
        for position, (item, quantity, unit_price) in enumerate(prepared):
            product = await directory.product(item["product_id"])
            po.items.append(PurchaseOrderItem(
                position=position,
                product_id=item["product_id"],
                product_name=product.name if product else item.get("product_name"),
                ordered_quantity=quantity,
                received_quantity=ZERO,
                unit_price=unit_price,
                line_total=line_total(quantity, unit_price),
            ))
        PurchaseOrderService._apply_derived(po, [], [])
        db.add(po)
        await db.flush()

        audit_service.log_audit(
            db, created_by, audit_service.ACTION_PO_CREATED,
            audit_service.TARGET_PURCHASE_ORDER, po.id,
            {"order_number": po.order_number, "total_amount": str(po.total_amount)},
        )
        logger.info("Purchase order %s created for supplier %s (total %s)", po.order_number, supplier_id, po.total_amount)
        return po

    # ── Receive ──────────────────────────────────────────────────────────────

    @staticmethod
    async def receive(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        received_date: date,
        received_by: str,
        lines: list[ReceiptLine],
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> CommandResult:
        """
        Receive a batch of goods against a PO (all-or-nothing).
        Stages one InventorySync notification per item; the caller dispatches
        result.notification_ids after commit.
        """
        po = await PurchaseOrderService._load(db, po_id)
        if idempotency_key:
            existing = await EventLogService.find_receiving(db, po.id, idempotency_key)
            if existing is not None:
                logger.info("PO %s receive replayed for key %s", po.order_number, idempotency_key)
                return CommandResult(order=po, event_id=existing.id, replayed=True)

        PurchaseOrderService._ensure_open(po, "receive")
        PurchaseOrderService._ensure_version(po, expected_version)
        received_by = _require_text(received_by, "received_by")

        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)
        PurchaseOrderService._reconcile_items(po, receiving_events)

        deltas = ReceivingProcessor.process(po.items, lines)

        event = await EventLogService.append_receiving(
            db, po.id,
            received_date=received_date,
            received_by=received_by,
            lines=lines,
            notes=notes,
            idempotency_key=idempotency_key,
        )
        notifications = InventorySyncService.stage(db, po.id, event, po.items, deltas)
        derived = PurchaseOrderService._apply_derived(po, [*receiving_events, event], payment_events)
        await PurchaseOrderService._flush(db, po)

        logger.info(
            "Purchase order %s received %d line(s) by %s, status %s",
            po.order_number, len(deltas), received_by, derived.receiving_status.value,
        )
        return CommandResult(
            order=po,
            event_id=event.id,
            notification_ids=[n.id for n in notifications],
        )

    # ── Payments ─────────────────────────────────────────────────────────────

    @staticmethod
    async def _record_payment(
        db: AsyncSession,
        po_id: UUID,
        *,
        refund: bool,
        expected_version: int,
        amount: Decimal,
        method: str,
        notes: str | None,
        paid_at: date | None,
        idempotency_key: str | None,
        allow_overpayment: bool | None,
    ) -> CommandResult:
        command = "refund" if refund else "pay"
        po = await PurchaseOrderService._load(db, po_id)
        if idempotency_key:
            existing = await EventLogService.find_payment(db, po.id, idempotency_key)
            if existing is not None:
                logger.info("PO %s %s replayed for key %s", po.order_number, command, idempotency_key)
                return CommandResult(order=po, event_id=existing.id, replayed=True)

        PurchaseOrderService._ensure_open(po, command)
        PurchaseOrderService._ensure_version(po, expected_version)
        method = _require_text(method, "method")

        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)

        if allow_overpayment is None:
            allow_overpayment = get_settings().ALLOW_OVERPAYMENT
        ledger = PaymentLedger(
            order_total(po.items),
            payment_events,
            allow_overpayment=allow_overpayment,
        )
        signed = ledger.validate_refund(amount) if refund else ledger.validate_payment(amount)

        event = await EventLogService.append_payment(
            db, po.id,
            amount=signed,
            method=method,
            notes=notes,
            paid_at=paid_at or date.today(),
            idempotency_key=idempotency_key,
        )
        derived = PurchaseOrderService._apply_derived(po, receiving_events, [*payment_events, event])
        await PurchaseOrderService._flush(db, po)

        logger.info(
            "Purchase order %s %s %s via %s, balance %s, status %s",
            po.order_number, "refunded" if refund else "paid", abs(signed), method,
            derived.balance, derived.payment_status.value,
        )
        return CommandResult(order=po, event_id=event.id)

    @staticmethod
    async def pay(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        amount: Decimal,
        method: str,
        notes: str | None = None,
        paid_at: date | None = None,
        idempotency_key: str | None = None,
        allow_overpayment: bool | None = None,
    ) -> CommandResult:
        """Record a payment against the outstanding balance."""
        return await PurchaseOrderService._record_payment(
            db, po_id,
            refund=False,
            expected_version=expected_version,
            amount=amount,
            method=method,
            notes=notes,
            paid_at=paid_at,
            idempotency_key=idempotency_key,
            allow_overpayment=allow_overpayment,
        )

    @staticmethod
    async def refund(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        amount: Decimal,
        method: str,
        notes: str | None = None,
        paid_at: date | None = None,
        idempotency_key: str | None = None,
    ) -> CommandResult:
        """Record a refund as a negative payment event."""
        return await PurchaseOrderService._record_payment(
            db, po_id,
            refund=True,
            expected_version=expected_version,
            amount=amount,
            method=method,
            notes=notes,
            paid_at=paid_at,
            idempotency_key=idempotency_key,
            allow_overpayment=None,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @staticmethod
    async def close(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        allow_unpaid: bool = False,
        closed_by: str | None = None,
    ) -> CommandResult:
        """Close a fully received PO. Unpaid orders need allow_unpaid (store credit)."""
        po = await PurchaseOrderService._load(db, po_id)
        PurchaseOrderService._ensure_open(po, "close")
        PurchaseOrderService._ensure_version(po, expected_version)

        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)
        current = derive(po.items, receiving_events, payment_events)

        if current.receiving_status != ReceivingStatus.RECEIVED:
            raise InvalidTransitionError(
                f"Cannot close purchase order {po.order_number}: receiving status is {current.receiving_status.value}"
            )
        if current.payment_status != PaymentStatus.PAID and not allow_unpaid:
            raise InvalidTransitionError(
                f"Cannot close purchase order {po.order_number}: payment status is "
                f"{current.payment_status.value} (set allow_unpaid to close on credit)"
            )

        po.status = OrderStatus.CLOSED.value
        po.closed_at = utcnow()
        PurchaseOrderService._apply_derived(po, receiving_events, payment_events)
        await PurchaseOrderService._flush(db, po)

        audit_service.log_audit(
            db, closed_by, audit_service.ACTION_PO_CLOSED,
            audit_service.TARGET_PURCHASE_ORDER, po.id,
            {"allow_unpaid": allow_unpaid, "payment_status": current.payment_status.value},
        )
        logger.info("Purchase order %s closed (payment %s)", po.order_number, current.payment_status.value)
        return CommandResult(order=po)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        reason: str | None = None,
        cancelled_by: str | None = None,
    ) -> CommandResult:
        """Cancel a PO created in error. Only allowed before anything was received or paid."""
        po = await PurchaseOrderService._load(db, po_id)
        PurchaseOrderService._ensure_open(po, "cancel")
        PurchaseOrderService._ensure_version(po, expected_version)
        if await EventLogService.has_events(db, po.id):
            raise InvalidTransitionError(
                f"Cannot cancel purchase order {po.order_number}: it already has receiving or payment history"
            )

        po.status = OrderStatus.CANCELLED.value
        po.cancelled_at = utcnow()
        po.cancel_reason = reason
        await PurchaseOrderService._flush(db, po)

        audit_service.log_audit(
            db, cancelled_by, audit_service.ACTION_PO_CANCELLED,
            audit_service.TARGET_PURCHASE_ORDER, po.id, {"reason": reason},
        )
        logger.info("Purchase order %s cancelled", po.order_number)
        return CommandResult(order=po)

    @staticmethod
    async def amend(
        db: AsyncSession,
        po_id: UUID,
        *,
        expected_version: int,
        changes: dict,
        items: list[dict] | None = None,
        amended_by: str | None = None,
    ) -> CommandResult:
        """
        Edit header fields (expected_delivery_date, payment_terms,
        custom_payment_terms, notes). Item quantity/unit_price edits are only
        accepted while the order has no receiving or payment events.
        """
        po = await PurchaseOrderService._load(db, po_id)
        PurchaseOrderService._ensure_open(po, "amend")
        PurchaseOrderService._ensure_version(po, expected_version)

        applied: dict[str, Any] = {}
        if "payment_terms" in changes and changes["payment_terms"] is not None:
            po.payment_terms = _payment_terms(changes["payment_terms"])
            applied["payment_terms"] = po.payment_terms
        for name in ("expected_delivery_date", "custom_payment_terms", "notes"):
            if name in changes:
                setattr(po, name, changes[name])
                applied[name] = str(changes[name]) if changes[name] is not None else None
        if po.expected_delivery_date is not None and po.expected_delivery_date < po.order_date:
            raise ValidationError(
                "Expected delivery date cannot be before the order date",
                field_errors=[{"field": "expected_delivery_date", "message": "Before order date"}],
            )

        if items:
            if await EventLogService.has_events(db, po.id):
                raise InvalidTransitionError(
                    f"Quantities and prices of purchase order {po.order_number} are fixed once receiving or payment has started"
                )
            items_by_id = {item.id: item for item in po.items}
            for index, change in enumerate(items):
                item = items_by_id.get(change.get("item_id"))
                if item is None:
                    raise ValidationError(
                        f"Item {change.get('item_id')} is not on this purchase order",
                        field_errors=[{"field": f"items[{index}].item_id", "message": "Unknown item"}],
                    )
                if change.get("quantity") is not None:
                    item.ordered_quantity = _positive(change["quantity"], f"items[{index}].quantity")
                if change.get("unit_price") is not None:
                    item.unit_price = _positive(change["unit_price"], f"items[{index}].unit_price")
                item.line_total = line_total(item.ordered_quantity, item.unit_price)
            applied["items"] = [
                {k: str(v) for k, v in change.items() if v is not None} for change in items
            ]

        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)
        PurchaseOrderService._apply_derived(po, receiving_events, payment_events)
        await PurchaseOrderService._flush(db, po)

        audit_service.log_audit(
            db, amended_by, audit_service.ACTION_PO_AMENDED,
            audit_service.TARGET_PURCHASE_ORDER, po.id, applied,
        )
        logger.info("Purchase order %s amended: %s", po.order_number, sorted(applied))
        return CommandResult(order=po)

    # ── Recovery ─────────────────────────────────────────────────────────────

    @staticmethod
    async def rebuild(db: AsyncSession, po_id: UUID, *, rebuilt_by: str | None = None) -> tuple[PurchaseOrder, list[str]]:
        """
        Recompute the cached snapshot from the event log alone and overwrite
        whatever drifted. Returns the order and the names of corrected fields.
        """
        po = await PurchaseOrderService._load(db, po_id)
        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)

        corrected: list[str] = []
        if PurchaseOrderService._reconcile_items(po, receiving_events):
            corrected.append("received_quantity")
        for item in po.items:
            expected_total = line_total(item.ordered_quantity, item.unit_price)
            if Decimal(item.line_total) != expected_total:
                item.line_total = expected_total
                if "line_total" not in corrected:
                    corrected.append("line_total")

        before = (po.receiving_status, po.payment_status, Decimal(po.total_amount))
        derived = PurchaseOrderService._apply_derived(po, receiving_events, payment_events)
        if before[0] != po.receiving_status:
            corrected.append("receiving_status")
        if before[1] != po.payment_status:
            corrected.append("payment_status")
        if before[2] != derived.total_amount:
            corrected.append("total_amount")

        if corrected:
            await PurchaseOrderService._flush(db, po)
            audit_service.log_audit(
                db, rebuilt_by, audit_service.ACTION_PO_REBUILT,
                audit_service.TARGET_PURCHASE_ORDER, po.id, {"corrected": corrected},
            )
            logger.warning("Purchase order %s rebuilt from event log, corrected %s", po.order_number, corrected)
        return po, corrected

    # ── Reads ────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_history(db: AsyncSession, po_id: UUID) -> OrderHistory:
        """Snapshot + receiving/payment history for audit and rebuild."""
        po = await PurchaseOrderService.get_po(db, po_id)
        if po is None:
            raise NotFoundError("Purchase Order not found")
        receiving_events = await EventLogService.receiving_events(db, po.id)
        payment_events = await EventLogService.payment_events(db, po.id)
        return OrderHistory(
            order=po,
            receiving_events=receiving_events,
            payment_events=payment_events,
            pending_sync_count=await InventorySyncService.pending_count(db, po.id),
            derived=derive(
                po.items, receiving_events, payment_events,
                closed=po.status == OrderStatus.CLOSED.value,
            ),
        )

    @staticmethod
    async def audit_trail(db: AsyncSession, po_id: UUID) -> list[AuditLog]:
        if await PurchaseOrderService.get_po(db, po_id) is None:
            raise NotFoundError("Purchase Order not found")
        return await audit_service.list_audit(db, po_id)

    @staticmethod
    async def inventory_sync(db: AsyncSession, po_id: UUID) -> list[InventorySyncNotification]:
        """Stock increases owed to InventorySync for this order, delivered or not."""
        if await PurchaseOrderService.get_po(db, po_id) is None:
            raise NotFoundError("Purchase Order not found")
        return await InventorySyncService.for_order(db, po_id)

    @staticmethod
    async def list_pos(
        db: AsyncSession,
        *,
        supplier_id: UUID | None = None,
        status: str | None = None,
        receiving_status: str | None = None,
        payment_status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[PurchaseOrder], int]:
        """Paginated list of POs, newest order date first."""
        q = select(PurchaseOrder)
        count_q = select(func.count(PurchaseOrder.id))
        filters = []
        if supplier_id:
            filters.append(PurchaseOrder.supplier_id == supplier_id)
        if status:
            filters.append(PurchaseOrder.status == status)
        if receiving_status:
            filters.append(PurchaseOrder.receiving_status == receiving_status)
        if payment_status:
            filters.append(PurchaseOrder.payment_status == payment_status)
        if filters:
            q = q.where(*filters)
            count_q = count_q.where(*filters)

        total = (await db.execute(count_q)).scalar_one()
        q = (
            q.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.order_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .options(selectinload(PurchaseOrder.items))
        )
        result = await db.execute(q)
        return list(result.scalars().all()), total
