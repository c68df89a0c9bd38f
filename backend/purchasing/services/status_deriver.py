"""Hardline Purchasing — StatusDeriver.

Pure, deterministic folding of an order's item snapshot and event log into
its derived state. Nothing here touches the database, so the full status of
any order can be rebuilt from its history alone.

Inputs are duck-typed so ORM rows and plain objects both work:
  items:             .id, .ordered_quantity, .unit_price
  receiving events:  .lines -> .item_id, .quantity_received
  payment events:    .amount
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Sequence

from purchasing.models.purchase_order import PaymentStatus, ReceivingStatus

ZERO = Decimal("0")
CENT = Decimal("0.01")
# Quantities and unit prices are stored as Numeric(12, 4).
QUANTUM = Decimal("0.0001")


def fits_quantum(value: Decimal) -> bool:
    return value.is_finite() and value == value.quantize(QUANTUM)


@dataclass(frozen=True)
class DerivedState:
    receiving_status: ReceivingStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    total_paid: Decimal
    received_quantities: dict[Any, Decimal] = field(default_factory=dict)

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.total_paid


def line_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return (Decimal(quantity) * Decimal(unit_price)).quantize(CENT)


def order_total(items: Iterable[Any]) -> Decimal:
    return sum((line_total(i.ordered_quantity, i.unit_price) for i in items), ZERO)


def fold_received_quantities(items: Iterable[Any], receiving_events: Iterable[Any]) -> dict[Any, Decimal]:
    """Sum every receiving line per item. Items with no receipts map to zero."""
    received: dict[Any, Decimal] = {item.id: ZERO for item in items}
    for event in receiving_events:
        for line in event.lines:
            received[line.item_id] = received.get(line.item_id, ZERO) + Decimal(line.quantity_received)
    return received


def total_paid(payment_events: Iterable[Any]) -> Decimal:
    return sum((Decimal(p.amount) for p in payment_events), ZERO)


def derive_receiving_status(
    items: Sequence[Any],
    received: dict[Any, Decimal],
    *,
    closed: bool = False,
) -> ReceivingStatus:
    if closed:
        return ReceivingStatus.CLOSED
    quantities = [(Decimal(i.ordered_quantity), received.get(i.id, ZERO)) for i in items]
    if all(got == ZERO for _, got in quantities):
        return ReceivingStatus.OPEN
    if all(got >= ordered for ordered, got in quantities):
        return ReceivingStatus.RECEIVED
    return ReceivingStatus.PARTIAL


def derive_payment_status(total_amount: Decimal, paid: Decimal) -> PaymentStatus:
    if paid <= ZERO:
        return PaymentStatus.UNPAID
    if paid >= total_amount:
        return PaymentStatus.PAID
    return PaymentStatus.PARTIALLY_PAID


def derive(
    items: Sequence[Any],
    receiving_events: Iterable[Any],
    payment_events: Iterable[Any],
    *,
    closed: bool = False,
) -> DerivedState:
    """(items, receiving events, payment events) -> derived order state."""
    received = fold_received_quantities(items, receiving_events)
    total = order_total(items)
    paid = total_paid(payment_events)
    return DerivedState(
        receiving_status=derive_receiving_status(items, received, closed=closed),
        payment_status=derive_payment_status(total, paid),
        total_amount=total,
        total_paid=paid,
        received_quantities=received,
    )
