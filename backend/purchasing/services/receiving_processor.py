"""Hardline Purchasing — ReceivingProcessor: all-or-nothing batch receipts."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from purchasing.core.exceptions import OverReceiptError, ValidationError
from purchasing.services.status_deriver import fits_quantum

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class ReceiptLine:
    item_id: UUID
    quantity: Decimal
    actual_unit_price: Decimal | None = None


class ReceivingProcessor:
    """Validates a receiving batch against item progress, then applies it.

    Every line is checked before any item is touched. A single bad line
    rejects the whole batch.
    """

    @staticmethod
    def validate(items: Sequence[Any], lines: Iterable[ReceiptLine]) -> dict[UUID, Decimal]:
        """Return the per-item quantity deltas for a valid batch."""
        lines = list(lines)
        if not lines:
            raise ValidationError("A receiving event needs at least one line")

        items_by_id = {item.id: item for item in items}
        field_errors: list[dict] = []
        deltas: dict[UUID, Decimal] = {}

        for index, line in enumerate(lines):
            qty = Decimal(str(line.quantity))
            if line.item_id not in items_by_id:
                field_errors.append({
                    "field": f"lines[{index}].item_id",
                    "message": f"Item {line.item_id} is not on this purchase order",
                })
                continue
            if qty <= ZERO:
                field_errors.append({
                    "field": f"lines[{index}].quantity",
                    "message": "Quantity must be greater than zero",
                })
                continue
            if not fits_quantum(qty):
                field_errors.append({
                    "field": f"lines[{index}].quantity",
                    "message": "Quantity cannot have more than four decimal places",
                })
                continue
            if line.actual_unit_price is not None:
                price = Decimal(str(line.actual_unit_price))
                if price <= ZERO or not fits_quantum(price):
                    field_errors.append({
                        "field": f"lines[{index}].actual_unit_price",
                        "message": "Actual unit price must be greater than zero, with at most four decimal places",
                    })
                    continue
            deltas[line.item_id] = deltas.get(line.item_id, ZERO) + qty

        if field_errors:
            raise ValidationError("Invalid receiving lines", field_errors=field_errors)

        over: list[dict] = []
        for item_id, qty in deltas.items():
            item = items_by_id[item_id]
            remaining = Decimal(item.ordered_quantity) - Decimal(item.received_quantity)
            if qty > remaining:
                over.append({
                    "field": "lines",
                    "item_id": str(item_id),
                    "message": f"Cannot receive {qty} of item {item_id}: only {remaining} remaining",
                })

        if over:
            raise OverReceiptError(
                "; ".join(entry["message"] for entry in over),
                field_errors=over,
            )
        return deltas

    @staticmethod
    def apply(items: Sequence[Any], deltas: dict[UUID, Decimal]) -> None:
        for item in items:
            if item.id in deltas:
                item.received_quantity = Decimal(item.received_quantity) + deltas[item.id]

    @staticmethod
    def process(items: Sequence[Any], lines: Iterable[ReceiptLine]) -> dict[UUID, Decimal]:
        deltas = ReceivingProcessor.validate(items, lines)
        ReceivingProcessor.apply(items, deltas)
        logger.debug("Applied receiving deltas to %d item(s)", len(deltas))
        return deltas
