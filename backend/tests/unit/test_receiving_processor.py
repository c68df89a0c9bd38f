from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from purchasing.core.exceptions import OverReceiptError, ValidationError
from purchasing.services.receiving_processor import ReceiptLine, ReceivingProcessor


@dataclass
class Item:
    ordered_quantity: Decimal
    received_quantity: Decimal = Decimal("0")
    id: UUID = field(default_factory=uuid4)


@pytest.fixture
def items():
    return [Item(Decimal("10")), Item(Decimal("5"))]


def test_applies_valid_batch(items):
    a, b = items
    deltas = ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("4")), ReceiptLine(b.id, Decimal("5"))])
    assert deltas == {a.id: Decimal("4"), b.id: Decimal("5")}
    assert a.received_quantity == Decimal("4")
    assert b.received_quantity == Decimal("5")


def test_repeated_item_lines_are_summed(items):
    a, _ = items
    deltas = ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("3")), ReceiptLine(a.id, Decimal("2"))])
    assert deltas == {a.id: Decimal("5")}
    assert a.received_quantity == Decimal("5")


def test_empty_batch_rejected(items):
    with pytest.raises(ValidationError):
        ReceivingProcessor.process(items, [])


def test_unknown_item_rejected(items):
    with pytest.raises(ValidationError) as exc_info:
        ReceivingProcessor.process(items, [ReceiptLine(uuid4(), Decimal("1"))])
    assert exc_info.value.field_errors[0]["field"] == "lines[0].item_id"


@pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-1")])
def test_non_positive_quantity_rejected(items, quantity):
    with pytest.raises(ValidationError):
        ReceivingProcessor.process(items, [ReceiptLine(items[0].id, quantity)])


def test_non_positive_actual_price_rejected(items):
    with pytest.raises(ValidationError):
        ReceivingProcessor.process(items, [ReceiptLine(items[0].id, Decimal("1"), Decimal("0"))])


def test_over_receipt_rejects_whole_batch(items):
    a, b = items
    a.received_quantity = Decimal("10")
    with pytest.raises(OverReceiptError):
        ReceivingProcessor.process(items, [ReceiptLine(b.id, Decimal("2")), ReceiptLine(a.id, Decimal("1"))])
    assert a.received_quantity == Decimal("10")
    assert b.received_quantity == Decimal("0")


def test_summed_lines_checked_against_remaining(items):
    _, b = items
    with pytest.raises(OverReceiptError):
        ReceivingProcessor.process(items, [ReceiptLine(b.id, Decimal("3")), ReceiptLine(b.id, Decimal("3"))])
    assert b.received_quantity == Decimal("0")


def test_fractional_quantities(items):
    a, _ = items
    ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("2.5"))])
    assert a.received_quantity == Decimal("2.5")


def test_quantity_beyond_four_decimal_places_rejected(items):
    a, _ = items
    with pytest.raises(ValidationError) as exc_info:
        ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("0.00001"))])
    assert exc_info.value.field_errors[0]["field"] == "lines[0].quantity"
    assert a.received_quantity == Decimal("0")


def test_actual_price_beyond_four_decimal_places_rejected(items):
    a, _ = items
    with pytest.raises(ValidationError):
        ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("1"), actual_unit_price=Decimal("9.12345"))])


def test_four_decimal_places_accepted(items):
    a, _ = items
    ReceivingProcessor.process(items, [ReceiptLine(a.id, Decimal("2.5005"), actual_unit_price=Decimal("9.1234"))])
    assert a.received_quantity == Decimal("2.5005")
