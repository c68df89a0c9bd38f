"""Hardline Purchasing — PaymentLedger: running balance over payment events.

balance = total_amount - sum(PaymentEvent.amount)

Payments are positive events, refunds negative ones. Nothing is ever
edited or removed; a mistaken payment is corrected by a refund.
"""
from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable

from purchasing.core.exceptions import OverpaymentError, ValidationError
from purchasing.models.purchase_order import PaymentStatus, PaymentTerms
from purchasing.services.status_deriver import CENT, ZERO, total_paid

NET_30_DAYS = 30


class PaymentLedger:
    def __init__(
        self,
        total_amount: Decimal,
        payment_events: Iterable[Any],
        *,
        allow_overpayment: bool = False,
    ):
        self.total_amount = Decimal(total_amount)
        self.paid = total_paid(payment_events)
        self.allow_overpayment = allow_overpayment

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.paid

    @staticmethod
    def _normalize(amount: Decimal | str | int | float) -> Decimal:
        value = Decimal(str(amount))
        if value <= ZERO:
            raise ValidationError(
                "Amount must be greater than zero",
                field_errors=[{"field": "amount", "message": "Amount must be greater than zero"}],
            )
        if value != value.quantize(CENT):
            raise ValidationError(
                "Amount cannot have more than two decimal places",
                field_errors=[{"field": "amount", "message": "At most two decimal places"}],
            )
        return value

    def validate_payment(self, amount) -> Decimal:
        """Return the signed event amount for a payment."""
        value = self._normalize(amount)
        if value > self.balance and not self.allow_overpayment:
            raise OverpaymentError(
                f"Payment of {value} exceeds outstanding balance of {self.balance}"
            )
        return value

    def validate_refund(self, amount) -> Decimal:
        """Return the signed (negative) event amount for a refund."""
        value = self._normalize(amount)
        if value > self.paid:
            raise OverpaymentError(
                f"Refund of {value} exceeds the {self.paid} paid so far"
            )
        return -value


def due_date(payment_terms: str, order_date: date) -> date | None:
    if payment_terms == PaymentTerms.IMMEDIATE.value:
        return order_date
    if payment_terms == PaymentTerms.NET_30.value:
        return order_date + timedelta(days=NET_30_DAYS)
    return None


def _month_index(d: date) -> int:
    return d.year * 12 + d.month


def payment_label(
    payment_status: str,
    payment_terms: str,
    order_date: date,
    last_paid_at: date | None,
    today: date,
) -> str:
    """Presentational label for list screens. Derived at read time, never stored."""
    if payment_status == PaymentStatus.PAID.value:
        if last_paid_at is not None and _month_index(last_paid_at) == _month_index(today):
            return "Paid this month"
        return "Paid"

    due = due_date(payment_terms, order_date)
    if due is None:
        return "Per custom terms"
    if due < today:
        return "Overdue"
    months_ahead = _month_index(due) - _month_index(today)
    if months_ahead == 0:
        return "Due this month"
    if months_ahead == 1:
        return "To be paid next month"
    return "Due later"
