"""Hardline Purchasing — Domain error taxonomy.

Every error here is raised before the surrounding transaction commits, so a
rejected command never leaves partial state behind. None of them is retried
automatically.
"""


class PurchasingError(Exception):
    """Base class for rejected purchase-order commands."""

    code = "purchasing_error"
    status_code = 400

    def __init__(self, message: str, *, field_errors: list[dict] | None = None):
        self.message = message
        self.field_errors = field_errors or []
        super().__init__(message)


class ValidationError(PurchasingError):
    """Malformed command: non-positive quantity/amount, empty items, unknown item."""

    code = "validation_error"
    status_code = 422


class OverReceiptError(PurchasingError):
    """Requested receiving quantity exceeds what remains outstanding."""

    code = "over_receipt"
    status_code = 422


class OverpaymentError(PurchasingError):
    """Payment exceeds the outstanding balance, or refund exceeds what was paid."""

    code = "overpayment"
    status_code = 422


class InvalidTransitionError(PurchasingError):
    """Command not allowed in the order's current lifecycle state."""

    code = "invalid_transition"
    status_code = 409


class ConflictError(PurchasingError):
    """Stored version moved past the version the caller observed."""

    code = "conflict"
    status_code = 409

    def __init__(self, message: str, *, expected_version: int | None = None, current_version: int | None = None):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(message)


class NotFoundError(PurchasingError):
    code = "not_found"
    status_code = 404


ERRORS_BY_CODE: dict[str, type[PurchasingError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        OverReceiptError,
        OverpaymentError,
        InvalidTransitionError,
        ConflictError,
        NotFoundError,
    )
}
