"""Hardline Purchasing — Purchase Order schemas."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Commands accept the version they were read at as "expected_version" or "version".
VERSION_ALIASES = AliasChoices("expected_version", "version")


class POItemCreate(BaseModel):
    product_id: UUID
    product_name: str | None = Field(None, max_length=255)
    quantity: Decimal = Field(..., gt=0, decimal_places=4)
    unit_price: Decimal = Field(..., gt=0, decimal_places=4)


class POCreate(BaseModel):
    supplier_id: UUID
    supplier_name: str | None = Field(None, max_length=255)
    order_date: date
    expected_delivery_date: date | None = None
    payment_terms: str = "Net 30"
    custom_payment_terms: str | None = Field(None, max_length=255)
    notes: str | None = None
    items: list[POItemCreate] = Field(..., min_length=1)


class POItemAmend(BaseModel):
    item_id: UUID
    quantity: Decimal | None = Field(None, gt=0, decimal_places=4)
    unit_price: Decimal | None = Field(None, gt=0, decimal_places=4)


class POAmendRequest(BaseModel):
    expected_version: int = Field(..., ge=0, validation_alias=VERSION_ALIASES)
    expected_delivery_date: date | None = None
    payment_terms: str | None = None
    custom_payment_terms: str | None = Field(None, max_length=255)
    notes: str | None = None
    items: list[POItemAmend] | None = None


class POReceiveLine(BaseModel):
    item_id: UUID
    quantity: Decimal = Field(..., gt=0, decimal_places=4)
    actual_unit_price: Decimal | None = Field(None, gt=0, decimal_places=4)


class POReceiveRequest(BaseModel):
    expected_version: int = Field(..., ge=0, validation_alias=VERSION_ALIASES)
    received_date: date
    received_by: str = Field(..., min_length=1, max_length=255)
    notes: str | None = None
    idempotency_key: str | None = Field(None, max_length=255)
    lines: list[POReceiveLine] = Field(..., min_length=1)


class POPaymentRequest(BaseModel):
    """Used for both payments and refunds; amount is always positive."""

    expected_version: int = Field(..., ge=0, validation_alias=VERSION_ALIASES)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    method: str = Field(..., min_length=1, max_length=50)
    paid_at: date | None = None
    notes: str | None = None
    idempotency_key: str | None = Field(None, max_length=255)


class POCloseRequest(BaseModel):
    expected_version: int = Field(..., ge=0, validation_alias=VERSION_ALIASES)
    allow_unpaid: bool = False


class POCancelRequest(BaseModel):
    expected_version: int = Field(..., ge=0, validation_alias=VERSION_ALIASES)
    reason: str | None = None


class POItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    product_name: str | None
    ordered_quantity: Decimal
    received_quantity: Decimal
    remaining_quantity: Decimal
    unit_price: Decimal
    line_total: Decimal


class ReceivingLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID
    quantity_received: Decimal
    actual_unit_price: Decimal | None


class ReceivingEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    received_date: date
    received_by: str
    notes: str | None
    idempotency_key: str | None
    created_at: datetime
    lines: list[ReceivingLineResponse]


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    method: str
    paid_at: date
    notes: str | None
    idempotency_key: str | None
    created_at: datetime


class POSummaryResponse(BaseModel):
    """List row: header fields only."""

    id: UUID
    order_number: str
    supplier_id: UUID
    supplier_name: str | None
    order_date: date
    expected_delivery_date: date | None
    payment_terms: str
    status: str
    receiving_status: str
    payment_status: str
    payment_label: str
    total_amount: Decimal
    version: int


class POResponse(POSummaryResponse):
    """Full snapshot: items, balances and the order's complete history."""

    custom_payment_terms: str | None
    notes: str | None
    cancel_reason: str | None
    items: list[POItemResponse]
    total_paid: Decimal
    balance: Decimal
    pending_inventory_sync: int
    receiving_history: list[ReceivingEventResponse]
    payment_history: list[PaymentEventResponse]
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None
    cancelled_at: datetime | None


class RebuildResponse(BaseModel):
    order: POResponse
    corrected: list[str]


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor: str | None
    action: str
    payload: dict[str, Any] | None
    created_at: datetime


class InventorySyncResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    item_id: UUID
    product_id: UUID
    quantity: Decimal
    idempotency_key: str
    status: str
    attempts: int
    last_error: str | None
    last_attempt_at: datetime | None
    delivered_at: datetime | None
