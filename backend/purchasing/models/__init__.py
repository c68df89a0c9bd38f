"""Hardline Purchasing — SQLAlchemy models."""
from purchasing.models.audit import AuditLog
from purchasing.models.events import PaymentEvent, ReceivingEvent, ReceivingEventLine
from purchasing.models.inventory_sync import InventorySyncNotification, SyncStatus
from purchasing.models.purchase_order import (
    OrderNumberSequence,
    OrderStatus,
    PaymentStatus,
    PaymentTerms,
    PurchaseOrder,
    PurchaseOrderItem,
    ReceivingStatus,
)

__all__ = [
    "PurchaseOrder", "PurchaseOrderItem", "OrderNumberSequence",
    "OrderStatus", "ReceivingStatus", "PaymentStatus", "PaymentTerms",
    "ReceivingEvent", "ReceivingEventLine", "PaymentEvent",
    "InventorySyncNotification", "SyncStatus",
    "AuditLog",
]
