"""Hardline Purchasing — AuditService for commands that do not produce ledger events."""
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from purchasing.models.audit import AuditLog

logger = logging.getLogger(__name__)

# ── Audit action constants ────────────────────────────────────────────────────
ACTION_PO_CREATED = "purchase_order.created"
ACTION_PO_AMENDED = "purchase_order.amended"
ACTION_PO_CLOSED = "purchase_order.closed"
ACTION_PO_CANCELLED = "purchase_order.cancelled"
ACTION_PO_REBUILT = "purchase_order.rebuilt"

TARGET_PURCHASE_ORDER = "purchase_order"


def log_audit(
    db: AsyncSession,
    actor: str | None,
    action: str,
    target_type: str | None = None,
    target_id: UUID | None = None,
    payload: dict | None = None,
) -> AuditLog:
    """Stage an audit entry. It is committed atomically with the surrounding command."""
    entry = AuditLog(
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload=payload,
    )
    db.add(entry)
    logger.debug("Audit %s on %s %s", action, target_type, target_id)
    return entry


async def list_audit(db: AsyncSession, target_id: UUID) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog).where(AuditLog.target_id == target_id).order_by(AuditLog.created_at, AuditLog.id)
    )
    return list(result.scalars().all())
