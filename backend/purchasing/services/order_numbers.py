"""Hardline Purchasing — Sequential order numbers: PO-<year>-<00001>."""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from purchasing.models.purchase_order import OrderNumberSequence

SEQUENCE_WIDTH = 5


def format_order_number(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:0{SEQUENCE_WIDTH}d}"


async def next_order_number(db: AsyncSession, prefix: str, year: int) -> str:
    """Reserve the next number for (prefix, year). The counter row is locked until commit."""
    result = await db.execute(
        select(OrderNumberSequence)
        .where(OrderNumberSequence.prefix == prefix, OrderNumberSequence.year == year)
        .with_for_update()
    )
    seq = result.scalar_one_or_none()
    if seq is None:
        seq = OrderNumberSequence(prefix=prefix, year=year, last_value=0)
        db.add(seq)
    seq.last_value += 1
    await db.flush()
    return format_order_number(prefix, year, seq.last_value)
