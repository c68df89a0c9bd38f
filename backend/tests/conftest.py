"""Shared fixtures: a throwaway SQLite database per test and an API client wired to it."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INVENTORY_SYNC_URL", "")

from datetime import date
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from purchasing.db.base import Base
import purchasing.models  # noqa: F401
from purchasing.services.purchase_order_service import PurchaseOrderService


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'purchasing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def supplier_id():
    return uuid4()


@pytest.fixture
async def order(db, supplier_id):
    """Open order: item A (10 @ $10) and item B (5 @ $10), total $150, committed at version 0."""
    po = await PurchaseOrderService.create_po(
        db,
        supplier_id=supplier_id,
        supplier_name="Acme Hardware",
        order_date=date(2026, 3, 2),
        payment_terms="Net 30",
        items=[
            {"product_id": uuid4(), "product_name": "Hinge", "quantity": Decimal("10"), "unit_price": Decimal("10")},
            {"product_id": uuid4(), "product_name": "Bracket", "quantity": Decimal("5"), "unit_price": Decimal("10")},
        ],
    )
    await db.commit()
    return po


@pytest.fixture
def dispatched(monkeypatch):
    """Capture InventorySync dispatches instead of enqueueing Celery tasks."""
    from purchasing.services.inventory_sync_service import InventorySyncService

    calls: list = []
    monkeypatch.setattr(InventorySyncService, "dispatch", staticmethod(lambda ids: calls.extend(ids)))
    return calls


@pytest.fixture
async def api(session_maker, dispatched):
    from purchasing.db.session import get_db
    from purchasing.main import app
    from purchasing.services.directory_service import StaticDirectory, get_directory

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_directory] = StaticDirectory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
