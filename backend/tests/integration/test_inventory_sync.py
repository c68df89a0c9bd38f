import json
from datetime import date
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from purchasing.models import InventorySyncNotification
from purchasing.services.inventory_sync_service import InventorySyncClient, InventorySyncService
from purchasing.services.purchase_order_service import PurchaseOrderService
from purchasing.services.receiving_processor import ReceiptLine


@pytest.fixture
async def notification_ids(db, order):
    a, b = [item.id for item in order.items]
    result = await PurchaseOrderService.receive(
        db, order.id,
        expected_version=0,
        received_date=date(2026, 3, 10),
        received_by="dock-1",
        lines=[ReceiptLine(a, Decimal("4")), ReceiptLine(b, Decimal("5"))],
    )
    await db.commit()
    return result.notification_ids


async def test_deliver_marks_notification_delivered(db, notification_ids):
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(201, json={"ok": True})

    client = InventorySyncClient("http://inventory", transport=httpx.MockTransport(handler))
    notification = await InventorySyncService.deliver(db, notification_ids[0], client)
    await db.commit()

    assert notification.status == "DELIVERED"
    assert notification.attempts == 1
    sent = json.loads(requests[0].content)
    assert requests[0].url.path == "/stock-increases"
    assert requests[0].headers["Idempotency-Key"] == notification.idempotency_key
    assert sent["idempotency_key"] == notification.idempotency_key
    assert Decimal(sent["quantity"]) == Decimal("4")

    # a second delivery of the same row is a no-op
    await InventorySyncService.deliver(db, notification_ids[0], client)
    assert len(requests) == 1


async def test_failed_delivery_is_recorded_and_raised(db, notification_ids):
    client = InventorySyncClient(
        "http://inventory",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await InventorySyncService.deliver(db, notification_ids[0], client)
    await db.commit()

    notification = await db.get(InventorySyncNotification, notification_ids[0])
    assert notification.status == "FAILED"
    assert notification.attempts == 1
    assert "503" in notification.last_error
    assert set(await InventorySyncService.undelivered_ids(db)) == set(notification_ids)


async def test_pending_count_drops_as_rows_are_delivered(db, order, notification_ids):
    client = InventorySyncClient("http://inventory", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    assert await InventorySyncService.pending_count(db, order.id) == 2
    for notification_id in notification_ids:
        await InventorySyncService.deliver(db, notification_id, client)
    await db.commit()
    assert await InventorySyncService.pending_count(db, order.id) == 0
    assert await InventorySyncService.undelivered_ids(db) == []


async def test_dispatch_survives_broker_outage(monkeypatch, caplog):
    from purchasing.tasks import inventory_sync_tasks

    def refuse(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(inventory_sync_tasks.deliver_stock_increase, "delay", refuse)
    InventorySyncService.dispatch(["n-1", "n-2"])
    assert caplog.text.count("sweep will retry") == 2


async def test_dispatch_enqueues_each_notification(monkeypatch):
    from purchasing.tasks import inventory_sync_tasks

    queued = []
    monkeypatch.setattr(inventory_sync_tasks.deliver_stock_increase, "delay", queued.append)
    InventorySyncService.dispatch(["n-1", "n-2"])
    assert queued == ["n-1", "n-2"]


async def test_stage_keys_are_unique_per_event_and_item(db, notification_ids):
    rows = (await db.execute(select(InventorySyncNotification))).scalars().all()
    assert len({row.idempotency_key for row in rows}) == len(rows) == 2


async def test_task_leaves_rows_pending_without_endpoint(caplog):
    from purchasing.tasks.inventory_sync_tasks import _deliver_async

    await _deliver_async("7d0f6a55-0c1b-4a0e-9a55-0b7b3f0e2a11")
    assert "INVENTORY_SYNC_URL not configured" in caplog.text
