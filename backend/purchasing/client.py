"""Hardline Purchasing — async HTTP client for the purchase-order API.

Transport failures (connection refused, timeouts) are retried with backoff.
Every receive/pay/refund carries an idempotency key that is reused on each
retry, so a request that reached the server before the connection dropped
is not applied twice. Error envelopes are raised as the matching
PurchasingError subclass and never retried.
"""
import asyncio
import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from purchasing.core.exceptions import ERRORS_BY_CODE, ConflictError, PurchasingError

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _given(payload: dict) -> dict:
    """Drop optional arguments the caller left at None."""
    return {k: v for k, v in payload.items() if v is not None}


class PurchaseOrderClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        actor: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"X-Actor": actor} if actor else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/api/v1",
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    async def __aenter__(self) -> "PurchaseOrderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, json: dict | None = None, params: dict | None = None) -> Any:
        attempt = 0
        while True:
            try:
                response = await self._client.request(method, path, json=json, params=params)
                break
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    logger.error("%s %s failed after %d attempts: %s", method, path, attempt + 1, exc)
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning("%s %s failed (%s), retrying in %.1fs", method, path, exc, delay)
                await asyncio.sleep(delay)
                attempt += 1

        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise self._to_exception(error, body.get("meta"))
        response.raise_for_status()
        return body.get("data")

    @staticmethod
    def _to_exception(error: dict, meta: dict | None) -> PurchasingError:
        cls = ERRORS_BY_CODE.get(error.get("code"), PurchasingError)
        message = error.get("message", "")
        if cls is ConflictError:
            meta = meta or {}
            return ConflictError(
                message,
                expected_version=meta.get("expected_version"),
                current_version=meta.get("current_version"),
            )
        return cls(message, field_errors=error.get("field_errors") or [])

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, po_id) -> dict:
        return await self._request("GET", f"/purchase-orders/{po_id}")

    async def list_orders(self, **filters) -> list[dict]:
        return await self._request("GET", "/purchase-orders", params=_jsonable(_given(filters)))

    # ── Commands ─────────────────────────────────────────────────────────────

    async def create(
        self,
        *,
        supplier_id,
        order_date: date,
        items: list[dict],
        payment_terms: str = "Net 30",
        **fields,
    ) -> dict:
        """Not idempotent: a retried create after a lost response may create a second order."""
        payload = {
            "supplier_id": supplier_id,
            "order_date": order_date,
            "payment_terms": payment_terms,
            "items": items,
            **fields,
        }
        return await self._request("POST", "/purchase-orders", json=_jsonable(_given(payload)))

    async def receive(
        self,
        po_id,
        *,
        expected_version: int,
        received_date: date,
        received_by: str,
        lines: list[dict],
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        payload = {
            "expected_version": expected_version,
            "received_date": received_date,
            "received_by": received_by,
            "lines": lines,
            "notes": notes,
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
        }
        return await self._request("POST", f"/purchase-orders/{po_id}/receive", json=_jsonable(_given(payload)))

    async def pay(
        self,
        po_id,
        *,
        expected_version: int,
        amount: Decimal,
        method: str,
        paid_at: date | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        payload = {
            "expected_version": expected_version,
            "amount": amount,
            "method": method,
            "paid_at": paid_at,
            "notes": notes,
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
        }
        return await self._request("POST", f"/purchase-orders/{po_id}/payments", json=_jsonable(_given(payload)))

    async def refund(
        self,
        po_id,
        *,
        expected_version: int,
        amount: Decimal,
        method: str,
        paid_at: date | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        payload = {
            "expected_version": expected_version,
            "amount": amount,
            "method": method,
            "paid_at": paid_at,
            "notes": notes,
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
        }
        return await self._request("POST", f"/purchase-orders/{po_id}/refunds", json=_jsonable(_given(payload)))

    async def close(self, po_id, *, expected_version: int, allow_unpaid: bool = False) -> dict:
        payload = {"expected_version": expected_version, "allow_unpaid": allow_unpaid}
        return await self._request("POST", f"/purchase-orders/{po_id}/close", json=payload)

    async def cancel(self, po_id, *, expected_version: int, reason: str | None = None) -> dict:
        payload = {"expected_version": expected_version, "reason": reason}
        return await self._request("POST", f"/purchase-orders/{po_id}/cancel", json=_jsonable(_given(payload)))

    async def amend(self, po_id, *, expected_version: int, **changes) -> dict:
        """Only the fields passed are sent. Passing None clears that field on the order."""
        payload = {"expected_version": expected_version, **changes}
        return await self._request("PATCH", f"/purchase-orders/{po_id}", json=_jsonable(payload))

    async def rebuild(self, po_id) -> dict:
        return await self._request("POST", f"/purchase-orders/{po_id}/rebuild")
