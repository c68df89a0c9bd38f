"""Hardline Purchasing — SupplierDirectory / ProductCatalog lookups.

Read-only. Names are copied onto the order at creation time and never
live-joined afterwards.
"""
import logging
from dataclasses import dataclass
from uuid import UUID

import httpx

from purchasing.config import get_settings
from purchasing.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductInfo:
    product_id: UUID
    name: str


class StaticDirectory:
    """No directory configured: callers keep whatever names the request carried."""

    async def supplier_name(self, supplier_id: UUID) -> str | None:
        return None

    async def product(self, product_id: UUID) -> ProductInfo | None:
        return None


class HttpDirectory:
    """Looks suppliers and products up over HTTP.

    Unknown ids reject the command. An unreachable directory is not fatal:
    the order is created with the names supplied by the caller.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _get(self, path: str) -> dict | None:
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(path)
            except httpx.RequestError as exc:
                logger.warning("Directory lookup %s failed: %s", path, exc)
                return None
        if response.status_code == 404:
            raise ValidationError(f"{path} not found in directory")
        if response.is_error:
            logger.warning("Directory lookup %s returned %s", path, response.status_code)
            return None
        return response.json()

    async def supplier_name(self, supplier_id: UUID) -> str | None:
        body = await self._get(f"/suppliers/{supplier_id}")
        return body.get("name") if body else None

    async def product(self, product_id: UUID) -> ProductInfo | None:
        body = await self._get(f"/products/{product_id}")
        if not body:
            return None
        return ProductInfo(
            product_id=product_id,
            name=body.get("name") or str(product_id),
        )


def get_directory() -> StaticDirectory | HttpDirectory:
    """Dependency: directory client for the configured environment."""
    settings = get_settings()
    if settings.DIRECTORY_URL:
        return HttpDirectory(settings.DIRECTORY_URL, timeout=settings.DIRECTORY_TIMEOUT)
    return StaticDirectory()
