"""
Authoritative purchase store client used by admin resets.

One DELETE per alias key; a missing purchase (404) counts as deleted so
repeated resets stay idempotent.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class RemotePurchaseStore(Protocol):
    async def delete_purchase(self, product_key: str) -> None:
        """Delete the purchase recorded under product_key. Raise on failure."""
        ...


class RemoteDeleteError(Exception):
    """Raised when the purchases API refuses or fails a delete."""

    def __init__(self, product_key: str, detail: str, status_code: Optional[int] = None):
        self.product_key = product_key
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"Remote delete failed for {product_key}: {detail}")


class HttpPurchaseStore:
    """Purchases API client: DELETE {base_url}/purchases/{productKey}."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None

    async def delete_purchase(self, product_key: str) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        url = f"{self._base_url}/purchases/{quote(product_key, safe='')}"
        try:
            response = await self._http_client.delete(url, headers=headers)
        except httpx.HTTPError as exc:
            raise RemoteDeleteError(product_key, type(exc).__name__) from exc

        if response.status_code == 404:
            logger.debug("Remote purchase already absent", extra={"product_key": product_key})
            return
        if response.is_error:
            raise RemoteDeleteError(product_key, f"HTTP {response.status_code}", status_code=response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
