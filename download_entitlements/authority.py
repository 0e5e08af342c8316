"""
Download authority client.

The authority is the remote service that decides whether a purchase is
valid, counts downloads server-side and signs the download URL. This client
only translates its answers:

- success -> DownloadGrant (downloadUrl, fileName, remainingDownloads, expiresIn)
- failure -> typed error classified from the remote code

PRINCIPLES:
- External authority is source of truth for remaining downloads
- No blind retries; every failure is returned to the caller classified
- Never touches local entitlement state (reconciliation is the service's job)
- Every call is bounded by a timeout; a timeout is a network failure
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Type, Union

import httpx

from .errors import (
    AuthenticationRequiredError,
    AuthorityUnavailableError,
    DownloadEntitlementError,
    ExpiredError,
    LimitReachedError,
    NoEntitlementError,
    ValidationError,
)
from .models import DownloadGrant, normalize_product_key

logger = logging.getLogger(__name__)

GRANT_PATH = "/requestDownloadGrant"

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]

REMOTE_ERROR_MAP: Dict[str, Type[DownloadEntitlementError]] = {
    "unauthenticated": AuthenticationRequiredError,
    "permission-denied": NoEntitlementError,
    "resource-exhausted": LimitReachedError,
    "failed-precondition": ExpiredError,
    "not-found": ValidationError,
}

DEFAULT_MESSAGES: Dict[str, str] = {
    "unauthenticated": "Sign in to download",
    "permission-denied": "No valid purchase found for this product",
    "resource-exhausted": "Download limit reached",
    "failed-precondition": "Download window has expired",
    "not-found": "Unknown product",
}

# HTTP status fallback when the body carries no code
STATUS_CODE_MAP: Dict[int, str] = {
    401: "unauthenticated",
    403: "permission-denied",
    404: "not-found",
    412: "failed-precondition",
    429: "resource-exhausted",
}


def classify_remote_error(code: Optional[str], message: Optional[str], product_key: str) -> DownloadEntitlementError:
    """Map a remote failure code to the engine's error taxonomy."""
    normalized = str(code or "unknown").strip().lower()
    # callable errors are sometimes namespaced: "functions/permission-denied"
    normalized = normalized.rsplit("/", 1)[-1]
    error_cls = REMOTE_ERROR_MAP.get(normalized)
    text = message or DEFAULT_MESSAGES.get(normalized) or "Download authority returned an error"
    if error_cls is None:
        return AuthorityUnavailableError(text, product_key=product_key, remote_code=normalized)
    if error_cls is ValidationError:
        return ValidationError(text, field="product_key", product_key=product_key)
    return error_cls(text, product_key=product_key)


class DownloadAuthorityClient:
    """
    Client for the remote download grant endpoint.

    Handles bearer authentication and response classification.
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        token_provider: Optional[TokenProvider] = None,
        timeout_seconds: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._token_provider = token_provider
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def _auth_headers(self) -> Dict[str, str]:
        if self._token_provider is None:
            return {}
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def request_grant(self, product_key: str, *, timeout: Optional[float] = None) -> DownloadGrant:
        """
        Ask the authority for a signed download.

        Raises:
            ValidationError: blank key or product unknown to the authority
            AuthenticationRequiredError: caller not signed in
            NoEntitlementError: no valid purchase found
            LimitReachedError: limit already exhausted server-side
            ExpiredError: download window closed server-side
            AuthorityUnavailableError: network failure, timeout or unclassified error
        """
        normalized = normalize_product_key(product_key)
        if not self._base_url:
            raise AuthorityUnavailableError("Download authority not configured", product_key=normalized)

        bound = timeout if timeout is not None else self._timeout_seconds
        try:
            return await asyncio.wait_for(self._request(normalized), timeout=bound)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Download grant timed out",
                extra={"product_key": normalized, "timeout_seconds": bound},
            )
            raise AuthorityUnavailableError(
                "Download authority timed out", product_key=normalized, cause=exc
            ) from exc

    async def _request(self, product_key: str) -> DownloadGrant:
        headers = await self._auth_headers()
        try:
            response = await self._client().post(
                f"{self._base_url}{GRANT_PATH}",
                json={"productKey": product_key},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Download authority request failed",
                extra={"product_key": product_key, "error": type(exc).__name__},
            )
            raise AuthorityUnavailableError(
                "Download authority unreachable", product_key=product_key, cause=exc
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if response.is_success and body.get("success"):
            return _parse_grant(product_key, body)

        code = body.get("code") or STATUS_CODE_MAP.get(response.status_code)
        error = classify_remote_error(code, body.get("message"), product_key)
        logger.info(
            "Download grant refused",
            extra={
                "product_key": product_key,
                "http_status": response.status_code,
                "remote_code": code,
                "error_code": error.error_code,
            },
        )
        raise error

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None


def _parse_grant(product_key: str, body: dict) -> DownloadGrant:
    try:
        remaining = int(body["remainingDownloads"])
        download_url = str(body.get("downloadUrl") or "")
        expires_in = int(body.get("expiresIn") or 0)
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthorityUnavailableError(
            "Malformed grant response", product_key=product_key, cause=exc
        ) from exc
    if not download_url:
        raise AuthorityUnavailableError("Grant response missing downloadUrl", product_key=product_key)

    return DownloadGrant(
        product_key=product_key,
        download_url=download_url,
        file_name=str(body.get("fileName") or f"product_{product_key}.zip"),
        remaining_downloads=max(remaining, 0),
        expires_in=expires_in,
    )
