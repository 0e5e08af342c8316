"""
Download entitlement routes. Eligibility is for UX; the download authority
remains the enforcement point for grants. Reset is Admin + Super Admin only.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Type

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from .display import describe
from .errors import (
    AuthenticationRequiredError,
    AuthorityUnavailableError,
    CooldownActiveError,
    DownloadEntitlementError,
    DownloadInProgressError,
    ExpiredError,
    LimitReachedError,
    NoEntitlementError,
    ValidationError,
)
from .service import DownloadEntitlementService

router = APIRouter(tags=["downloads"])

RESET_ROLES = frozenset({"admin", "super_admin"})

ERROR_STATUS: Dict[Type[DownloadEntitlementError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthenticationRequiredError: status.HTTP_401_UNAUTHORIZED,
    NoEntitlementError: status.HTTP_403_FORBIDDEN,
    DownloadInProgressError: status.HTTP_409_CONFLICT,
    LimitReachedError: status.HTTP_409_CONFLICT,
    ExpiredError: status.HTTP_410_GONE,
    CooldownActiveError: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthorityUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class GrantBody(BaseModel):
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Upper bound for the authority call")


def _service(request: Request) -> DownloadEntitlementService:
    service = getattr(request.app.state, "download_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Download service not configured")
    return service


def _get_actor_roles(request: Request) -> List[str]:
    if hasattr(request.state, "roles") and request.state.roles:
        return list(request.state.roles)
    return []


def _http_error(exc: DownloadEntitlementError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_cls in type(exc).__mro__:
        if error_cls in ERROR_STATUS:
            status_code = ERROR_STATUS[error_cls]
            break
    headers = None
    if isinstance(exc, CooldownActiveError):
        headers = {"Retry-After": str(exc.seconds_left)}
    return HTTPException(status_code=status_code, detail=exc.to_dict(), headers=headers)


@router.get("/downloads/{product_key}/eligibility")
def get_eligibility(request: Request, product_key: str) -> dict:
    """Current eligibility, cooldown and countdown text for one product."""
    service = _service(request)
    try:
        snapshot = service.evaluate(product_key)
        cooldown = service.check_cooldown(product_key)
    except DownloadEntitlementError as exc:
        raise _http_error(exc) from exc
    return {
        **snapshot.to_dict(),
        "can_download": snapshot.can_download and cooldown.allowed,
        "cooldown_seconds_left": cooldown.seconds_left,
        "display": describe(snapshot).to_dict(),
    }


@router.post("/downloads/{product_key}/grant")
async def request_grant(request: Request, product_key: str, body: Optional[GrantBody] = None) -> dict:
    """Request a signed download URL. Counts against the download limit."""
    service = _service(request)
    timeout = body.timeout_seconds if body is not None else None
    try:
        grant = await service.request_download(product_key, timeout=timeout)
    except DownloadEntitlementError as exc:
        raise _http_error(exc) from exc
    return {
        "product_key": grant.product_key,
        "download_url": grant.download_url,
        "file_name": grant.file_name,
        "remaining_downloads": grant.remaining_downloads,
        "expires_in": grant.expires_in,
    }


@router.post("/admin/downloads/{product_key}/reset")
async def reset_entitlement(request: Request, product_key: str) -> dict:
    """Reset the download entitlement for a product and all its aliases."""
    roles = _get_actor_roles(request)
    if not RESET_ROLES.intersection(roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    service = _service(request)
    try:
        result = await service.reset(product_key)
    except DownloadEntitlementError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, **result.to_dict()}
