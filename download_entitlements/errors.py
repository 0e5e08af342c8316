"""
Download entitlement error hierarchy.

Provides:
- DownloadEntitlementError: base for all entitlement failures
- ValidationError: malformed or missing product key / record fields
- NoEntitlementError, ExpiredError, LimitReachedError: entitlement states
- CooldownActiveError: download requested inside the cooldown window
- AuthenticationRequiredError: caller not signed in at the authority
- AuthorityUnavailableError: network / timeout / unclassified remote failure
- DownloadInProgressError: a grant request is already pending for the key
- PartialResetError: local reset succeeded but remote deletes failed
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import ResetResult


class DownloadEntitlementError(Exception):
    """Base exception for download entitlement failures."""

    error_code = "DOWNLOAD_ENTITLEMENT_ERROR"

    def __init__(self, message: str, product_key: Optional[str] = None):
        self.message = message
        self.product_key = product_key
        super().__init__(message)

    def to_dict(self) -> dict:
        d: dict = {"error": self.error_code, "message": self.message}
        if self.product_key is not None:
            d["product_key"] = self.product_key
        return d


class ValidationError(DownloadEntitlementError, ValueError):
    """Raised for a malformed/missing product key or an invalid record."""

    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None, product_key: Optional[str] = None):
        self.field = field
        super().__init__(message, product_key=product_key)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.field is not None:
            d["field"] = self.field
        return d


class NoEntitlementError(DownloadEntitlementError):
    error_code = "NO_ENTITLEMENT"


class ExpiredError(DownloadEntitlementError):
    error_code = "DOWNLOAD_WINDOW_EXPIRED"


class LimitReachedError(DownloadEntitlementError):
    error_code = "DOWNLOAD_LIMIT_REACHED"


class CooldownActiveError(DownloadEntitlementError):
    """Raised when a download is requested before the cooldown elapsed."""

    error_code = "DOWNLOAD_COOLDOWN_ACTIVE"

    def __init__(self, product_key: str, seconds_left: int):
        self.seconds_left = seconds_left
        super().__init__(
            f"Wait {seconds_left}s before downloading {product_key} again",
            product_key=product_key,
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["seconds_left"] = self.seconds_left
        return d


class AuthenticationRequiredError(DownloadEntitlementError):
    error_code = "AUTHENTICATION_REQUIRED"


class AuthorityUnavailableError(DownloadEntitlementError):
    """
    Raised when the download authority cannot be reached or answers with
    an unclassified failure. Carries the remote code when one was returned.
    """

    error_code = "AUTHORITY_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        product_key: Optional[str] = None,
        remote_code: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        self.remote_code = remote_code
        self.cause = cause
        super().__init__(message, product_key=product_key)


class DownloadInProgressError(DownloadEntitlementError):
    error_code = "DOWNLOAD_IN_PROGRESS"


class PartialResetError(DownloadEntitlementError):
    """Local reset completed but one or more remote deletes failed."""

    error_code = "PARTIAL_RESET"

    def __init__(self, result: "ResetResult"):
        self.result = result
        failed = ", ".join(sorted(result.remote_failures))
        super().__init__(
            f"Local reset complete for {result.product_key}; remote delete failed for: {failed}",
            product_key=result.product_key,
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["remote_failures"] = dict(self.result.remote_failures)
        return d
