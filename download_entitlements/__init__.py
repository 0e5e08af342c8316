"""
Time-boxed, rate-limited download entitlements.

A purchase opens a 48 hour window with at most 3 downloads, 30 seconds
apart. DownloadEntitlementService tracks the window, publishes a live
countdown and coordinates admin resets across processes.
"""

from .config import EngineSettings
from .errors import (
    AuthenticationRequiredError,
    AuthorityUnavailableError,
    CooldownActiveError,
    DownloadEntitlementError,
    DownloadInProgressError,
    ExpiredError,
    LimitReachedError,
    NoEntitlementError,
    PartialResetError,
    ValidationError,
)
from .models import (
    CooldownStatus,
    DownloadGrant,
    EligibilitySnapshot,
    EligibilityState,
    EntitlementRecord,
    ResetNotification,
    ResetResult,
)
from .policy import DownloadPolicy, check_cooldown, evaluate
from .service import DownloadEntitlementService

__all__ = [
    "AuthenticationRequiredError",
    "AuthorityUnavailableError",
    "CooldownActiveError",
    "CooldownStatus",
    "DownloadEntitlementError",
    "DownloadEntitlementService",
    "DownloadGrant",
    "DownloadInProgressError",
    "DownloadPolicy",
    "EligibilitySnapshot",
    "EligibilityState",
    "EngineSettings",
    "EntitlementRecord",
    "ExpiredError",
    "LimitReachedError",
    "NoEntitlementError",
    "PartialResetError",
    "ResetNotification",
    "ResetResult",
    "ValidationError",
    "check_cooldown",
    "evaluate",
]
