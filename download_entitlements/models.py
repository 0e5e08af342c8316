from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import PartialResetError, ValidationError


def normalize_product_key(product_key: object) -> str:
    """Strip a product key and reject blank/non-string values."""
    if not isinstance(product_key, str):
        raise ValidationError("product_key must be a string", field="product_key")
    normalized = product_key.strip()
    if not normalized:
        raise ValidationError("product_key is required", field="product_key")
    return normalized


def _non_negative_int(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    try:
        coerced = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{field_name} must be an integer", field=field_name) from None
    if coerced < 0:
        raise ValidationError(f"{field_name} must be non-negative", field=field_name)
    return coerced


@dataclass(frozen=True)
class EntitlementRecord:
    """Persisted download entitlement for one canonical product key."""

    product_key: str
    purchase_timestamp: int
    download_count: int = 0
    last_download_timestamp: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "product_key", normalize_product_key(self.product_key))
        object.__setattr__(self, "purchase_timestamp", _non_negative_int(self.purchase_timestamp, "purchase_timestamp"))
        object.__setattr__(self, "download_count", _non_negative_int(self.download_count, "download_count"))
        if self.last_download_timestamp is not None:
            object.__setattr__(
                self,
                "last_download_timestamp",
                _non_negative_int(self.last_download_timestamp, "last_download_timestamp"),
            )

    def with_grant(self, download_count: int, granted_at: int) -> "EntitlementRecord":
        return EntitlementRecord(
            product_key=self.product_key,
            purchase_timestamp=self.purchase_timestamp,
            download_count=download_count,
            last_download_timestamp=granted_at,
        )


class EligibilityState(str, Enum):
    NO_ENTITLEMENT = "NO_ENTITLEMENT"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    LIMIT_REACHED = "LIMIT_REACHED"

    @property
    def is_terminal(self) -> bool:
        return self in (EligibilityState.EXPIRED, EligibilityState.LIMIT_REACHED)


@dataclass(frozen=True)
class EligibilitySnapshot:
    """Derived eligibility for a record at a point in time. Never persisted."""

    state: EligibilityState
    remaining_time_ms: int
    remaining_downloads: int
    product_key: Optional[str] = None
    evaluated_at: Optional[int] = None

    @property
    def can_download(self) -> bool:
        return self.state is EligibilityState.ACTIVE

    def to_dict(self) -> dict:
        return {
            "product_key": self.product_key,
            "state": self.state.value,
            "remaining_time_ms": self.remaining_time_ms,
            "remaining_downloads": self.remaining_downloads,
            "evaluated_at": self.evaluated_at,
        }


@dataclass(frozen=True)
class CooldownStatus:
    allowed: bool
    seconds_left: int = 0


@dataclass(frozen=True)
class DownloadGrant:
    """Signed download issued by the authority."""

    product_key: str
    download_url: str
    file_name: str
    remaining_downloads: int
    expires_in: int


@dataclass(frozen=True)
class ResetNotification:
    """Cross-process reset broadcast: {productKey, keys, ts}."""

    product_key: str
    keys: Tuple[str, ...]
    ts: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "product_key", normalize_product_key(self.product_key))
        object.__setattr__(self, "keys", tuple(self.keys))

    def to_payload(self) -> dict:
        return {"productKey": self.product_key, "keys": list(self.keys), "ts": self.ts}

    @classmethod
    def from_payload(cls, raw: Mapping) -> "ResetNotification":
        if not isinstance(raw, Mapping):
            raise ValidationError("reset payload must be an object")
        keys = raw.get("keys") or []
        if not isinstance(keys, (list, tuple)):
            raise ValidationError("reset payload keys must be a list", field="keys")
        return cls(
            product_key=raw.get("productKey"),
            keys=tuple(str(k) for k in keys if str(k).strip()),
            ts=int(raw.get("ts", 0)),
        )


@dataclass
class ResetResult:
    """
    Outcome of an admin reset.

    local_reset_complete is the safety-relevant part; remote_failures only
    warrants a warning.
    """

    product_key: str
    alias_keys: Tuple[str, ...]
    local_reset_complete: bool = False
    schedulers_stopped: List[str] = field(default_factory=list)
    remote_deleted: List[str] = field(default_factory=list)
    remote_failures: Dict[str, str] = field(default_factory=dict)
    remote_skipped: bool = False
    cache_failures: Dict[str, str] = field(default_factory=dict)
    broadcast_delivered: bool = False
    notification: Optional[ResetNotification] = None

    @property
    def partial(self) -> bool:
        return bool(self.remote_failures)

    def raise_for_partial(self) -> None:
        if self.partial:
            raise PartialResetError(self)

    def to_dict(self) -> dict:
        return {
            "product_key": self.product_key,
            "alias_keys": list(self.alias_keys),
            "local_reset_complete": self.local_reset_complete,
            "schedulers_stopped": list(self.schedulers_stopped),
            "remote_deleted": list(self.remote_deleted),
            "remote_failures": dict(self.remote_failures),
            "remote_skipped": self.remote_skipped,
            "cache_failures": dict(self.cache_failures),
            "broadcast_delivered": self.broadcast_delivered,
            "partial": self.partial,
        }
