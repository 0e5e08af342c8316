"""
Download eligibility and cooldown rules.

Every function here is pure: given a record (or timestamp) and the current
time it returns a classified result and never raises, so the per-second
countdown tick can call it without guarding.

Evaluation order: no record -> expired window -> download limit -> active.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from .config import DEFAULT_COOLDOWN_SECONDS, DEFAULT_MAX_DOWNLOADS, DEFAULT_WINDOW_HOURS, EngineSettings
from .models import CooldownStatus, EligibilitySnapshot, EligibilityState, EntitlementRecord

HOUR_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class DownloadPolicy:
    window_ms: int = DEFAULT_WINDOW_HOURS * HOUR_MS
    max_downloads: int = DEFAULT_MAX_DOWNLOADS
    cooldown_ms: int = DEFAULT_COOLDOWN_SECONDS * 1000

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "DownloadPolicy":
        return cls(
            window_ms=settings.window_hours * HOUR_MS,
            max_downloads=settings.max_downloads,
            cooldown_ms=settings.cooldown_seconds * 1000,
        )


DEFAULT_POLICY = DownloadPolicy()


def evaluate(
    record: Optional[EntitlementRecord],
    now: int,
    policy: DownloadPolicy = DEFAULT_POLICY,
) -> EligibilitySnapshot:
    if record is None:
        return EligibilitySnapshot(
            state=EligibilityState.NO_ENTITLEMENT,
            remaining_time_ms=0,
            remaining_downloads=0,
            evaluated_at=now,
        )

    elapsed = now - record.purchase_timestamp
    remaining_time = max(0, policy.window_ms - elapsed)
    remaining_downloads = max(0, policy.max_downloads - record.download_count)

    if elapsed > policy.window_ms:
        state = EligibilityState.EXPIRED
    elif record.download_count >= policy.max_downloads:
        state = EligibilityState.LIMIT_REACHED
    else:
        state = EligibilityState.ACTIVE

    if state.is_terminal:
        # terminal states present nothing left, whichever limit was hit
        remaining_time = 0
        remaining_downloads = 0

    return EligibilitySnapshot(
        state=state,
        remaining_time_ms=remaining_time,
        remaining_downloads=remaining_downloads,
        product_key=record.product_key,
        evaluated_at=now,
    )


def check_cooldown(
    last_download_timestamp: Optional[int],
    now: int,
    policy: DownloadPolicy = DEFAULT_POLICY,
) -> CooldownStatus:
    """UX throttle between consecutive downloads; not a security boundary."""
    if last_download_timestamp is None:
        return CooldownStatus(allowed=True, seconds_left=0)

    elapsed = now - last_download_timestamp
    if elapsed >= policy.cooldown_ms:
        return CooldownStatus(allowed=True, seconds_left=0)

    return CooldownStatus(
        allowed=False,
        seconds_left=int(math.ceil((policy.cooldown_ms - elapsed) / 1000)),
    )


def reconcile_download_count(
    local_count: int,
    server_remaining_downloads: int,
    policy: DownloadPolicy = DEFAULT_POLICY,
) -> int:
    """
    Count after a successful grant.

    The server-reported remaining count is authoritative; max() keeps the
    local count monotonic when an earlier local write was lost.
    """
    server_remaining = min(max(int(server_remaining_downloads), 0), policy.max_downloads)
    used_per_server = policy.max_downloads - server_remaining
    return min(policy.max_downloads, max(local_count + 1, used_per_server))


def merge_alias_records(records: Iterable[Optional[EntitlementRecord]], canonical_key: str) -> Optional[EntitlementRecord]:
    """
    Fold records stored under different aliases into one view.

    Most restrictive wins: earliest purchase, highest count, latest download.
    """
    found = [r for r in records if r is not None]
    if not found:
        return None
    if len(found) == 1:
        only = found[0]
        if only.product_key == canonical_key:
            return only
        return EntitlementRecord(
            product_key=canonical_key,
            purchase_timestamp=only.purchase_timestamp,
            download_count=only.download_count,
            last_download_timestamp=only.last_download_timestamp,
        )

    last_downloads = [r.last_download_timestamp for r in found if r.last_download_timestamp is not None]
    return EntitlementRecord(
        product_key=canonical_key,
        purchase_timestamp=min(r.purchase_timestamp for r in found),
        download_count=max(r.download_count for r in found),
        last_download_timestamp=max(last_downloads) if last_downloads else None,
    )
