from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from download_entitlements.service import DownloadEntitlementService

logger = logging.getLogger(__name__)


@dataclass
class ResetSyncStats:
    started_at: str
    completed_at: Optional[str] = None
    notifications_applied: int = 0
    keys_cleared: int = 0
    errors: int = 0
    skipped: bool = False


def run_reset_sync_cycle(service: Optional[DownloadEntitlementService] = None) -> ResetSyncStats:
    """Background reset convergence job.

    Responsibilities:
    - drain the reset channel and read the last-reset marker once
    - hand every unseen notification to the service's reset listener

    A service whose in-process listener is running (service.start()) already
    consumes the channel; the cycle is skipped for it.
    """

    svc = service or DownloadEntitlementService.from_env()
    stats = ResetSyncStats(started_at=datetime.now(timezone.utc).isoformat())

    if svc.listening:
        logger.debug("Reset listener already running in-process; sync cycle skipped")
        stats.skipped = True
        stats.completed_at = datetime.now(timezone.utc).isoformat()
        return stats

    try:
        delivered = svc.broadcaster.poll()
        stats.notifications_applied = len(delivered)
        stats.keys_cleared = sum(len(n.keys) or 1 for n in delivered)
    except Exception:
        logger.warning("Reset sync cycle failed", exc_info=True)
        stats.errors += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    if stats.notifications_applied:
        logger.info(
            "Reset notifications applied",
            extra={"notifications": stats.notifications_applied, "keys": stats.keys_cleared},
        )
    return stats


async def run_forever(service: Optional[DownloadEntitlementService] = None, interval_seconds: Optional[float] = None) -> None:
    svc = service or DownloadEntitlementService.from_env()
    interval = interval_seconds if interval_seconds is not None else svc.settings.reset_poll_seconds

    try:
        while True:
            run_reset_sync_cycle(svc)
            await asyncio.sleep(interval)
    finally:
        if service is None:
            await svc.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_forever())
