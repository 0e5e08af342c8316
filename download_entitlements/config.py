"""
Download entitlement engine settings.

Window, limit and cooldown defaults match the storefront purchase model:
48 hours to download, at most 3 downloads, 30 seconds between downloads.
External endpoints (Redis, download authority, purchases API) are optional;
when unset the engine runs with an in-memory store and skips the remote step.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 48
DEFAULT_MAX_DOWNLOADS = 3
DEFAULT_COOLDOWN_SECONDS = 30
DEFAULT_RESET_CHANNEL = "admin-reset"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer setting, using default", extra={"setting": name, "default": default})
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid float setting, using default", extra={"setting": name, "default": default})
        return default
    return value if value > 0 else default


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    return raw.strip() if raw and raw.strip() else None


@dataclass(frozen=True)
class EngineSettings:
    """Engine configuration from environment."""

    window_hours: int = DEFAULT_WINDOW_HOURS
    max_downloads: int = DEFAULT_MAX_DOWNLOADS
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    tick_interval_seconds: float = 1.0
    target_discovery_attempts: int = 10
    target_discovery_delay_seconds: float = 0.5
    reset_channel: str = DEFAULT_RESET_CHANNEL
    reset_marker_ttl_seconds: int = 300
    reset_poll_seconds: float = 0.25
    redis_url: Optional[str] = None
    authority_url: Optional[str] = None
    purchases_api_url: Optional[str] = None
    authority_timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Load settings from environment variables."""
        settings = cls(
            window_hours=_env_int("DOWNLOAD_WINDOW_HOURS", DEFAULT_WINDOW_HOURS),
            max_downloads=_env_int("MAX_DOWNLOADS", DEFAULT_MAX_DOWNLOADS),
            cooldown_seconds=_env_int("DOWNLOAD_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_SECONDS),
            tick_interval_seconds=_env_float("COUNTDOWN_TICK_SECONDS", 1.0),
            target_discovery_attempts=_env_int("TARGET_DISCOVERY_ATTEMPTS", 10),
            target_discovery_delay_seconds=_env_float("TARGET_DISCOVERY_DELAY_SECONDS", 0.5),
            reset_channel=_env_str("RESET_CHANNEL") or DEFAULT_RESET_CHANNEL,
            reset_marker_ttl_seconds=_env_int("RESET_MARKER_TTL_SECONDS", 300),
            reset_poll_seconds=_env_float("RESET_POLL_SECONDS", 0.25),
            redis_url=_env_str("REDIS_URL"),
            authority_url=_env_str("DOWNLOAD_AUTHORITY_URL"),
            purchases_api_url=_env_str("PURCHASES_API_URL"),
            authority_timeout_seconds=_env_float("AUTHORITY_TIMEOUT_SECONDS", 15.0),
        )

        if not settings.authority_url:
            logger.warning("Download authority not configured; grant requests will fail as unavailable")
        if not settings.purchases_api_url:
            logger.info("Purchases API not configured; admin resets will skip remote deletes")

        return settings
