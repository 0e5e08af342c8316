"""Countdown presentation values derived from an EligibilitySnapshot."""

from __future__ import annotations

from dataclasses import dataclass

from .models import EligibilitySnapshot, EligibilityState
from .policy import HOUR_MS

WARNING_THRESHOLD_HOURS = 6

TIME_PREFIX = "Time remaining: "
TIME_FINAL = "Time remaining: Finished"
DOWNLOADS_PREFIX = "Downloads available: "
DOWNLOADS_NONE = "Downloads available: None"


@dataclass(frozen=True)
class CountdownDisplay:
    time_text: str
    time_level: str
    downloads_text: str
    downloads_level: str
    button_state: str
    visible: bool

    def to_dict(self) -> dict:
        return {
            "time_text": self.time_text,
            "time_level": self.time_level,
            "downloads_text": self.downloads_text,
            "downloads_level": self.downloads_level,
            "button_state": self.button_state,
            "visible": self.visible,
        }


def format_remaining(remaining_time_ms: int) -> str:
    """Render milliseconds as "{h}h {mm}m {ss}s"."""
    remaining = max(0, int(remaining_time_ms))
    hours, rest = divmod(remaining, HOUR_MS)
    minutes, rest = divmod(rest, 60 * 1000)
    seconds = rest // 1000
    return f"{hours}h {minutes:02d}m {seconds:02d}s"


def describe(snapshot: EligibilitySnapshot) -> CountdownDisplay:
    if snapshot.state is EligibilityState.NO_ENTITLEMENT:
        return CountdownDisplay(
            time_text="",
            time_level="",
            downloads_text="",
            downloads_level="",
            button_state="purchase",
            visible=False,
        )

    if snapshot.state.is_terminal:
        return CountdownDisplay(
            time_text=TIME_FINAL,
            time_level="error",
            downloads_text=DOWNLOADS_NONE,
            downloads_level="error",
            button_state="acquired",
            visible=False,
        )

    hours = snapshot.remaining_time_ms // HOUR_MS
    return CountdownDisplay(
        time_text=f"{TIME_PREFIX}{format_remaining(snapshot.remaining_time_ms)}",
        time_level="warning" if hours < WARNING_THRESHOLD_HOURS else "success",
        downloads_text=f"{DOWNLOADS_PREFIX}{snapshot.remaining_downloads}",
        downloads_level="error" if snapshot.remaining_downloads == 0 else "success",
        button_state="active",
        visible=True,
    )
