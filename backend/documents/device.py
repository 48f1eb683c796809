"""
Device class detection and the resulting upload capabilities.

Why:
    Mobile browsers have less memory and CPU headroom; they get a smaller
    upload ceiling and never run a full content hash. The class is resolved
    once per request from the signals the browser sends and handed to the
    pipeline as a `DeviceProfile`, so no stage sniffs the user agent itself.

Signals (any one marks a device as mobile):
    - User-Agent matching common mobile platforms
    - `Sec-CH-UA-Mobile: ?1` client hint
    - viewport width <= 768 px (`Viewport-Width` hint or form field)
    - touch capability reported by the page
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from backend.storage.config import (
    get_desktop_max_upload_bytes,
    get_mobile_max_upload_bytes,
)

MOBILE_UA_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)
MOBILE_VIEWPORT_MAX_PX = 768

DEVICE_MOBILE = "mobile"
DEVICE_DESKTOP = "desktop"

# Fingerprint strategies
STRATEGY_STRONG_WHEN_SMALL = "strong_when_small"
STRATEGY_WEAK_ONLY = "weak_only"


@dataclass(frozen=True)
class DeviceProfile:
    device_class: str
    max_file_size: int
    fingerprint_strategy: str

    @property
    def is_mobile(self) -> bool:
        return self.device_class == DEVICE_MOBILE


def _parse_int(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _truthy(value: object) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on", "?1"}


def detect_device_class(
    *,
    user_agent: str | None = None,
    viewport_width: int | None = None,
    touch: bool = False,
    ch_mobile: str | None = None,
) -> str:
    """Return "mobile" or "desktop" from the given browser signals."""
    if user_agent and MOBILE_UA_RE.search(user_agent):
        return DEVICE_MOBILE
    if ch_mobile is not None and ch_mobile.strip() == "?1":
        return DEVICE_MOBILE
    if viewport_width is not None and 0 < viewport_width <= MOBILE_VIEWPORT_MAX_PX:
        return DEVICE_MOBILE
    if touch:
        return DEVICE_MOBILE
    return DEVICE_DESKTOP


def profile_for(device_class: str) -> DeviceProfile:
    if device_class == DEVICE_MOBILE:
        return DeviceProfile(DEVICE_MOBILE, get_mobile_max_upload_bytes(), STRATEGY_WEAK_ONLY)
    return DeviceProfile(DEVICE_DESKTOP, get_desktop_max_upload_bytes(), STRATEGY_STRONG_WHEN_SMALL)


def resolve_device_profile(headers: Mapping[str, str], hints: Mapping[str, object] | None = None) -> DeviceProfile:
    """Build a DeviceProfile from request headers plus optional page hints.

    `hints` carries what only the page knows (viewport width, touch support);
    the web layer forwards them from the upload form.
    """
    hints = hints or {}
    lowered = {str(k).lower(): v for k, v in dict(headers or {}).items()}
    viewport = _parse_int(hints.get("viewport_width"))
    if viewport is None:
        viewport = _parse_int(lowered.get("viewport-width"))
    device_class = detect_device_class(
        user_agent=lowered.get("user-agent"),
        viewport_width=viewport,
        touch=_truthy(hints.get("touch")),
        ch_mobile=lowered.get("sec-ch-ua-mobile"),
    )
    return profile_for(device_class)


__all__ = [
    "DEVICE_MOBILE",
    "DEVICE_DESKTOP",
    "STRATEGY_STRONG_WHEN_SMALL",
    "STRATEGY_WEAK_ONLY",
    "DeviceProfile",
    "detect_device_class",
    "profile_for",
    "resolve_device_profile",
]
