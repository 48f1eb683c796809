"""
Device profile resolution: one decision per request drives limits and strategy.
"""
from __future__ import annotations

import pytest

from backend.documents.device import (
    DEVICE_DESKTOP,
    DEVICE_MOBILE,
    STRATEGY_STRONG_WHEN_SMALL,
    STRATEGY_WEAK_ONLY,
    detect_device_class,
    resolve_device_profile,
)

DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        ({"user_agent": DESKTOP_UA}, DEVICE_DESKTOP),
        ({"user_agent": IPHONE_UA}, DEVICE_MOBILE),
        ({"user_agent": DESKTOP_UA, "viewport_width": 768}, DEVICE_MOBILE),
        ({"user_agent": DESKTOP_UA, "viewport_width": 769}, DEVICE_DESKTOP),
        ({"user_agent": DESKTOP_UA, "touch": True}, DEVICE_MOBILE),
        ({"user_agent": DESKTOP_UA, "ch_mobile": "?1"}, DEVICE_MOBILE),
        ({"user_agent": DESKTOP_UA, "ch_mobile": "?0"}, DEVICE_DESKTOP),
    ],
)
def test_detect_device_class(kwargs, expected):
    assert detect_device_class(**kwargs) == expected


def test_desktop_profile_defaults():
    profile = resolve_device_profile({"User-Agent": DESKTOP_UA})
    assert profile.device_class == DEVICE_DESKTOP
    assert profile.max_file_size == 50 * 1024 * 1024
    assert profile.fingerprint_strategy == STRATEGY_STRONG_WHEN_SMALL
    assert profile.is_mobile is False


def test_mobile_profile_from_form_hints():
    profile = resolve_device_profile({"User-Agent": DESKTOP_UA}, {"viewport_width": "390", "touch": "true"})
    assert profile.device_class == DEVICE_MOBILE
    assert profile.max_file_size == 10 * 1024 * 1024
    assert profile.fingerprint_strategy == STRATEGY_WEAK_ONLY


def test_invalid_viewport_hint_is_ignored():
    profile = resolve_device_profile({"user-agent": DESKTOP_UA}, {"viewport_width": "wide"})
    assert profile.device_class == DEVICE_DESKTOP
