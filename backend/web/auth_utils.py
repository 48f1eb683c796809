"""
Shared authentication utilities for the web layer.

The session cookie carries the platform access token; these helpers keep its
name, flags and extraction in one place for the middleware and auth router.
"""

from __future__ import annotations

from typing import Mapping, Optional

SESSION_COOKIE = "docshare_session"


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags (dev = prod).

    Returns a mapping with keys:
      - httponly: True
      - secure: True
      - samesite: "lax"
    """
    return {"httponly": True, "secure": True, "samesite": "lax"}


def extract_access_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Bearer header wins over the session cookie; returns None when neither is set."""
    auth = (headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    return (cookies.get(SESSION_COOKIE) or "").strip() or None
