"""
Shared web security helpers for the route modules.

Contains the CSRF same-origin check applied to cookie-authenticated writes
and the private JSON response helpers. Keeping a single implementation avoids
security drift between the document, user and auth routers.
"""
from __future__ import annotations

import os
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse

PRIVATE_HEADERS = {"Cache-Control": "private, no-store"}


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    return scheme, p.hostname.lower(), int(p.port if p.port is not None else _default_port(scheme))


def _server_origin(request: Request) -> tuple[str, str, int]:
    trust_proxy = (os.getenv("DOCSHARE_TRUST_PROXY", "false") or "").lower() == "true"
    if trust_proxy:
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").split(",")[0].strip()
        host = (request.headers.get("x-forwarded-host") or request.headers.get("host") or "").split(",")[0].strip()
        if host:
            return _parse_origin(f"{proto}://{host}")
    scheme = (request.url.scheme or "http").lower()
    port = int(request.url.port) if request.url.port else _default_port(scheme)
    return scheme, (request.url.hostname or "").lower(), port


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow to not break non-browser clients.
    Proxy awareness: Only trust X-Forwarded-* when DOCSHARE_TRUST_PROXY=true.
    """
    try:
        server = _server_origin(request)
        origin_val = request.headers.get("origin") or request.headers.get("referer")
        if origin_val:
            return _parse_origin(origin_val) == server
        return True
    except ValueError:
        return False


def _cookie_authenticated(request: Request) -> bool:
    return not (request.headers.get("authorization") or "").lower().startswith("bearer ")


def csrf_rejected(request: Request) -> Optional[JSONResponse]:
    """Return a 403 response for cross-site writes that rely on the session cookie."""
    if _cookie_authenticated(request) and not _is_same_origin(request):
        return _private_error({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
    return None


def _json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    """Return a JSONResponse with cache disabled for shared caches and browsers."""
    return JSONResponse(payload, status_code=status_code, headers=dict(PRIVATE_HEADERS))


def _private_error(payload: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers=dict(PRIVATE_HEADERS))
