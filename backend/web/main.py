"""
docshare web application: FastAPI app, middleware and router wiring.

Startup:
    - Loads `.env` outside pytest.
    - Runs the production configuration guard.
    - Wires Supabase adapters in the lifespan hook; until then (and in tests)
      routes use the in-memory platform from `storage_wiring`.
"""
from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.web import config as _cfg
from backend.web.auth_utils import extract_access_token
from backend.web.routes.auth import auth_router
from backend.web.routes.documents import documents_router
from backend.web.routes.users import users_router
from backend.web.storage_wiring import get_platform, wire_supabase_platform_if_configured


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via DOCSHARE_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("DOCSHARE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("docshare.web")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if not await wire_supabase_platform_if_configured():
        logger.warning("Supabase not configured: using in-memory catalog and storage")
    yield


app = FastAPI(title="docshare", description="CS department document sharing", version="0.1.0", lifespan=lifespan)

app.include_router(auth_router)
app.include_router(documents_router)
app.include_router(users_router)


# --- Auth & Security Middleware -------------------------------------------------

@app.middleware("http")
async def resolve_session(request: Request, call_next):
    """Resolve the access token once per request into `request.state.session`.

    Routes decide whether a missing session is an error; nothing here reads
    or writes a global "current user".
    """
    request.state.session = None
    token = extract_access_token(request.headers, request.cookies)
    if token:
        request.state.session = await get_platform().sessions.acquire(token)
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # HSTS: always on (dev = prod)
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    return JSONResponse(
        {"status": "healthy", "platform": get_platform().backend},
        headers={"Cache-Control": "private, no-store"},
    )
