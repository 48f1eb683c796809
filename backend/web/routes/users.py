"""
Users API routes: the signed-in user's own profile.

Why:
    The upload and catalog pages show the uploader's name, role and level;
    students can edit their name and level. Role changes are not possible
    through this API.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from backend.documents.services.catalog import CatalogService
from backend.web.storage_wiring import get_platform

from .documents import _service_error, _session, _unauthenticated
from .security import _json_private, csrf_rejected

users_router = APIRouter(tags=["Users"])  # explicit paths below
logger = logging.getLogger("docshare.web.users")


class ProfileUpdatePayload(BaseModel):
    # Accept raw strings (including empty) and validate in the service to return 400
    name: str = ""
    level: Optional[str] = None


@users_router.get("/api/me")
async def get_me(request: Request):
    """Return the session user plus the stored profile when available."""
    session = _session(request)
    if session is None:
        return _unauthenticated()
    payload = {
        "id": session.user_id,
        "email": session.email,
        "name": session.name,
        "role": session.role,
        "level": session.level,
    }
    platform = get_platform()
    try:
        profile = await CatalogService(platform.catalog, platform.storage).get_profile(session.user_id)
        payload.update(profile.to_dict())
    except LookupError:
        pass
    except Exception as exc:
        logger.warning("profile lookup failed for /api/me: %s", type(exc).__name__)
    return _json_private(payload)


@users_router.patch("/api/me/profile")
async def update_my_profile(request: Request, payload: ProfileUpdatePayload):
    rejected = csrf_rejected(request)
    if rejected is not None:
        return rejected
    session = _session(request)
    if session is None:
        return _unauthenticated()
    platform = get_platform()
    try:
        profile = await CatalogService(platform.catalog, platform.storage).update_profile(
            session, name=payload.name, level=payload.level
        )
    except Exception as exc:
        return _service_error(exc)
    return _json_private(profile.to_dict())
