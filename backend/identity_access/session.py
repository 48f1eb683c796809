"""
Explicit session context for request handling.

Why:
    The upload pipeline and catalog services need the signed-in user's id and
    role. Instead of reading an ambient "current user", each request resolves
    its bearer token once into an immutable `SessionContext` and passes it
    down explicitly.

Lifecycle:
    acquired at request start (`SessionProvider.acquire`), invalidated on
    sign-out (`SessionProvider.invalidate`). Invalidated tokens resolve to
    None for `REVOKED_TTL_SECONDS`, the platform's access token lifetime,
    even if the platform would still accept the JWT until it expires.

Security:
    Only a SHA-256 digest of revoked tokens is kept in memory, at most
    `MAX_REVOKED_TOKENS` of them; the oldest are dropped first.
"""
from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from backend.documents.ports import CatalogProtocol
from backend.identity_access.domain import normalize_role
from backend.storage.config import PROFILES_TABLE

logger = logging.getLogger("docshare.identity_access")

# Supabase access tokens expire after an hour by default.
REVOKED_TTL_SECONDS = 3600.0
MAX_REVOKED_TOKENS = 10_000


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    email: str
    role: str
    access_token: str = field(repr=False, default="")
    name: str = ""
    level: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class SessionProvider:
    """Resolve access tokens into SessionContext objects.

    Parameters:
        client: async supabase client (duck-typed: `.auth.get_user(jwt)`).
        catalog: used to read the `profiles` row holding role and name.
        clock: monotonic seconds; injectable for tests.
    """

    def __init__(self, client: Any, catalog: CatalogProtocol, *, clock: Callable[[], float] = time.monotonic):
        self._client = client
        self._catalog = catalog
        self._clock = clock
        # digest -> revoked at, oldest first
        self._revoked: OrderedDict[str, float] = OrderedDict()

    def _prune(self) -> None:
        horizon = self._clock() - REVOKED_TTL_SECONDS
        while self._revoked:
            _, revoked_at = next(iter(self._revoked.items()))
            if revoked_at > horizon and len(self._revoked) <= MAX_REVOKED_TOKENS:
                break
            self._revoked.popitem(last=False)

    def is_revoked(self, access_token: str) -> bool:
        self._prune()
        return _digest(access_token) in self._revoked

    async def acquire(self, access_token: Optional[str]) -> Optional[SessionContext]:
        token = (access_token or "").strip()
        if not token or self.is_revoked(token):
            return None
        try:
            resp = await self._client.auth.get_user(token)
        except Exception as exc:
            logger.info("token rejected by identity service: %s", type(exc).__name__)
            return None
        user = _attr(resp, "user")
        user_id = str(_attr(user, "id") or "")
        if not user_id:
            return None
        metadata = _attr(user, "user_metadata") or {}
        profile: dict = {}
        try:
            rows = await self._catalog.select(PROFILES_TABLE, eq={"id": user_id}, limit=1)
            profile = rows[0] if rows else {}
        except Exception as exc:
            logger.warning("profile lookup failed for session: %s", type(exc).__name__)
        return SessionContext(
            user_id=user_id,
            email=str(profile.get("email") or _attr(user, "email") or ""),
            role=normalize_role(profile.get("role") or metadata.get("role")),
            access_token=token,
            name=str(profile.get("name") or metadata.get("name") or ""),
            level=profile.get("level") or metadata.get("level") or None,
        )

    def invalidate(self, access_token: Optional[str]) -> None:
        token = (access_token or "").strip()
        if not token:
            return
        digest = _digest(token)
        self._revoked.pop(digest, None)
        self._revoked[digest] = self._clock()
        self._prune()


__all__ = ["SessionContext", "SessionProvider", "REVOKED_TTL_SECONDS", "MAX_REVOKED_TOKENS"]
