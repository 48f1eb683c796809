"""
Shared helper for wiring the platform adapters (catalog, storage, identity).

Why:
    App startup may occur before Supabase is reachable locally. Routes obtain
    the adapters through `get_platform()`, which falls back to in-memory
    stand-ins until `wire_supabase_platform_if_configured()` succeeds. Tests
    call `set_platform` to inject fakes.

Security:
    Requires SUPABASE_SERVICE_ROLE_KEY and SUPABASE_URL for the server-side
    client; account flows additionally use SUPABASE_ANON_KEY. The service key
    is never exposed to clients.
"""
from __future__ import annotations

import logging
import os
from functools import partial
from dataclasses import dataclass
from typing import Any, Optional

import anyio

from backend.documents.catalog_supabase import SupabaseCatalog
from backend.documents.ports import CatalogProtocol
from backend.documents.repo_memory import InMemoryCatalog, InMemoryObjectStorage
from backend.documents.validation import ALLOWED_MIME_TYPES
from backend.identity_access.accounts import AccountService
from backend.identity_access.session import SessionProvider
from backend.storage.bootstrap import ensure_buckets_from_env
from backend.storage.ports import ObjectStorageProtocol
from backend.storage.storage_supabase import SupabaseStorageAdapter

logger = logging.getLogger("docshare.web")


@dataclass
class Platform:
    catalog: CatalogProtocol
    storage: ObjectStorageProtocol
    sessions: SessionProvider
    accounts: Optional[AccountService] = None
    backend: str = "memory"


class _NoIdentityClient:
    """Identity stand-in for the in-memory platform: every token is rejected."""

    class _Auth:
        async def get_user(self, jwt: str) -> Any:
            raise RuntimeError("identity_service_not_configured")

    auth = _Auth()


_PLATFORM: Optional[Platform] = None


def build_memory_platform() -> Platform:
    catalog = InMemoryCatalog()
    return Platform(
        catalog=catalog,
        storage=InMemoryObjectStorage(),
        sessions=SessionProvider(_NoIdentityClient(), catalog),
    )


def get_platform() -> Platform:
    global _PLATFORM
    if _PLATFORM is None:
        _PLATFORM = build_memory_platform()
    return _PLATFORM


def set_platform(platform: Optional[Platform]) -> None:
    """Allow tests to provide fakes; None resets to the lazy in-memory default."""
    global _PLATFORM
    _PLATFORM = platform


async def wire_supabase_platform_if_configured() -> bool:
    """Attempt to wire Supabase-backed adapters.

    Behavior:
        - Returns True when wiring succeeds (platform replaced).
        - Returns False when not configured or any error occurs (keeps current).
        - Safe and idempotent to call multiple times.
    """
    url = (os.getenv("SUPABASE_URL") or "").strip()
    key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
    anon = (os.getenv("SUPABASE_ANON_KEY") or "").strip()
    if not url or not key:
        return False
    try:
        # Lazy import keeps the SDK out of test paths that never wire it.
        from supabase import acreate_client

        client = await acreate_client(url, key)
    except Exception as exc:
        logger.warning("Supabase client unavailable: %s: %s", exc.__class__.__name__, str(exc))
        return False

    catalog = SupabaseCatalog(client)
    sessions = SessionProvider(client, catalog)
    accounts = None
    if anon:

        async def _anon_client() -> Any:
            return await acreate_client(url, anon)

        accounts = AccountService(
            client_factory=_anon_client,
            sessions=sessions,
            catalog=catalog,
            supabase_url=url,
            anon_key=anon,
        )
    else:
        logger.warning("SUPABASE_ANON_KEY unset: account endpoints disabled")
    set_platform(
        Platform(
            catalog=catalog,
            storage=SupabaseStorageAdapter(client),
            sessions=sessions,
            accounts=accounts,
            backend="supabase",
        )
    )
    logger.info("Platform adapters wired: Supabase")

    # Dev convenience: ensure the documents bucket exists when requested by env.
    # Files typed only by extension are stored as application/octet-stream.
    bucket_mime_types = ALLOWED_MIME_TYPES | {"application/octet-stream"}
    try:
        await anyio.to_thread.run_sync(partial(ensure_buckets_from_env, bucket_mime_types))
    except Exception as exc:
        logger.warning("Bucket bootstrap failed: %s", exc.__class__.__name__)
    return True


__all__ = [
    "Platform",
    "build_memory_platform",
    "get_platform",
    "set_platform",
    "wire_supabase_platform_if_configured",
]
