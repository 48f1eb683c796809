"""
Supabase-backed object storage adapter for uploaded documents.

This adapter implements ObjectStorageProtocol using a provided async Supabase
client. It is intentionally duck-typed to avoid a hard dependency during
testing. The client is expected to expose `.storage.from_(bucket)` which
returns an object offering awaitable:

- upload(path, file, file_options) -> Any
- remove([path]) -> Any
- download(path) -> bytes

Security:
- Buckets are private; downloads go through the API, never public URLs.
- The caller decides which key the client carries (anon vs. service role).
"""
from __future__ import annotations

import logging
import re
from typing import Any, List, Optional

import httpx

from backend.documents.errors import NetworkError, StorageQuotaOrPermissionError
from backend.storage.keys import normalize_key

_log = logging.getLogger("docshare.storage")

_REFUSED_STATUSES = {401, 403, 413, 507}
_DUPLICATE_RE = re.compile(r"duplicate|already exists", re.IGNORECASE)


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "statusCode"):
        value = getattr(exc, attr, None)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def translate_storage_error(exc: Exception, *, op: str) -> Exception:
    """Map SDK/transport exceptions onto the upload error taxonomy.

    Unknown errors are returned unchanged so callers can re-raise them.
    """
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return NetworkError(f"{op}_network_error")
    status = _status_of(exc)
    if status in _REFUSED_STATUSES:
        reason = "storage_quota_exceeded" if status in (413, 507) else "storage_permission_denied"
        return StorageQuotaOrPermissionError(reason, status=status)
    if status is not None and (status >= 500 or status == 429):
        return NetworkError(f"{op}_unavailable")
    return exc


class SupabaseStorageAdapter:
    """Storage adapter using an async supabase client for Storage operations."""

    def __init__(self, client: Any):
        # Duck-typed supabase client, e.g., from `await supabase.acreate_client(...)`.
        self._client = client

    # --- Helpers -----------------------------------------------------------------

    def _bucket(self, bucket: str) -> Any:
        """Return a bucket proxy from either supabase client or storage3 client.

        Supports two client shapes:
        - supabase.acreate_client(...): expose `.storage.from_(bucket)`
        - storage3 AsyncStorageClient: expose `.from_(bucket)` directly
        """
        c = self._client
        storage = getattr(c, "storage", None)
        if storage is not None and hasattr(storage, "from_"):
            return storage.from_(bucket)
        if hasattr(c, "from_"):
            return c.from_(bucket)  # type: ignore[attr-defined]
        raise RuntimeError("invalid_supabase_client")

    # --- Protocol methods --------------------------------------------------------

    async def upload(self, *, bucket: str, key: str, body: bytes, content_type: str) -> None:
        """Upload a binary object to Supabase Storage.

        Behavior:
            - Normalizes the key to be relative to the bucket.
            - Never overwrites: keys carry a timestamp, so an existing object
              means a collision the caller should see (FileExistsError).

        Raises:
            NetworkError / StorageQuotaOrPermissionError for classified
            failures; other client exceptions propagate.
        """
        b = self._bucket(bucket)
        norm_key = normalize_key(bucket, key)
        opts = {"content-type": content_type or "application/octet-stream", "x-upsert": "false"}
        try:
            await b.upload(norm_key, body, opts)
        except Exception as exc:
            # Storage answers 409, or 400 carrying statusCode 409, for an existing key.
            if _status_of(exc) == 409 or _DUPLICATE_RE.search(str(exc)):
                raise FileExistsError(norm_key) from exc
            raise translate_storage_error(exc, op="upload") from exc

    async def remove(self, *, bucket: str, keys: List[str]) -> None:
        b = self._bucket(bucket)
        # Supabase Storage remove expects paths relative to the bucket
        norm_keys = [normalize_key(bucket, k) for k in keys if k]
        if not norm_keys:
            return
        try:
            await b.remove(norm_keys)
        except Exception as exc:
            raise translate_storage_error(exc, op="remove") from exc

    async def download(self, *, bucket: str, key: str) -> bytes:
        b = self._bucket(bucket)
        try:
            data = await b.download(normalize_key(bucket, key))
        except Exception as exc:
            raise translate_storage_error(exc, op="download") from exc
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        # Some client variants wrap the payload; accept `.content` or `.data`.
        for attr in ("content", "data"):
            inner = getattr(data, attr, None)
            if isinstance(inner, (bytes, bytearray)):
                return bytes(inner)
        raise RuntimeError("unexpected_download_payload")


__all__ = ["SupabaseStorageAdapter", "translate_storage_error"]
