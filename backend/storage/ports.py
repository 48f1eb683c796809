"""
Storage ports used by the upload pipeline and the catalog services.

Keep these small and framework-agnostic so tests can supply simple fakes.
"""
from __future__ import annotations

from typing import List, Protocol


class ObjectStorageProtocol(Protocol):
    """Minimal interface to write, read and remove objects in a bucket.

    Intent:
        Allow pipeline code to persist uploaded documents without depending on
        a specific cloud SDK.

    Errors:
        Implementations raise `NetworkError` for transient transport failures
        and `StorageQuotaOrPermissionError` when the platform refuses the
        request (401/403/413). `upload` raises `FileExistsError` when the key
        is already taken. Anything else propagates unchanged.
    """

    async def upload(self, *, bucket: str, key: str, body: bytes, content_type: str) -> None: ...

    async def remove(self, *, bucket: str, keys: List[str]) -> None: ...

    async def download(self, *, bucket: str, key: str) -> bytes: ...


class NullObjectStorage:
    """Fallback adapter that signals the storage backend is not configured."""

    async def upload(self, *, bucket: str, key: str, body: bytes, content_type: str) -> None:  # noqa: D401
        raise RuntimeError("storage_adapter_not_configured")

    async def remove(self, *, bucket: str, keys: List[str]) -> None:  # noqa: D401
        raise RuntimeError("storage_adapter_not_configured")

    async def download(self, *, bucket: str, key: str) -> bytes:  # noqa: D401
        raise RuntimeError("storage_adapter_not_configured")


__all__ = ["ObjectStorageProtocol", "NullObjectStorage"]
