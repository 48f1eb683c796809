"""
Error taxonomy for the document upload pipeline.

Design:
    Every failure after `Idle` is an `UploadError` carrying the stage at which
    it happened and a short reason code. The pipeline turns these into a
    terminal `Failed(stage, reason)` result; adapters raise them so the
    pipeline never has to inspect SDK-specific exception types.

    - ValidationError: bad size/type or missing required field; never reaches
      the network.
    - DuplicateError: fingerprint already present in the catalog.
    - NetworkError: transient transport failure; retried where a stage allows.
    - StorageQuotaOrPermissionError: platform refused the object; no retry.
    - MetadataInsertError: catalog insert failed; triggers compensation.
    - CatalogError: a catalog query failed for a non-transient reason.
    - UploadCancelled: the user cancelled the active attempt.
"""
from __future__ import annotations

from typing import Any, Optional


class UploadError(Exception):
    """Base class for pipeline failures.

    Parameters:
        reason: machine-readable code (also `str(exc)`).
        stage: pipeline stage value; filled in by the pipeline when the
            raising component does not know it.
        message: optional human-readable text for the UI.
    """

    default_reason = "upload_failed"

    def __init__(self, reason: Optional[str] = None, *, stage: Optional[str] = None, message: Optional[str] = None):
        self.reason = reason or self.default_reason
        self.stage = stage
        self.message = message or self.reason
        super().__init__(self.reason)


class ValidationError(UploadError):
    default_reason = "invalid_input"


class DuplicateError(UploadError):
    default_reason = "duplicate_document"

    def __init__(self, reason: Optional[str] = None, *, existing: Any = None, **kwargs: Any):
        super().__init__(reason, **kwargs)
        self.existing = existing


class NetworkError(UploadError):
    """Recoverable transport error; callers may retry with backoff."""

    default_reason = "network_error"


class StorageQuotaOrPermissionError(UploadError):
    default_reason = "storage_refused"

    def __init__(self, reason: Optional[str] = None, *, status: Optional[int] = None, **kwargs: Any):
        super().__init__(reason, **kwargs)
        self.status = status


class MetadataInsertError(UploadError):
    default_reason = "metadata_insert_failed"


class CatalogError(UploadError):
    default_reason = "catalog_query_failed"


class UploadCancelled(UploadError):
    default_reason = "cancelled"


__all__ = [
    "UploadError",
    "ValidationError",
    "DuplicateError",
    "NetworkError",
    "StorageQuotaOrPermissionError",
    "MetadataInsertError",
    "CatalogError",
    "UploadCancelled",
]
