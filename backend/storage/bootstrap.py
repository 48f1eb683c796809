"""
Documents bucket provisioning for local and staging platforms.

Intent:
    A fresh Supabase project has no storage buckets. When explicitly enabled,
    startup creates the private documents bucket with the same upload limits
    the application enforces, so the platform rejects oversized or untyped
    objects even if a client bypasses the API.

Security & Safety:
    - Opt-in via `AUTO_CREATE_STORAGE_BUCKETS=true`; never needed in prod.
    - Uses the service role key against the storage admin REST API.
    - The bucket is always created private; downloads go through the API.
    - Network failures are logged and never abort startup.
"""
from __future__ import annotations

import logging
import os
from typing import Iterable, Optional

import requests

from backend.storage.config import get_desktop_max_upload_bytes, get_documents_bucket

_log = logging.getLogger("docshare.storage")

# (connect, read) seconds for the admin API.
HTTP_TIMEOUT = (3, 10)

CREATED = "created"
EXISTS = "exists"
FAILED = "failed"


def _admin_headers(key: str) -> dict:
    return {"apikey": key, "Authorization": f"Bearer {key}"}


def _bucket_url(base_url: str, name: str = "") -> str:
    url = f"{base_url.rstrip('/')}/storage/v1/bucket"
    return f"{url}/{name}" if name else url


def _bucket_exists(base_url: str, key: str, name: str) -> Optional[bool]:
    """True/False when the platform answered, None when it could not be asked."""
    try:
        resp = requests.get(_bucket_url(base_url, name), headers=_admin_headers(key), timeout=HTTP_TIMEOUT)
    except requests.RequestException as exc:
        _log.warning("bucket lookup failed: bucket=%s error=%s", name, type(exc).__name__)
        return None
    if resp.status_code == 200:
        return True
    if resp.status_code in (400, 404):
        # Storage answers 400 "Bucket not found" on some versions.
        return False
    _log.warning("bucket lookup unexpected status: bucket=%s status=%s", name, resp.status_code)
    return None


def ensure_documents_bucket(
    base_url: str,
    key: str,
    *,
    bucket: str,
    file_size_limit: int,
    allowed_mime_types: Optional[Iterable[str]] = None,
) -> str:
    """Create the private documents bucket unless it already exists.

    Returns one of `CREATED`, `EXISTS` or `FAILED`. A 409 on create means a
    concurrent starter won the race and counts as `EXISTS`.
    """
    exists = _bucket_exists(base_url, key, bucket)
    if exists:
        return EXISTS
    if exists is None:
        return FAILED
    payload = {"id": bucket, "name": bucket, "public": False, "file_size_limit": int(file_size_limit)}
    if allowed_mime_types:
        payload["allowed_mime_types"] = sorted(set(allowed_mime_types))
    try:
        resp = requests.post(
            _bucket_url(base_url),
            headers={**_admin_headers(key), "Content-Type": "application/json"},
            json=payload,
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        _log.warning("create bucket failed: bucket=%s error=%s", bucket, type(exc).__name__)
        return FAILED
    if resp.status_code == 409:
        return EXISTS
    if resp.status_code >= 300:
        _log.warning("create bucket failed: bucket=%s status=%s body=%s", bucket, resp.status_code, resp.text[:200])
        return FAILED
    _log.info("created private bucket '%s' (limit=%s bytes)", bucket, payload["file_size_limit"])
    return CREATED


def ensure_buckets_from_env(allowed_mime_types: Optional[Iterable[str]] = None) -> bool:
    """Provision the documents bucket when AUTO_CREATE_STORAGE_BUCKETS=true.

    Env:
        - AUTO_CREATE_STORAGE_BUCKETS=true (opt-in)
        - SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
        - DOCUMENTS_STORAGE_BUCKET, DOCUMENTS_MAX_UPLOAD_BYTES

    Returns False when disabled or unconfigured, else whether the bucket is
    known to exist afterwards.
    """
    if (os.getenv("AUTO_CREATE_STORAGE_BUCKETS", "false") or "").strip().lower() != "true":
        return False
    _log.warning("AUTO_CREATE_STORAGE_BUCKETS=true detected (dev/test convenience only).")
    base = (os.getenv("SUPABASE_URL") or "").strip()
    key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
    if not base or not key:
        return False
    outcome = ensure_documents_bucket(
        base,
        key,
        bucket=get_documents_bucket(),
        file_size_limit=get_desktop_max_upload_bytes(),
        allowed_mime_types=allowed_mime_types,
    )
    return outcome != FAILED


__all__ = ["ensure_buckets_from_env", "ensure_documents_bucket", "CREATED", "EXISTS", "FAILED"]
