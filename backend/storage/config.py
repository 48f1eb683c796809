"""
Centralized storage configuration for the documents bucket and upload limits.

Intent:
    Provide a single source of truth for the bucket name, per-device upload
    ceilings and the knobs of the upload pipeline (fingerprinting, retries).
    Prevents drift between the web layer, the pipeline and the bootstrap.

Behavior:
    - DOCUMENTS_BUCKET_DEFAULT defines the canonical bucket ("documents").
    - Size limits are read from env with lenient parsing and clamped to the
      contract maximum, so a typo never widens the limit.

Permissions:
    Pure configuration; no external calls or privileges required.
"""
from __future__ import annotations

import os


DOCUMENTS_BUCKET_DEFAULT = "documents"
DOCUMENTS_TABLE = "documents"
PROFILES_TABLE = "profiles"


def get_documents_bucket() -> str:
    """Return the configured documents bucket name.

    Env:
        DOCUMENTS_STORAGE_BUCKET – optional override; otherwise defaults to
        DOCUMENTS_BUCKET_DEFAULT.
    """
    return (os.getenv("DOCUMENTS_STORAGE_BUCKET") or DOCUMENTS_BUCKET_DEFAULT).strip()


__all__ = [
    "DOCUMENTS_BUCKET_DEFAULT",
    "DOCUMENTS_TABLE",
    "PROFILES_TABLE",
    "get_documents_bucket",
]

# --- Size limits --------------------------------------------------------------

def _parse_int_env(name: str, default: int, *, contract_max: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    if isinstance(contract_max, int) and contract_max > 0:
        value = min(value, contract_max)
    return value


def _parse_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_desktop_max_upload_bytes() -> int:
    """Maximum upload size for desktop-class devices (default/clamped 50 MiB)."""
    contract_max = 50 * 1024 * 1024
    return _parse_int_env("DOCUMENTS_MAX_UPLOAD_BYTES", contract_max, contract_max=contract_max)


def get_mobile_max_upload_bytes() -> int:
    """Maximum upload size for mobile-class devices (default/clamped 10 MiB)."""
    contract_max = 10 * 1024 * 1024
    return _parse_int_env("DOCUMENTS_MOBILE_MAX_UPLOAD_BYTES", contract_max, contract_max=contract_max)


__all__ += [
    "get_desktop_max_upload_bytes",
    "get_mobile_max_upload_bytes",
]

# --- Pipeline knobs -----------------------------------------------------------

def get_strong_fingerprint_max_bytes() -> int:
    """Largest file that gets a full SHA-256 content hash (default 1 MiB)."""
    return _parse_int_env("FINGERPRINT_STRONG_MAX_BYTES", 1024 * 1024, contract_max=8 * 1024 * 1024)


def get_fingerprint_timeout_seconds() -> float:
    return _parse_float_env("FINGERPRINT_TIMEOUT_SECONDS", 3.0)


def get_weak_fingerprint_includes_clock() -> bool:
    """Whether the lightweight fingerprint is salted with wall-clock time.

    Defaults to true, which makes repeated attempts on the same file produce
    different fingerprints. Set FINGERPRINT_WEAK_INCLUDE_CLOCK=false for the
    deterministic metadata-only variant.
    """
    return (os.getenv("FINGERPRINT_WEAK_INCLUDE_CLOCK", "true") or "").strip().lower() != "false"


def get_upload_max_retries() -> int:
    return _parse_int_env("UPLOAD_MAX_RETRIES", 3, contract_max=5)


def get_upload_backoff_seconds() -> float:
    return _parse_float_env("UPLOAD_BACKOFF_SECONDS", 1.0)


__all__ += [
    "get_strong_fingerprint_max_bytes",
    "get_fingerprint_timeout_seconds",
    "get_weak_fingerprint_includes_clock",
    "get_upload_max_retries",
    "get_upload_backoff_seconds",
]
