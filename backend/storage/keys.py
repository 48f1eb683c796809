"""
Helpers to generate standardized storage paths for uploaded documents.

Why:
    Keep path shapes consistent and provide simple, testable sanitization that
    avoids path traversal and exotic characters while remaining human-readable.

Conventions:
    - Documents: {uploader}/{epoch_ms}-{sanitized_filename}

Security:
    - Sanitization removes characters outside [A-Za-z0-9._-] from segments.
    - Filename extensions are lowercased and filtered to alphanumeric + dot.
"""
from __future__ import annotations

import os
import re
import unicodedata

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_segment(value: str, *, fallback: str = "x") -> str:
    value = value or ""
    normalized = unicodedata.normalize("NFKD", value)
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    sanitized = _SEGMENT_RE.sub("-", ascii_value).strip("-_.")
    return sanitized or fallback


def _sanitize_ext_from_filename(filename: str | None, default_ext: str = "") -> str:
    if not filename:
        ext = default_ext
    else:
        _, ext = os.path.splitext(os.path.basename(filename))
    ext = (ext or default_ext or "").lower()
    # keep only alnum and dots; collapse invalids
    ext = "".join(ch for ch in ext if ch.isalnum() or ch == ".")
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


def sanitize_filename(filename: str | None) -> str:
    """Return a storage-safe file name that keeps the original stem readable.

    "Week 1: Intro.PDF" -> "Week-1-Intro.pdf"; empty stems become "file".
    """
    base = os.path.basename((filename or "").strip().replace("\\", "/"))
    root, _ = os.path.splitext(base)
    stem = _sanitize_segment(root, fallback="file")[:64]
    return f"{stem}{_sanitize_ext_from_filename(base)}"


def make_document_key(*, uploader_id: str, filename: str, epoch_ms: int) -> str:
    """Build a storage key for an uploaded document.

    Returns: {uploader}/{epoch_ms}-{sanitized_filename}
    """
    uploader = _sanitize_segment(uploader_id, fallback="uploader")
    return f"{uploader}/{int(epoch_ms)}-{sanitize_filename(filename)}"


def normalize_key(bucket: str, key: str) -> str:
    """Make a key relative to its bucket (storage3 prepends the bucket id)."""
    norm_key = (key or "").lstrip("/")
    prefix = f"{bucket}/"
    if norm_key.startswith(prefix):
        norm_key = norm_key[len(prefix):]
    return norm_key


__all__ = ["make_document_key", "sanitize_filename", "normalize_key"]
