"""
Content fingerprints for duplicate detection.

A fingerprint is one of three tagged variants, ordered by how much they can be
trusted:

- StrongFingerprint: SHA-256 over the full byte content. Identical bytes give
  identical fingerprints; this is the only variant duplicate detection treats
  as a reliable signal.
- WeakFingerprint: 32-bit rolling hash over file metadata (name, size,
  modification time, declared type), salted with wall-clock time unless
  FINGERPRINT_WEAK_INCLUDE_CLOCK=false. With the salt, two attempts on the
  same file never match.
- DegradedFingerprint: filename length, size, timestamp and a random suffix.
  Only emitted when building the weak variant itself fails; it keeps uploads
  available but cannot detect duplicates at all.

Strategy (see `Fingerprinter.compute`): mobile devices and files above the
strong-hash ceiling get the weak variant; small files on desktop get a strong
hash under a short timeout and fall back to weak on any failure.
"""
from __future__ import annotations

import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional

import anyio

from backend.documents.device import STRATEGY_WEAK_ONLY, DeviceProfile
from backend.documents.models import CandidateFile
from backend.storage.config import (
    get_fingerprint_timeout_seconds,
    get_strong_fingerprint_max_bytes,
    get_weak_fingerprint_includes_clock,
)

_log = logging.getLogger("docshare.documents.fingerprint")

CHUNK_SIZE = 64 * 1024
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class Fingerprint:
    value: str

    kind: ClassVar[str] = "unknown"
    reliable: ClassVar[bool] = False

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StrongFingerprint(Fingerprint):
    kind: ClassVar[str] = "strong"
    reliable: ClassVar[bool] = True


@dataclass(frozen=True)
class WeakFingerprint(Fingerprint):
    kind: ClassVar[str] = "weak"


@dataclass(frozen=True)
class DegradedFingerprint(Fingerprint):
    kind: ClassVar[str] = "degraded"


def rolling_hash_hex(text: str) -> str:
    """Multiplicative (x31) rolling hash over UTF-16 code units, 32-bit signed.

    Returns the absolute value as lowercase hex, zero-padded to 8 digits.
    """
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x").zfill(8)


def weak_fingerprint(file: CandidateFile, *, now_ms: Optional[int] = None) -> WeakFingerprint:
    parts = [file.name, str(file.size), str(file.last_modified_ms), file.mime_type or ""]
    if now_ms is not None:
        parts.append(str(now_ms))
    return WeakFingerprint(rolling_hash_hex("-".join(parts)))


def degraded_fingerprint(file: CandidateFile, *, now_ms: int) -> DegradedFingerprint:
    raw = f"{len(file.name or '')}-{file.size}-{now_ms}-{secrets.token_hex(4)}"
    return DegradedFingerprint(_NON_ALNUM.sub("", raw))


async def strong_fingerprint(file: CandidateFile, *, chunk_size: int = CHUNK_SIZE) -> StrongFingerprint:
    """SHA-256 over the file content, read in bounded chunks."""
    h = hashlib.sha256()
    async for chunk in file.iter_chunks(chunk_size):
        h.update(chunk)
    return StrongFingerprint(h.hexdigest())


class Fingerprinter:
    """Select and run a fingerprint strategy for a device.

    Parameters:
        device: resolved once per request; decides whether a strong hash is
            attempted at all.
        strong_max_bytes / timeout_seconds / include_clock: default to the
            env-backed values in `backend.storage.config`.
        clock: seconds since epoch; injectable for deterministic tests.
    """

    def __init__(
        self,
        device: DeviceProfile,
        *,
        strong_max_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        include_clock: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.device = device
        self.strong_max_bytes = strong_max_bytes if strong_max_bytes is not None else get_strong_fingerprint_max_bytes()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else get_fingerprint_timeout_seconds()
        self.include_clock = include_clock if include_clock is not None else get_weak_fingerprint_includes_clock()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def _use_weak(self, file: CandidateFile) -> bool:
        return (
            self.device.is_mobile
            or self.device.fingerprint_strategy == STRATEGY_WEAK_ONLY
            or file.size > self.strong_max_bytes
        )

    def _weak(self, file: CandidateFile) -> WeakFingerprint:
        return weak_fingerprint(file, now_ms=self._now_ms() if self.include_clock else None)

    async def compute(self, file: CandidateFile) -> Fingerprint:
        try:
            if self._use_weak(file):
                _log.debug("lightweight fingerprint: device=%s size=%s", self.device.device_class, file.size)
                return self._weak(file)
            try:
                with anyio.fail_after(self.timeout_seconds):
                    return await strong_fingerprint(file)
            except Exception as exc:
                _log.warning("content hash failed, falling back to lightweight: %s", type(exc).__name__)
                return self._weak(file)
        except Exception as exc:
            _log.warning("fingerprint failed, using degraded fallback: %s", type(exc).__name__)
            return degraded_fingerprint(file, now_ms=self._now_ms())


__all__ = [
    "Fingerprint",
    "StrongFingerprint",
    "WeakFingerprint",
    "DegradedFingerprint",
    "rolling_hash_hex",
    "weak_fingerprint",
    "degraded_fingerprint",
    "strong_fingerprint",
    "Fingerprinter",
]
