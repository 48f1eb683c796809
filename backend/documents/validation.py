"""
File and form validation for document uploads.

Pure checks only: nothing here touches the network, so a rejected file never
costs a request against the platform.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from backend.documents.device import DeviceProfile
from backend.documents.models import (
    DESCRIPTION_MAX_LENGTH,
    DOCUMENT_TYPES,
    LEVELS,
    SEMESTERS,
    TITLE_MAX_LENGTH,
    CandidateFile,
    UploadForm,
)

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "application/zip",
        "application/x-zip-compressed",
        "application/vnd.rar",
        "application/x-rar-compressed",
    }
)

ALLOWED_EXTENSIONS = frozenset({".pdf", ".doc", ".docx", ".ppt", ".pptx", ".txt", ".zip", ".rar"})

_MESSAGES = {
    "missing_file": "Please select a file to upload.",
    "empty_file": "The selected file is empty.",
    "size_exceeded": "File is too large. The maximum size on this device is {limit}.",
    "mime_not_allowed": "Unsupported file type. Allowed: PDF, Word, PowerPoint, text, ZIP and RAR.",
    "extension_not_allowed": "Unsupported file type. Allowed: PDF, Word, PowerPoint, text, ZIP and RAR.",
    "invalid_title": "Please enter a title (at most 200 characters).",
    "invalid_description": "Description is too long.",
    "invalid_level": "Please choose a valid level.",
    "invalid_semester": "Please choose a valid semester.",
    "invalid_document_type": "Please choose a valid document type.",
}


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    code: str = "ok"
    message: str = ""

    @classmethod
    def passed(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def failed(cls, code: str, **fmt: str) -> "ValidationResult":
        return cls(False, code, _MESSAGES.get(code, code).format(**fmt))


def _human_size(num_bytes: int) -> str:
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):g} MB"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:g} KB"
    return f"{num_bytes} bytes"


def _extension(filename: str) -> str:
    _, ext = os.path.splitext(os.path.basename(filename or ""))
    return ext.lower()


def validate_file(file: Optional[CandidateFile], device: DeviceProfile) -> ValidationResult:
    """Check size and type of a candidate file against the device's limits.

    Rules:
        - size must be positive and not exceed `device.max_file_size`
        - a non-empty declared MIME type must be on the allow-list
        - an empty declared MIME type falls back to the extension allow-list
    """
    if file is None or not (file.name or "").strip():
        return ValidationResult.failed("missing_file")
    if file.size <= 0:
        return ValidationResult.failed("empty_file")
    if file.size > device.max_file_size:
        return ValidationResult.failed("size_exceeded", limit=_human_size(device.max_file_size))
    # Accept content types with parameters (e.g., "text/plain; charset=UTF-8").
    declared = (file.mime_type or "").split(";", 1)[0].strip().lower()
    if declared:
        if declared not in ALLOWED_MIME_TYPES:
            return ValidationResult.failed("mime_not_allowed")
    elif _extension(file.name) not in ALLOWED_EXTENSIONS:
        return ValidationResult.failed("extension_not_allowed")
    return ValidationResult.passed()


def _optional_choice(value: Optional[str], choices: tuple[str, ...]) -> bool:
    value = (value or "").strip()
    return not value or value in choices


def validate_form(form: UploadForm) -> ValidationResult:
    title = (form.title or "").strip()
    if not title or len(title) > TITLE_MAX_LENGTH:
        return ValidationResult.failed("invalid_title")
    if form.description and len(form.description) > DESCRIPTION_MAX_LENGTH:
        return ValidationResult.failed("invalid_description")
    if not _optional_choice(form.level, LEVELS):
        return ValidationResult.failed("invalid_level")
    if not _optional_choice(form.semester, SEMESTERS):
        return ValidationResult.failed("invalid_semester")
    if not _optional_choice(form.document_type, DOCUMENT_TYPES):
        return ValidationResult.failed("invalid_document_type")
    return ValidationResult.passed()


__all__ = [
    "ALLOWED_MIME_TYPES",
    "ALLOWED_EXTENSIONS",
    "ValidationResult",
    "validate_file",
    "validate_form",
]
