"""Document catalog types shared by the pipeline, services and web routes."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Protocol

LEVELS = ("100", "200", "300", "400")
SEMESTERS = ("First", "Second")
DOCUMENT_TYPES = ("lecture_notes", "assignment", "past_question", "project", "other")

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000


@dataclass
class Document:
    id: str
    title: str
    file_name: str
    file_size: int
    file_type: str
    file_hash: str
    is_public: bool
    uploader_id: str
    uploader_role: str
    storage_path: str
    created_at: str
    updated_at: str
    description: str | None = None
    course_code: str | None = None
    course_title: str | None = None
    level: str | None = None
    semester: str | None = None
    document_type: str | None = None
    uploader: Dict[str, str] | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Document":
        return cls(
            id=str(row.get("id") or ""),
            title=str(row.get("title") or ""),
            file_name=str(row.get("file_name") or ""),
            file_size=int(row.get("file_size") or 0),
            file_type=str(row.get("file_type") or ""),
            file_hash=str(row.get("file_hash") or ""),
            is_public=bool(row.get("is_public", True)),
            uploader_id=str(row.get("uploader_id") or ""),
            uploader_role=str(row.get("uploader_role") or "student"),
            storage_path=str(row.get("storage_path") or ""),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
            description=row.get("description") or None,
            course_code=row.get("course_code") or None,
            course_title=row.get("course_title") or None,
            level=row.get("level") or None,
            semester=row.get("semester") or None,
            document_type=row.get("document_type") or None,
            uploader=row.get("uploader") if isinstance(row.get("uploader"), dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("uploader") is None:
            data.pop("uploader", None)
        return data


@dataclass
class Profile:
    id: str
    email: str
    name: str
    role: str
    level: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        return cls(
            id=str(row.get("id") or ""),
            email=str(row.get("email") or ""),
            name=str(row.get("name") or ""),
            role=str(row.get("role") or "student"),
            level=row.get("level") or None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DocumentFilters:
    """Catalog filters; empty values mean "no filter"."""

    search: str | None = None
    course_code: str | None = None
    level: str | None = None
    semester: str | None = None
    document_type: str | None = None
    uploader_role: str | None = None

    def equality_filters(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for name in ("course_code", "level", "semester", "document_type", "uploader_role"):
            value = (getattr(self, name) or "").strip()
            if value:
                out[name] = value
        return out


@dataclass
class UploadForm:
    """Validated-on-submit form fields of the upload page."""

    title: str
    description: str | None = None
    course_code: str | None = None
    course_title: str | None = None
    level: str | None = None
    semester: str | None = None
    document_type: str | None = None
    is_public: bool = True


class FileSource(Protocol):
    """Async byte source (FastAPI's UploadFile fits this shape)."""

    async def read(self, size: int = -1) -> bytes: ...

    async def seek(self, offset: int) -> Any: ...


class BytesSource:
    """In-memory FileSource used by tests and small server-side imports."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    async def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            end = len(self._data)
        else:
            end = min(len(self._data), self._pos + size)
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    async def seek(self, offset: int) -> int:
        self._pos = max(0, min(offset, len(self._data)))
        return self._pos


@dataclass
class CandidateFile:
    """A file selected for upload: declared metadata plus its byte source.

    `size` and `mime_type` are what the client declared; the pipeline does not
    trust them for anything but validation and the catalog record.
    """

    name: str
    size: int
    mime_type: str
    source: FileSource
    last_modified_ms: int = 0

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        await self.source.seek(0)
        while True:
            chunk = await self.source.read(chunk_size)
            if not chunk:
                break
            yield chunk

    async def read_all(self) -> bytes:
        await self.source.seek(0)
        return await self.source.read()


__all__ = [
    "LEVELS",
    "SEMESTERS",
    "DOCUMENT_TYPES",
    "TITLE_MAX_LENGTH",
    "DESCRIPTION_MAX_LENGTH",
    "Document",
    "Profile",
    "DocumentFilters",
    "UploadForm",
    "FileSource",
    "BytesSource",
    "CandidateFile",
]
