"""Document catalog and profile service layer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.documents.models import LEVELS, Document, DocumentFilters, Profile
from backend.documents.ports import CatalogProtocol
from backend.identity_access.session import SessionContext
from backend.storage.config import DOCUMENTS_TABLE, PROFILES_TABLE, get_documents_bucket
from backend.storage.ports import ObjectStorageProtocol

logger = logging.getLogger("docshare.documents.catalog")

SEARCH_COLUMNS = ("title", "description", "file_name", "course_code", "course_title")
NAME_MAX_LENGTH = 100
UNKNOWN_UPLOADER = "Unknown User"


@dataclass
class DownloadedFile:
    file_name: str
    mime_type: str
    body: bytes


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CatalogService:
    """Browse, download and delete documents; read and edit profiles.

    Errors follow the module convention: `LookupError("document_not_found")`,
    `PermissionError("forbidden")`, `ValueError("<code>")` for bad input.
    Adapter errors (`NetworkError`, `CatalogError`) propagate unchanged.
    """

    def __init__(self, catalog: CatalogProtocol, storage: ObjectStorageProtocol, *, bucket: Optional[str] = None):
        self._catalog = catalog
        self._storage = storage
        self.bucket = bucket or get_documents_bucket()

    async def _with_uploaders(self, documents: List[Document]) -> List[Document]:
        uploader_ids = sorted({d.uploader_id for d in documents if d.uploader_id})
        names: Dict[str, Dict[str, str]] = {}
        if uploader_ids:
            try:
                rows = await self._catalog.select(PROFILES_TABLE, in_=("id", uploader_ids))
                for row in rows:
                    names[str(row.get("id"))] = {
                        "name": str(row.get("name") or UNKNOWN_UPLOADER),
                        "role": str(row.get("role") or "student"),
                    }
            except Exception as exc:
                logger.warning("uploader lookup failed, listing without names: %s", type(exc).__name__)
        for doc in documents:
            doc.uploader = names.get(doc.uploader_id) or {
                "name": UNKNOWN_UPLOADER,
                "role": doc.uploader_role or "student",
            }
        return documents

    async def list_public_documents(self, filters: Optional[DocumentFilters] = None) -> List[Document]:
        filters = filters or DocumentFilters()
        eq: Dict[str, Any] = {"is_public": True, **filters.equality_filters()}
        search = (filters.search or "").strip()
        rows = await self._catalog.select(
            DOCUMENTS_TABLE,
            eq=eq,
            search=(search, SEARCH_COLUMNS) if search else None,
            order_by="created_at",
            descending=True,
        )
        return await self._with_uploaders([Document.from_row(r) for r in rows])

    async def list_my_documents(self, session: SessionContext) -> List[Document]:
        rows = await self._catalog.select(
            DOCUMENTS_TABLE,
            eq={"uploader_id": session.user_id},
            order_by="created_at",
            descending=True,
        )
        return [Document.from_row(r) for r in rows]

    async def _get_document(self, document_id: str) -> Document:
        if not document_id:
            raise LookupError("document_not_found")
        rows = await self._catalog.select(DOCUMENTS_TABLE, eq={"id": document_id}, limit=1)
        if not rows:
            raise LookupError("document_not_found")
        return Document.from_row(rows[0])

    async def download_document(self, session: Optional[SessionContext], document_id: str) -> DownloadedFile:
        if session is None:
            raise PermissionError("not_authenticated")
        doc = await self._get_document(document_id)
        if not doc.is_public and not (session.is_admin or session.user_id == doc.uploader_id):
            raise PermissionError("forbidden")
        body = await self._storage.download(bucket=self.bucket, key=doc.storage_path)
        return DownloadedFile(file_name=doc.file_name, mime_type=doc.file_type or "application/octet-stream", body=body)

    async def delete_document(self, session: SessionContext, document_id: str) -> Document:
        doc = await self._get_document(document_id)
        if not (session.is_admin or session.user_id == doc.uploader_id):
            raise PermissionError("forbidden")
        await self._catalog.delete(DOCUMENTS_TABLE, eq={"id": doc.id})
        try:
            await self._storage.remove(bucket=self.bucket, keys=[doc.storage_path])
        except Exception as exc:
            logging.getLogger("docshare.storage.orphans").warning(
                "orphaned object bucket=%s path=%s error=%s", self.bucket, doc.storage_path, type(exc).__name__
            )
        logger.info("document deleted: id=%s by=%s", doc.id, session.user_id)
        return doc

    async def get_profile(self, user_id: str) -> Profile:
        rows = await self._catalog.select(PROFILES_TABLE, eq={"id": user_id}, limit=1)
        if not rows:
            raise LookupError("profile_not_found")
        return Profile.from_row(rows[0])

    async def update_profile(self, session: SessionContext, *, name: str, level: Optional[str] = None) -> Profile:
        name = (name or "").strip()
        if not name or len(name) > NAME_MAX_LENGTH:
            raise ValueError("invalid_name")
        level = (level or "").strip() or None
        if level is not None and level not in LEVELS:
            raise ValueError("invalid_level")
        if level is None and not session.is_admin:
            raise ValueError("invalid_level")
        rows = await self._catalog.update(
            PROFILES_TABLE,
            eq={"id": session.user_id},
            values={"name": name, "level": level, "updated_at": _now_iso()},
        )
        if not rows:
            raise LookupError("profile_not_found")
        return Profile.from_row(rows[0])


__all__ = ["CatalogService", "DownloadedFile", "SEARCH_COLUMNS", "UNKNOWN_UPLOADER"]
