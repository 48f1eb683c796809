"""
Documents API routes: upload pipeline, attempt tracking, catalog browsing.

Why:
    Expose the upload pipeline and the catalog service over HTTP. The adapter
    resolves the device profile once per request, passes the explicit session
    context down, and maps terminal pipeline results to status codes.

Notes:
    - Authentication: the middleware attaches `request.state.session`
      (SessionContext or None). An unauthenticated upload still runs the
      pipeline so that it fails at `validating` with `not_authenticated`.
    - Attempts: in-flight attempts are tracked per process so the uploader can
      poll progress or cancel from a second request. Finished attempts stay
      visible until evicted by newer ones.
    - Security: cookie-authenticated writes require a same-origin request.
"""
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Optional, Tuple
from urllib.parse import quote

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from backend.documents.device import resolve_device_profile
from backend.documents.errors import CatalogError, NetworkError
from backend.documents.models import CandidateFile, DocumentFilters, UploadForm
from backend.documents.pipeline import UploadAttempt, UploadPipeline, UploadResult
from backend.documents.services.catalog import CatalogService
from backend.identity_access.session import SessionContext
from backend.web.storage_wiring import get_platform

from .security import _json_private, _private_error, csrf_rejected

documents_router = APIRouter(tags=["Documents"])  # explicit paths below
logger = logging.getLogger("docshare.web.documents")

_ATTEMPT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_MAX_TRACKED_ATTEMPTS = 200
_ATTEMPTS: "OrderedDict[str, Tuple[str, UploadAttempt]]" = OrderedDict()

_STATUS_BY_ERROR = {
    "validation": 400,
    "duplicate": 409,
    "network": 502,
    "catalog": 502,
    "metadata": 500,
    "cancelled": 400,
    "unexpected": 500,
}


def _session(request: Request) -> Optional[SessionContext]:
    return getattr(request.state, "session", None)


def _unauthenticated() -> JSONResponse:
    return _private_error({"error": "unauthenticated"}, status_code=401)


def _service_error(exc: Exception) -> JSONResponse:
    """Map catalog service exceptions to JSON errors."""
    if isinstance(exc, LookupError):
        return _private_error({"error": "not_found", "detail": str(exc)}, status_code=404)
    if isinstance(exc, PermissionError):
        return _private_error({"error": "forbidden", "detail": str(exc)}, status_code=403)
    if isinstance(exc, ValueError):
        return _private_error({"error": "bad_request", "detail": str(exc)}, status_code=400)
    if isinstance(exc, (NetworkError, CatalogError)):
        return _private_error({"error": "upstream_unavailable", "detail": str(exc)}, status_code=502)
    raise exc


def _track(owner_id: str, attempt: UploadAttempt) -> None:
    """Register an attempt, evicting the oldest finished ones past the cap.

    In-flight attempts are evicted only when no finished one is left.
    """
    _ATTEMPTS[attempt.id] = (owner_id, attempt)
    excess = len(_ATTEMPTS) - _MAX_TRACKED_ATTEMPTS
    if excess <= 0:
        return
    finished = [key for key, (_, tracked) in _ATTEMPTS.items() if tracked.result is not None]
    for key in finished[:excess]:
        del _ATTEMPTS[key]
    while len(_ATTEMPTS) > _MAX_TRACKED_ATTEMPTS:
        _ATTEMPTS.popitem(last=False)


def _owned_attempt(session: SessionContext, attempt_id: str) -> Optional[UploadAttempt]:
    entry = _ATTEMPTS.get(attempt_id)
    if entry is None or entry[0] != session.user_id:
        return None
    return entry[1]


def reset_attempts() -> None:
    """Forget tracked attempts (tests)."""
    _ATTEMPTS.clear()


def _status_for(result: UploadResult) -> int:
    if result.succeeded:
        return 201
    if result.reason == "not_authenticated":
        return 401
    if result.error == "storage":
        return 403 if result.reason == "storage_permission_denied" else 507
    return _STATUS_BY_ERROR.get(result.error or "unexpected", 500)


def _declared_mime(upload: UploadFile) -> str:
    # Browsers send application/octet-stream when they cannot type a file.
    mime = (upload.content_type or "").split(";")[0].strip().lower()
    return "" if mime == "application/octet-stream" else mime


async def _candidate_from_upload(upload: Optional[UploadFile]) -> Optional[CandidateFile]:
    if upload is None or not (upload.filename or "").strip():
        return None
    size = upload.size
    if size is None:
        size = len(await upload.read())
        await upload.seek(0)
    return CandidateFile(name=upload.filename, size=int(size), mime_type=_declared_mime(upload), source=upload)


@documents_router.post("/api/documents")
async def upload_document(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    title: str = Form(default=""),
    description: Optional[str] = Form(default=None),
    course_code: Optional[str] = Form(default=None),
    course_title: Optional[str] = Form(default=None),
    level: Optional[str] = Form(default=None),
    semester: Optional[str] = Form(default=None),
    document_type: Optional[str] = Form(default=None),
    is_public: bool = Form(default=True),
    viewport_width: Optional[str] = Form(default=None),
    touch: Optional[str] = Form(default=None),
):
    """Run one upload attempt and return its terminal result.

    Responses:
        201 succeeded; 400 validation or cancelled; 401 not signed in;
        409 duplicate; 502 network; 403/507 storage refused; 500 metadata.
        The body always carries `status`, `stage`, `reason` and `attempt_id`.
    """
    rejected = csrf_rejected(request)
    if rejected is not None:
        return rejected
    attempt_id = (request.headers.get("x-upload-attempt") or "").strip()
    if attempt_id and not _ATTEMPT_ID_RE.match(attempt_id):
        return _private_error({"error": "bad_request", "detail": "invalid_attempt_id"}, status_code=400)
    if attempt_id and attempt_id in _ATTEMPTS:
        return _private_error({"error": "conflict", "detail": "attempt_exists"}, status_code=409)
    session = _session(request)
    attempt = UploadAttempt(id=attempt_id) if attempt_id else UploadAttempt()
    # Claim the id before the first await so concurrent reuse sees it.
    if session is not None:
        _track(session.user_id, attempt)

    device = resolve_device_profile(request.headers, {"viewport_width": viewport_width, "touch": touch})
    candidate = await _candidate_from_upload(file)
    form = UploadForm(
        title=title or "",
        description=description,
        course_code=course_code,
        course_title=course_title,
        level=level,
        semester=semester,
        document_type=document_type,
        is_public=is_public,
    )

    platform = get_platform()
    pipeline = UploadPipeline(catalog=platform.catalog, storage=platform.storage, device=device)
    result = await pipeline.submit_upload(session, form, candidate, attempt=attempt)
    body = {"attempt_id": attempt.id, "device": device.device_class, **result.to_dict()}
    return _json_private(body, status_code=_status_for(result))


@documents_router.get("/api/uploads/{attempt_id}")
async def get_upload_attempt(request: Request, attempt_id: str):
    session = _session(request)
    if session is None:
        return _unauthenticated()
    attempt = _owned_attempt(session, attempt_id)
    if attempt is None:
        return _private_error({"error": "not_found"}, status_code=404)
    return _json_private(attempt.snapshot())


@documents_router.post("/api/uploads/{attempt_id}/cancel")
async def cancel_upload_attempt(request: Request, attempt_id: str):
    """Cancel an in-flight attempt owned by the caller.

    Side effects of completed stages are not rolled back.
    """
    rejected = csrf_rejected(request)
    if rejected is not None:
        return rejected
    session = _session(request)
    if session is None:
        return _unauthenticated()
    attempt = _owned_attempt(session, attempt_id)
    if attempt is None:
        return _private_error({"error": "not_found"}, status_code=404)
    if attempt.result is not None:
        return _private_error({"error": "conflict", "detail": "attempt_finished"}, status_code=409)
    attempt.cancel()
    logger.info("upload cancel requested: attempt=%s stage=%s", attempt.id, attempt.stage.value)
    return _json_private({"attempt_id": attempt.id, "stage": attempt.stage.value, "cancel_requested": True}, status_code=202)


def _catalog_service() -> CatalogService:
    platform = get_platform()
    return CatalogService(platform.catalog, platform.storage)


@documents_router.get("/api/documents")
async def list_documents(
    request: Request,
    search: Optional[str] = None,
    course_code: Optional[str] = None,
    level: Optional[str] = None,
    semester: Optional[str] = None,
    document_type: Optional[str] = None,
    uploader_role: Optional[str] = None,
):
    if _session(request) is None:
        return _unauthenticated()
    filters = DocumentFilters(
        search=search,
        course_code=course_code,
        level=level,
        semester=semester,
        document_type=document_type,
        uploader_role=uploader_role,
    )
    try:
        docs = await _catalog_service().list_public_documents(filters)
    except Exception as exc:
        return _service_error(exc)
    return _json_private([d.to_dict() for d in docs])


@documents_router.get("/api/documents/mine")
async def list_my_documents(request: Request):
    session = _session(request)
    if session is None:
        return _unauthenticated()
    try:
        docs = await _catalog_service().list_my_documents(session)
    except Exception as exc:
        return _service_error(exc)
    return _json_private([d.to_dict() for d in docs])


@documents_router.get("/api/documents/{document_id}/download")
async def download_document(request: Request, document_id: str):
    session = _session(request)
    if session is None:
        return _unauthenticated()
    try:
        downloaded = await _catalog_service().download_document(session, document_id)
    except Exception as exc:
        return _service_error(exc)
    disposition = f"attachment; filename*=UTF-8''{quote(downloaded.file_name)}"
    return Response(
        content=downloaded.body,
        media_type=downloaded.mime_type,
        headers={"Content-Disposition": disposition, "Cache-Control": "private, no-store"},
    )


@documents_router.delete("/api/documents/{document_id}")
async def delete_document(request: Request, document_id: str):
    rejected = csrf_rejected(request)
    if rejected is not None:
        return rejected
    session = _session(request)
    if session is None:
        return _unauthenticated()
    try:
        await _catalog_service().delete_document(session, document_id)
    except Exception as exc:
        return _service_error(exc)
    return Response(status_code=204, headers={"Cache-Control": "private, no-store"})
