"""
Document upload pipeline.

Intent:
    Turn one submitted file into one catalog record backed by one stored
    object, or into a single well-defined failure. Stages run strictly in
    order and each one short-circuits the attempt on failure:

        Idle -> Validating -> Fingerprinting -> CheckingDuplicate
             -> Uploading -> RecordingMetadata -> Succeeded | Failed(stage, reason)

Behavior:
    - Validation never touches the network.
    - Only a strong (content) fingerprint match counts as a duplicate; weak and
      degraded fingerprints cannot identify content, so a match on them is
      logged and the upload proceeds.
    - The object upload is retried on transient network errors with bounded
      exponential backoff (1s, 2s, 4s by default).
    - If the catalog insert fails, the stored object is removed once
      (best-effort). A failed removal is logged on `docshare.storage.orphans`
      and never replaces the original error.
    - `cancel()` aborts the active stage's request. It does not roll back
      side effects of earlier stages; a cancelled upload triggers only a
      best-effort removal of the partially written object.

Concurrency:
    One attempt at a time per pipeline instance. Nothing serializes attempts
    across instances; two concurrent uploads of the same file can both pass
    the duplicate check (no uniqueness constraint on `file_hash`).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import anyio

from backend.documents.device import DeviceProfile
from backend.documents.errors import (
    CatalogError,
    DuplicateError,
    MetadataInsertError,
    NetworkError,
    StorageQuotaOrPermissionError,
    UploadCancelled,
    UploadError,
    ValidationError,
)
from backend.documents.fingerprint import Fingerprint, Fingerprinter
from backend.documents.models import CandidateFile, Document, UploadForm
from backend.documents.ports import CatalogProtocol
from backend.documents.retry import RetryPolicy, retry_async
from backend.documents.validation import validate_file, validate_form
from backend.identity_access.session import SessionContext
from backend.storage.config import DOCUMENTS_TABLE, get_documents_bucket
from backend.storage.keys import make_document_key
from backend.storage.ports import ObjectStorageProtocol

logger = logging.getLogger("docshare.documents.pipeline")
orphan_log = logging.getLogger("docshare.storage.orphans")


class UploadStage(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    FINGERPRINTING = "fingerprinting"
    CHECKING_DUPLICATE = "checking_duplicate"
    UPLOADING = "uploading"
    RECORDING_METADATA = "recording_metadata"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Coarse progress: the storage client reports no byte-level progress.
STAGE_PROGRESS = {
    UploadStage.IDLE: 0,
    UploadStage.VALIDATING: 5,
    UploadStage.FINGERPRINTING: 15,
    UploadStage.CHECKING_DUPLICATE: 25,
    UploadStage.UPLOADING: 30,
    UploadStage.RECORDING_METADATA: 90,
    UploadStage.SUCCEEDED: 100,
}

STAGE_FAILURE_MESSAGES = {
    UploadStage.VALIDATING: "Upload failed while validating the file.",
    UploadStage.FINGERPRINTING: "Upload failed while reading the file.",
    UploadStage.CHECKING_DUPLICATE: "Upload failed while checking for duplicates.",
    UploadStage.UPLOADING: "Upload failed while uploading the file.",
    UploadStage.RECORDING_METADATA: "Upload failed while saving document info.",
}

_ERROR_KINDS = (
    (ValidationError, "validation"),
    (DuplicateError, "duplicate"),
    (NetworkError, "network"),
    (StorageQuotaOrPermissionError, "storage"),
    (MetadataInsertError, "metadata"),
    (CatalogError, "catalog"),
    (UploadCancelled, "cancelled"),
)


def error_kind(exc: BaseException) -> str:
    """Coarse failure category used by callers to pick a response."""
    for cls, kind in _ERROR_KINDS:
        if isinstance(exc, cls):
            return kind
    return "unexpected"

ProgressCallback = Callable[[UploadStage, int], None]


@dataclass
class UploadResult:
    """Terminal outcome of one attempt.

    `stage` is SUCCEEDED on success, otherwise the stage that failed.
    """

    succeeded: bool
    stage: UploadStage
    reason: str = "ok"
    message: str = ""
    document: Optional[Document] = None
    fingerprint: Optional[Fingerprint] = None
    retries: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": "succeeded" if self.succeeded else "failed",
            "stage": self.stage.value,
            "reason": self.reason,
            "message": self.message,
            "retries": self.retries,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.fingerprint is not None:
            out["fingerprint"] = {"kind": self.fingerprint.kind, "value": self.fingerprint.value}
        if self.document is not None:
            out["document"] = self.document.to_dict()
        return out


@dataclass
class UploadAttempt:
    """Observable state of one in-flight attempt plus its cancellation handle."""

    id: str = field(default_factory=lambda: uuid4().hex)
    stage: UploadStage = UploadStage.IDLE
    progress: int = 0
    result: Optional[UploadResult] = None
    cancel_requested: bool = False
    _scope: Optional[anyio.CancelScope] = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancel_requested = True
        if self._scope is not None:
            self._scope.cancel()

    def snapshot(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"attempt_id": self.id, "stage": self.stage.value, "progress": self.progress}
        if self.result is not None:
            out["result"] = self.result.to_dict()
        return out


class DuplicateChecker:
    def __init__(self, catalog: CatalogProtocol):
        self._catalog = catalog

    async def find(self, fingerprint: Fingerprint) -> Optional[Document]:
        """Return the first catalog record with this exact fingerprint, if any.

        Query errors propagate; the pipeline must not proceed on a failed check.
        """
        rows = await self._catalog.select(DOCUMENTS_TABLE, eq={"file_hash": fingerprint.value}, limit=1)
        return Document.from_row(rows[0]) if rows else None


class ObjectUploader:
    def __init__(
        self,
        storage: ObjectStorageProtocol,
        *,
        bucket: str,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ):
        self._storage = storage
        self.bucket = bucket
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def upload(self, *, key: str, body: bytes, content_type: str) -> int:
        """Upload with retries on NetworkError; returns the number of retries used.

        The key is unique to the attempt, so an "already exists" answer on a
        retry means an earlier try stored the object before its response was
        lost. That counts as success.
        """
        retries = 0
        tries = 0

        async def _put() -> None:
            nonlocal tries
            tries += 1
            try:
                await self._storage.upload(bucket=self.bucket, key=key, body=body, content_type=content_type)
            except FileExistsError:
                if tries == 1:
                    raise
                logger.info("object stored by an earlier try: path=%s", key)

        def _count(retry_number: int, delay: float, exc: BaseException) -> None:
            nonlocal retries
            retries = retry_number
            logger.warning("upload retry %s in %.1fs: %s", retry_number, delay, exc)

        await retry_async(
            _put,
            policy=self.retry_policy,
            is_transient=lambda exc: isinstance(exc, NetworkError),
            sleep=self._sleep,
            on_retry=_count,
        )
        return retries

    async def remove_quietly(self, key: str) -> bool:
        """Best-effort removal; failures are logged as orphaned objects."""
        try:
            await self._storage.remove(bucket=self.bucket, keys=[key])
            return True
        except Exception as exc:
            orphan_log.warning("orphaned object bucket=%s path=%s error=%s", self.bucket, key, type(exc).__name__)
            return False


class MetadataRecorder:
    def __init__(self, catalog: CatalogProtocol, uploader: ObjectUploader):
        self._catalog = catalog
        self._uploader = uploader

    async def record(self, record: Dict[str, Any]) -> Document:
        """Insert one document row; on failure remove the stored object once."""
        try:
            row = await self._catalog.insert(DOCUMENTS_TABLE, record)
        except Exception as exc:
            logger.warning("metadata insert failed: %s; removing stored object", type(exc).__name__)
            await self._uploader.remove_quietly(record["storage_path"])
            reason = exc.reason if isinstance(exc, UploadError) else "metadata_insert_failed"
            raise MetadataInsertError(reason) from exc
        return Document.from_row(row)


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class UploadPipeline:
    """Run upload attempts for one device profile.

    Parameters:
        catalog / storage: platform ports.
        device: resolved once by the caller; drives size ceiling and
            fingerprint strategy.
        bucket: defaults to DOCUMENTS_STORAGE_BUCKET.
        fingerprinter / retry_policy / sleep / clock: injectable for tests.
    """

    def __init__(
        self,
        *,
        catalog: CatalogProtocol,
        storage: ObjectStorageProtocol,
        device: DeviceProfile,
        bucket: Optional[str] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.device = device
        self._clock = clock
        self.fingerprinter = fingerprinter or Fingerprinter(device, clock=clock)
        self.checker = DuplicateChecker(catalog)
        self.uploader = ObjectUploader(
            storage,
            bucket=bucket or get_documents_bucket(),
            retry_policy=retry_policy or RetryPolicy.from_env(),
            sleep=sleep,
        )
        self.recorder = MetadataRecorder(catalog, self.uploader)
        self._active: Optional[UploadAttempt] = None

    @property
    def active_attempt(self) -> Optional[UploadAttempt]:
        return self._active

    def cancel(self) -> bool:
        """Cancel the active attempt; returns False when nothing is running."""
        attempt = self._active
        if attempt is None:
            return False
        attempt.cancel()
        return True

    async def submit_upload(
        self,
        session: Optional[SessionContext],
        form: UploadForm,
        file: Optional[CandidateFile],
        *,
        on_progress: Optional[ProgressCallback] = None,
        attempt: Optional[UploadAttempt] = None,
    ) -> UploadResult:
        """Run one attempt from Idle to a terminal state. Never raises UploadError."""
        attempt = attempt or UploadAttempt()
        self._active = attempt
        try:
            result = await self._run(attempt, session, form, file, on_progress)
        finally:
            if self._active is attempt:
                self._active = None
        attempt.result = result
        if result.succeeded:
            self._enter(attempt, UploadStage.SUCCEEDED, on_progress)
        else:
            attempt.stage = UploadStage.FAILED
        return result

    # --- internals -------------------------------------------------------------

    def _enter(self, attempt: UploadAttempt, stage: UploadStage, on_progress: Optional[ProgressCallback]) -> None:
        if attempt.cancel_requested and stage is not UploadStage.SUCCEEDED:
            raise UploadCancelled(stage=stage.value)
        attempt.stage = stage
        attempt.progress = STAGE_PROGRESS.get(stage, attempt.progress)
        if on_progress is not None:
            on_progress(stage, attempt.progress)

    async def _cancellable(
        self,
        attempt: UploadAttempt,
        stage: UploadStage,
        operation: Callable[[], Awaitable[Any]],
        *,
        commits: bool = False,
    ) -> Any:
        """Run one stage operation under the attempt's cancel scope.

        A cancel that lands after the operation finished still fails the
        stage, unless the operation `commits` the attempt (the metadata
        insert), whose completed result is kept.
        """
        if attempt.cancel_requested:
            raise UploadCancelled(stage=stage.value)
        with anyio.CancelScope() as scope:
            attempt._scope = scope
            try:
                outcome = await operation()
            finally:
                attempt._scope = None
            if commits or not attempt.cancel_requested:
                return outcome
        raise UploadCancelled(stage=stage.value)

    async def _discard_partial(self, key: str) -> None:
        # The object may or may not exist when an upload stage fails or is cancelled.
        with anyio.CancelScope(shield=True), anyio.move_on_after(5):
            await self.uploader.remove_quietly(key)

    async def _run(
        self,
        attempt: UploadAttempt,
        session: Optional[SessionContext],
        form: UploadForm,
        file: Optional[CandidateFile],
        on_progress: Optional[ProgressCallback],
    ) -> UploadResult:
        stage = UploadStage.VALIDATING
        fingerprint: Optional[Fingerprint] = None
        retries = 0
        key: Optional[str] = None
        try:
            self._enter(attempt, stage, on_progress)
            if session is None or not session.user_id:
                raise ValidationError("not_authenticated", message="Please sign in to upload documents.")
            for check in (validate_form(form), validate_file(file, self.device)):
                if not check.ok:
                    raise ValidationError(check.code, message=check.message)
            if file is None:
                raise ValidationError("missing_file")

            stage = UploadStage.FINGERPRINTING
            self._enter(attempt, stage, on_progress)
            fingerprint = await self._cancellable(attempt, stage, lambda: self.fingerprinter.compute(file))

            stage = UploadStage.CHECKING_DUPLICATE
            self._enter(attempt, stage, on_progress)
            existing = await self._cancellable(attempt, stage, lambda: self.checker.find(fingerprint))
            if existing is not None:
                if fingerprint.reliable:
                    raise DuplicateError(
                        existing=existing,
                        message=f'This document already exists in the catalog as "{existing.title}".',
                    )
                logger.warning("ignoring match on %s fingerprint for document=%s", fingerprint.kind, existing.id)

            stage = UploadStage.UPLOADING
            self._enter(attempt, stage, on_progress)
            key = make_document_key(uploader_id=session.user_id, filename=file.name, epoch_ms=int(self._clock() * 1000))

            async def _transfer() -> int:
                body = await file.read_all()
                return await self.uploader.upload(key=key, body=body, content_type=file.mime_type)

            retries = await self._cancellable(attempt, stage, _transfer)

            stage = UploadStage.RECORDING_METADATA
            self._enter(attempt, stage, on_progress)
            record = {
                "title": form.title.strip(),
                "description": _clean(form.description),
                "file_name": file.name,
                "file_size": file.size,
                "file_type": file.mime_type,
                "file_hash": fingerprint.value,
                "course_code": _clean(form.course_code),
                "course_title": _clean(form.course_title),
                "level": _clean(form.level),
                "semester": _clean(form.semester),
                "document_type": _clean(form.document_type),
                "is_public": bool(form.is_public),
                "uploader_id": session.user_id,
                "uploader_role": session.role,
                "storage_path": key,
            }
            document = await self._cancellable(attempt, stage, lambda: self.recorder.record(record), commits=True)
        except UploadError as exc:
            failed_stage = UploadStage(exc.stage) if exc.stage else stage
            if failed_stage is UploadStage.UPLOADING and key and not isinstance(exc, StorageQuotaOrPermissionError):
                await self._discard_partial(key)
            logger.info("upload failed: stage=%s reason=%s", failed_stage.value, exc.reason)
            message = exc.message if exc.message != exc.reason else STAGE_FAILURE_MESSAGES.get(failed_stage, exc.message)
            return UploadResult(
                False,
                failed_stage,
                exc.reason,
                message,
                fingerprint=fingerprint,
                retries=retries,
                error=error_kind(exc),
            )
        except Exception as exc:
            logger.exception("unexpected upload failure at stage=%s", stage.value)
            # An existing key on the first try belongs to another upload.
            if stage is UploadStage.UPLOADING and key and not isinstance(exc, FileExistsError):
                await self._discard_partial(key)
            return UploadResult(
                False,
                stage,
                "unexpected_error",
                STAGE_FAILURE_MESSAGES.get(stage, "Upload failed."),
                fingerprint=fingerprint,
                retries=retries,
                error="unexpected",
            )
        logger.info("upload succeeded: document=%s path=%s retries=%s", document.id, key, retries)
        return UploadResult(
            True,
            UploadStage.SUCCEEDED,
            "ok",
            "Document uploaded successfully!",
            document=document,
            fingerprint=fingerprint,
            retries=retries,
        )


__all__ = [
    "UploadStage",
    "STAGE_PROGRESS",
    "error_kind",
    "UploadResult",
    "UploadAttempt",
    "DuplicateChecker",
    "ObjectUploader",
    "MetadataRecorder",
    "UploadPipeline",
]
