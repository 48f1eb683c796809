"""
Upload pipeline behavior.

Covers the stage ordering and its guarantees:
  - validation failures never reach the platform
  - a strong fingerprint match stops the attempt before any upload
  - a failed catalog insert removes the stored object exactly once
  - transient upload failures are retried with 1s/2s/4s backoff
  - a failed or cancelled transfer leaves no object behind
  - cancel() aborts the active stage, and a committed insert is kept
"""
from __future__ import annotations

import hashlib
import logging

import anyio
import pytest

from backend.documents.device import profile_for
from backend.documents.errors import CatalogError, NetworkError, StorageQuotaOrPermissionError
from backend.documents.models import BytesSource, CandidateFile, UploadForm
from backend.documents.pipeline import UploadAttempt, UploadPipeline, UploadStage
from backend.documents.repo_memory import InMemoryCatalog
from backend.documents.fingerprint import Fingerprinter, weak_fingerprint
from backend.documents.retry import RetryPolicy
from backend.identity_access.session import SessionContext

pytestmark = pytest.mark.anyio("asyncio")

NOW = 1700000000.0
SESSION = SessionContext(user_id="uid-42", email="ada@cs.example.edu", role="student", access_token="jwt")
FORM = UploadForm(title="Data Structures notes", course_code="CSC201", level="200", semester="First")


class RecordingStorage:
    def __init__(self, upload_failures=(), remove_error: Exception | None = None):
        self.upload_failures = list(upload_failures)
        self.remove_error = remove_error
        self.uploads: list[tuple[str, str, int, str]] = []
        self.removes: list[list[str]] = []

    async def upload(self, *, bucket, key, body, content_type):
        self.uploads.append((bucket, key, len(body), content_type))
        if self.upload_failures:
            raise self.upload_failures.pop(0)

    async def remove(self, *, bucket, keys):
        self.removes.append(list(keys))
        if self.remove_error is not None:
            raise self.remove_error

    async def download(self, *, bucket, key):
        raise LookupError("object_not_found")


class BlockingStorage(RecordingStorage):
    def __init__(self):
        super().__init__()
        self.started = anyio.Event()

    async def upload(self, *, bucket, key, body, content_type):
        self.uploads.append((bucket, key, len(body), content_type))
        self.started.set()
        await anyio.sleep_forever()


class RecordingCatalog(InMemoryCatalog):
    def __init__(self, insert_error: Exception | None = None, select_error: Exception | None = None):
        super().__init__()
        self.insert_error = insert_error
        self.select_error = select_error
        self.selects: list[dict] = []
        self.inserts: list[dict] = []

    async def select(self, table, **kwargs):
        self.selects.append({"table": table, **kwargs})
        if self.select_error is not None:
            raise self.select_error
        return await super().select(table, **kwargs)

    async def insert(self, table, record):
        self.inserts.append(dict(record))
        if self.insert_error is not None:
            raise self.insert_error
        return await super().insert(table, record)


class KeyedStorage(RecordingStorage):
    """Tracks stored keys and answers FileExistsError for a taken key."""

    def __init__(self, *, lose_responses: int = 0, taken=(), after_upload=None):
        super().__init__()
        self.keys = set(taken)
        self.lose_responses = lose_responses
        self.after_upload = after_upload

    async def upload(self, *, bucket, key, body, content_type):
        self.uploads.append((bucket, key, len(body), content_type))
        if key in self.keys:
            raise FileExistsError(key)
        self.keys.add(key)
        if self.after_upload is not None:
            self.after_upload()
        if self.lose_responses:
            self.lose_responses -= 1
            raise NetworkError("upload_network_error")

    async def remove(self, *, bucket, keys):
        await super().remove(bucket=bucket, keys=keys)
        self.keys.difference_update(keys)


class BlockingCatalog(RecordingCatalog):
    """Hangs on the named call ("select" or "insert") until cancelled."""

    def __init__(self, block: str):
        super().__init__()
        self.block = block
        self.started = anyio.Event()

    async def select(self, table, **kwargs):
        if self.block == "select":
            self.started.set()
            await anyio.sleep_forever()
        return await super().select(table, **kwargs)

    async def insert(self, table, record):
        if self.block == "insert":
            self.inserts.append(dict(record))
            self.started.set()
            await anyio.sleep_forever()
        return await super().insert(table, record)


class BlockingFingerprinter:
    def __init__(self):
        self.started = anyio.Event()

    async def compute(self, file):
        self.started.set()
        await anyio.sleep_forever()


class GatedSource(BytesSource):
    """Holds whole-body reads until `gate` is set; sized chunk reads pass through."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.reading = anyio.Event()
        self.gate = anyio.Event()

    async def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            self.reading.set()
            await self.gate.wait()
        return await super().read(size)


class Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _file(data: bytes, name: str = "Notes.pdf", mime: str = "application/pdf") -> CandidateFile:
    return CandidateFile(name=name, size=len(data), mime_type=mime, source=BytesSource(data), last_modified_ms=1)


def _pipeline(catalog, storage, *, device="desktop", fingerprinter=None, sleep=None) -> UploadPipeline:
    return UploadPipeline(
        catalog=catalog,
        storage=storage,
        device=profile_for(device),
        bucket="documents",
        fingerprinter=fingerprinter,
        retry_policy=RetryPolicy(max_retries=3, base_delay=1.0),
        sleep=sleep or Sleeps(),
        clock=lambda: NOW,
    )


async def test_small_desktop_upload_end_to_end():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    data = b"%PDF-1.7 " + b"x" * 2048
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(data))

    assert result.succeeded
    assert result.stage is UploadStage.SUCCEEDED
    assert result.fingerprint.kind == "strong"
    assert result.document.file_hash == hashlib.sha256(data).hexdigest()
    assert result.document.uploader_id == "uid-42"
    assert result.document.is_public is True
    assert [r["title"] for r in catalog.tables["documents"]] == ["Data Structures notes"]


async def test_two_megabyte_notes_pdf_path_and_record():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    data = b"\0" * 2097152
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(data))

    assert result.succeeded
    assert storage.uploads == [("documents", "uid-42/1700000000000-Notes.pdf", 2097152, "application/pdf")]
    record = catalog.inserts[0]
    assert record["storage_path"] == "uid-42/1700000000000-Notes.pdf"
    assert record["file_size"] == 2097152
    assert record["file_type"] == "application/pdf"
    assert record["uploader_role"] == "student"
    # Above the strong-hash ceiling: weak fingerprint, never treated as reliable.
    assert result.fingerprint.kind == "weak"


async def test_validation_failure_makes_no_platform_calls():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    exe = _file(b"MZ" * 10, name="setup.exe", mime="")
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, exe)

    assert not result.succeeded
    assert result.stage is UploadStage.VALIDATING
    assert result.reason == "extension_not_allowed"
    assert result.error == "validation"
    assert catalog.selects == [] and catalog.inserts == []
    assert storage.uploads == [] and storage.removes == []


async def test_missing_session_fails_validation():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    result = await _pipeline(catalog, storage).submit_upload(None, FORM, _file(b"abc"))
    assert (result.stage, result.reason) == (UploadStage.VALIDATING, "not_authenticated")
    assert catalog.selects == [] and storage.uploads == []


async def test_missing_file_fails_validation_without_platform_calls():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, None)
    assert (result.stage, result.reason, result.error) == (UploadStage.VALIDATING, "missing_file", "validation")
    assert catalog.selects == [] and storage.uploads == []


async def test_oversized_mobile_upload_is_rejected_before_fingerprinting():
    catalog, storage = RecordingCatalog(), RecordingStorage()
    big = CandidateFile(name="big.pdf", size=11 * 1024 * 1024, mime_type="application/pdf", source=BytesSource(b""))
    result = await _pipeline(catalog, storage, device="mobile").submit_upload(SESSION, FORM, big)
    assert (result.stage, result.reason) == (UploadStage.VALIDATING, "size_exceeded")
    assert result.fingerprint is None


async def test_strong_duplicate_stops_before_upload():
    data = b"same bytes"
    catalog, storage = RecordingCatalog(), RecordingStorage()
    await catalog.insert("documents", {"title": "Earlier upload", "file_hash": hashlib.sha256(data).hexdigest()})

    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(data))

    assert not result.succeeded
    assert result.stage is UploadStage.CHECKING_DUPLICATE
    assert result.reason == "duplicate_document"
    assert result.error == "duplicate"
    assert "Earlier upload" in result.message
    assert storage.uploads == []
    assert len(catalog.inserts) == 1  # only the seeded row


async def test_weak_fingerprint_match_does_not_block_upload():
    data = b"mobile bytes"
    catalog, storage = RecordingCatalog(), RecordingStorage()
    candidate = _file(data)
    await catalog.insert("documents", {"title": "Earlier", "file_hash": weak_fingerprint(candidate).value})
    fingerprinter = Fingerprinter(profile_for("mobile"), include_clock=False, clock=lambda: NOW)

    result = await _pipeline(catalog, storage, device="mobile", fingerprinter=fingerprinter).submit_upload(
        SESSION, FORM, candidate
    )

    assert result.succeeded
    assert result.fingerprint.kind == "weak"
    assert len(storage.uploads) == 1


async def test_duplicate_query_failure_aborts_before_upload():
    catalog = RecordingCatalog(select_error=CatalogError("select_failed"))
    storage = RecordingStorage()
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(b"abc"))
    assert (result.stage, result.reason) == (UploadStage.CHECKING_DUPLICATE, "select_failed")
    assert storage.uploads == []


async def test_one_transient_upload_failure_is_retried_once():
    catalog = RecordingCatalog()
    storage = RecordingStorage(upload_failures=[NetworkError("upload_network_error")])
    sleeps = Sleeps()
    result = await _pipeline(catalog, storage, sleep=sleeps).submit_upload(SESSION, FORM, _file(b"abc"))

    assert result.succeeded
    assert result.retries == 1
    assert sleeps.delays == [1.0]
    assert len(storage.uploads) == 2
    assert len(catalog.inserts) == 1


async def test_exhausted_upload_retries_fail_at_uploading():
    failures = [NetworkError("upload_network_error") for _ in range(4)]
    catalog, storage, sleeps = RecordingCatalog(), RecordingStorage(upload_failures=failures), Sleeps()
    result = await _pipeline(catalog, storage, sleep=sleeps).submit_upload(SESSION, FORM, _file(b"abc"))

    assert (result.stage, result.reason, result.error) == (UploadStage.UPLOADING, "upload_network_error", "network")
    assert len(storage.uploads) == 4
    assert sleeps.delays == [1.0, 2.0, 4.0]
    assert catalog.inserts == []
    assert storage.removes == [[storage.uploads[0][1]]]


async def test_storage_refusal_is_not_retried():
    refusal = StorageQuotaOrPermissionError("storage_quota_exceeded", status=413)
    catalog, storage, sleeps = RecordingCatalog(), RecordingStorage(upload_failures=[refusal]), Sleeps()
    result = await _pipeline(catalog, storage, sleep=sleeps).submit_upload(SESSION, FORM, _file(b"abc"))

    assert (result.stage, result.reason, result.error) == (UploadStage.UPLOADING, "storage_quota_exceeded", "storage")
    assert len(storage.uploads) == 1
    assert sleeps.delays == []
    # The platform refused the write, so there is nothing to remove.
    assert storage.removes == []


async def test_metadata_failure_removes_uploaded_object_exactly_once():
    catalog = RecordingCatalog(insert_error=CatalogError("insert_failed"))
    storage = RecordingStorage()
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(b"abc"))

    assert not result.succeeded
    assert result.stage is UploadStage.RECORDING_METADATA
    assert result.reason == "insert_failed"
    assert result.error == "metadata"
    assert result.message == "Upload failed while saving document info."
    key = storage.uploads[0][1]
    assert storage.removes == [[key]]


async def test_failed_compensation_logs_orphan_and_keeps_original_error(caplog):
    catalog = RecordingCatalog(insert_error=CatalogError("insert_failed"))
    storage = RecordingStorage(remove_error=NetworkError("remove_network_error"))
    with caplog.at_level(logging.WARNING, logger="docshare.storage.orphans"):
        result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(b"abc"))

    assert (result.stage, result.reason) == (UploadStage.RECORDING_METADATA, "insert_failed")
    assert len(storage.removes) == 1
    orphan_records = [r for r in caplog.records if r.name == "docshare.storage.orphans"]
    assert len(orphan_records) == 1
    assert storage.uploads[0][1] in orphan_records[0].getMessage()


async def test_progress_reports_each_stage_in_order():
    seen = []
    catalog, storage = RecordingCatalog(), RecordingStorage()
    await _pipeline(catalog, storage).submit_upload(
        SESSION, FORM, _file(b"abc"), on_progress=lambda stage, pct: seen.append((stage.value, pct))
    )
    assert seen == [
        ("validating", 5),
        ("fingerprinting", 15),
        ("checking_duplicate", 25),
        ("uploading", 30),
        ("recording_metadata", 90),
        ("succeeded", 100),
    ]


async def test_cancel_during_upload_aborts_and_removes_partial_object():
    catalog, storage = RecordingCatalog(), BlockingStorage()
    pipeline = _pipeline(catalog, storage)
    attempt = UploadAttempt(id="attempt-1")
    results = []

    async def _run():
        results.append(await pipeline.submit_upload(SESSION, FORM, _file(b"abc"), attempt=attempt))

    async with anyio.create_task_group() as tg:
        tg.start_soon(_run)
        with anyio.fail_after(5):
            await storage.started.wait()
        assert pipeline.active_attempt is attempt
        assert pipeline.cancel() is True

    result = results[0]
    assert (result.stage, result.reason, result.error) == (UploadStage.UPLOADING, "cancelled", "cancelled")
    assert storage.removes == [[storage.uploads[0][1]]]
    assert catalog.inserts == []
    assert attempt.stage is UploadStage.FAILED
    assert pipeline.active_attempt is None


async def test_cancel_without_active_attempt_is_a_noop():
    pipeline = _pipeline(RecordingCatalog(), RecordingStorage())
    assert pipeline.cancel() is False


KEY = "uid-42/1700000000000-Notes.pdf"


async def _cancel_when_started(pipeline, started, file=None):
    attempt = UploadAttempt()
    results = []

    async def _run():
        results.append(await pipeline.submit_upload(SESSION, FORM, file or _file(b"abc"), attempt=attempt))

    async with anyio.create_task_group() as tg:
        tg.start_soon(_run)
        with anyio.fail_after(5):
            await started.wait()
        assert pipeline.cancel() is True
    return attempt, results[0]


async def test_retry_after_lost_response_accepts_the_stored_object():
    catalog, storage = RecordingCatalog(), KeyedStorage(lose_responses=1)
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(b"abc"))

    assert result.succeeded
    assert result.retries == 1
    assert [u[1] for u in storage.uploads] == [KEY, KEY]
    assert storage.keys == {KEY}
    assert storage.removes == []
    assert catalog.inserts[0]["storage_path"] == KEY


async def test_key_taken_on_first_try_fails_and_leaves_existing_object():
    catalog, storage = RecordingCatalog(), KeyedStorage(taken={KEY})
    result = await _pipeline(catalog, storage).submit_upload(SESSION, FORM, _file(b"abc"))

    assert (result.stage, result.reason) == (UploadStage.UPLOADING, "unexpected_error")
    assert storage.removes == []
    assert storage.keys == {KEY}
    assert catalog.inserts == []


async def test_cancel_while_reading_the_body_stores_nothing():
    data = b"%PDF-1.7 lecture body"
    source = GatedSource(data)
    candidate = CandidateFile(
        name="Notes.pdf", size=len(data), mime_type="application/pdf", source=source, last_modified_ms=1
    )
    catalog, storage = RecordingCatalog(), KeyedStorage()
    pipeline = _pipeline(catalog, storage)

    attempt, result = await _cancel_when_started(pipeline, source.reading, candidate)

    assert (result.stage, result.reason, result.error) == (UploadStage.UPLOADING, "cancelled", "cancelled")
    assert storage.uploads == []
    assert storage.keys == set()
    assert catalog.inserts == []
    assert attempt.stage is UploadStage.FAILED


async def test_cancel_landing_as_transfer_completes_removes_the_object():
    catalog = RecordingCatalog()
    storage = KeyedStorage()
    pipeline = _pipeline(catalog, storage)
    storage.after_upload = pipeline.cancel

    result = await pipeline.submit_upload(SESSION, FORM, _file(b"abc"))

    assert (result.stage, result.reason) == (UploadStage.UPLOADING, "cancelled")
    assert storage.removes == [[KEY]]
    assert storage.keys == set()
    assert catalog.inserts == []


async def test_cancel_during_fingerprinting_makes_no_platform_calls():
    catalog, storage, fingerprinter = RecordingCatalog(), RecordingStorage(), BlockingFingerprinter()
    pipeline = _pipeline(catalog, storage, fingerprinter=fingerprinter)

    attempt, result = await _cancel_when_started(pipeline, fingerprinter.started)

    assert (result.stage, result.reason, result.error) == (UploadStage.FINGERPRINTING, "cancelled", "cancelled")
    assert result.fingerprint is None
    assert catalog.selects == []
    assert storage.uploads == [] and storage.removes == []
    assert attempt.stage is UploadStage.FAILED


async def test_cancel_during_duplicate_check_never_uploads():
    catalog, storage = BlockingCatalog("select"), RecordingStorage()
    pipeline = _pipeline(catalog, storage)

    _, result = await _cancel_when_started(pipeline, catalog.started)

    assert (result.stage, result.reason) == (UploadStage.CHECKING_DUPLICATE, "cancelled")
    assert result.fingerprint.kind == "strong"
    assert storage.uploads == [] and storage.removes == []
    assert catalog.inserts == []


async def test_cancel_during_metadata_insert_keeps_the_uploaded_object():
    catalog, storage = BlockingCatalog("insert"), RecordingStorage()
    pipeline = _pipeline(catalog, storage)

    attempt, result = await _cancel_when_started(pipeline, catalog.started)

    assert (result.stage, result.reason, result.error) == (
        UploadStage.RECORDING_METADATA,
        "cancelled",
        "cancelled",
    )
    assert [u[1] for u in storage.uploads] == [KEY]
    assert storage.removes == []
    assert catalog.tables.get("documents", []) == []
    assert attempt.result is result
