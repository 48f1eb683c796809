"""
Documents API: uploads, attempt tracking, browsing and deletion over HTTP.

The platform is injected via `storage_wiring.set_platform` with in-memory
adapters and a fake identity client that knows two bearer tokens.
"""
from __future__ import annotations

import hashlib
from types import SimpleNamespace

import anyio
import httpx
import pytest
from httpx import ASGITransport

from backend.documents.pipeline import UploadAttempt
from backend.documents.repo_memory import InMemoryCatalog, InMemoryObjectStorage
from backend.identity_access.session import SessionProvider
from backend.web import main
from backend.web.routes import documents as documents_routes
from backend.web.storage_wiring import Platform, set_platform

pytestmark = pytest.mark.anyio("asyncio")

USERS = {
    "tok-ada": SimpleNamespace(id="u-ada", email="ada@cs.example.edu", user_metadata={"role": "student", "name": "Ada"}),
    "tok-bob": SimpleNamespace(id="u-bob", email="bob@cs.example.edu", user_metadata={"role": "student", "name": "Bob"}),
}
ADA = {"Authorization": "Bearer tok-ada"}
BOB = {"Authorization": "Bearer tok-bob"}
DESKTOP_UA = {"User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Chrome/126.0"}


class _FakeAuth:
    async def get_user(self, jwt):
        if jwt not in USERS:
            raise RuntimeError("invalid JWT")
        return SimpleNamespace(user=USERS[jwt])


@pytest.fixture
def platform():
    catalog = InMemoryCatalog()
    p = Platform(
        catalog=catalog,
        storage=InMemoryObjectStorage(),
        sessions=SessionProvider(SimpleNamespace(auth=_FakeAuth()), catalog),
    )
    set_platform(p)
    return p


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


def _upload_kwargs(*, name="Notes.pdf", data=b"%PDF-1.7 lecture", mime="application/pdf", **fields):
    form = {"title": "Linked lists", "course_code": "CSC201", "level": "200", "semester": "First"}
    form.update(fields)
    return {"files": {"file": (name, data, mime)}, "data": form}


async def test_upload_succeeds_and_document_is_listed(platform):
    async with _client() as client:
        resp = await client.post("/api/documents", headers={**ADA, **DESKTOP_UA}, **_upload_kwargs())
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "succeeded"
        assert body["stage"] == "succeeded"
        assert body["fingerprint"] == {"kind": "strong", "value": hashlib.sha256(b"%PDF-1.7 lecture").hexdigest()}
        assert body["device"] == "desktop"
        assert resp.headers["Cache-Control"] == "private, no-store"
        doc = body["document"]
        assert doc["storage_path"].startswith("u-ada/") and doc["storage_path"].endswith("-Notes.pdf")

        listing = await client.get("/api/documents", headers=BOB)
        assert listing.status_code == 200
        assert [d["title"] for d in listing.json()] == ["Linked lists"]
        assert listing.json()[0]["uploader"]["name"] == "Unknown User"

        download = await client.get(f"/api/documents/{doc['id']}/download", headers=BOB)
        assert download.status_code == 200
        assert download.content == b"%PDF-1.7 lecture"
        assert download.headers["content-disposition"] == "attachment; filename*=UTF-8''Notes.pdf"


async def test_unauthenticated_upload_fails_at_validating(platform):
    async with _client() as client:
        resp = await client.post("/api/documents", **_upload_kwargs())
    assert resp.status_code == 401
    assert (resp.json()["stage"], resp.json()["reason"]) == ("validating", "not_authenticated")
    assert platform.storage.objects == {}


async def test_untyped_executable_is_rejected_without_storage_calls(platform):
    async with _client() as client:
        resp = await client.post(
            "/api/documents", headers=ADA, **_upload_kwargs(name="setup.exe", data=b"MZ", mime="application/octet-stream")
        )
    assert resp.status_code == 400
    assert (resp.json()["stage"], resp.json()["reason"]) == ("validating", "extension_not_allowed")
    assert platform.storage.objects == {}
    assert platform.catalog.tables.get("documents", []) == []


async def test_mobile_hints_lower_the_size_ceiling(platform):
    data = b"x" * (10 * 1024 * 1024 + 1)
    async with _client() as client:
        resp = await client.post(
            "/api/documents", headers={**ADA, **DESKTOP_UA}, **_upload_kwargs(data=data, viewport_width="390")
        )
    assert resp.status_code == 400
    assert resp.json()["reason"] == "size_exceeded"
    assert resp.json()["device"] == "mobile"


async def test_second_identical_upload_is_a_duplicate(platform):
    async with _client() as client:
        first = await client.post("/api/documents", headers=ADA, **_upload_kwargs())
        second = await client.post("/api/documents", headers=BOB, **_upload_kwargs(title="Same file"))
    assert first.status_code == 201
    assert second.status_code == 409
    assert (second.json()["stage"], second.json()["reason"]) == ("checking_duplicate", "duplicate_document")
    assert len(platform.storage.objects) == 1


async def test_attempt_status_and_cancel_after_finish(platform):
    async with _client() as client:
        resp = await client.post("/api/documents", headers={**ADA, "X-Upload-Attempt": "att-1"}, **_upload_kwargs())
        assert resp.json()["attempt_id"] == "att-1"

        status = await client.get("/api/uploads/att-1", headers=ADA)
        assert status.status_code == 200
        assert status.json()["stage"] == "succeeded"
        assert status.json()["progress"] == 100
        assert status.json()["result"]["status"] == "succeeded"

        assert (await client.get("/api/uploads/att-1", headers=BOB)).status_code == 404
        cancel = await client.post("/api/uploads/att-1/cancel", headers=ADA)
        assert cancel.status_code == 409

        reused = await client.post("/api/documents", headers={**ADA, "X-Upload-Attempt": "att-1"}, **_upload_kwargs())
        assert reused.status_code == 409
        bad = await client.post("/api/documents", headers={**ADA, "X-Upload-Attempt": "../x"}, **_upload_kwargs())
        assert bad.status_code == 400


async def test_concurrent_posts_with_one_attempt_id_run_once(platform):
    statuses = []

    async def _post(client, data):
        resp = await client.post(
            "/api/documents", headers={**ADA, "X-Upload-Attempt": "att-same"}, **_upload_kwargs(data=data)
        )
        statuses.append((resp.status_code, resp.json().get("detail")))

    async with _client() as client:
        async with anyio.create_task_group() as tg:
            tg.start_soon(_post, client, b"%PDF-1.7 first")
            tg.start_soon(_post, client, b"%PDF-1.7 second")

    assert sorted(statuses, key=lambda s: s[0]) == [(201, None), (409, "attempt_exists")]
    assert len(platform.storage.objects) == 1


def test_registry_cap_evicts_finished_attempts_before_in_flight_ones(monkeypatch):
    monkeypatch.setattr(documents_routes, "_MAX_TRACKED_ATTEMPTS", 2)
    in_flight = UploadAttempt(id="live")
    documents_routes._track("u-ada", in_flight)
    for n in range(3):
        done = UploadAttempt(id=f"done-{n}")
        done.result = object()
        documents_routes._track("u-ada", done)

    assert list(documents_routes._ATTEMPTS) == ["live", "done-2"]


async def test_private_documents_and_deletion(platform):
    async with _client() as client:
        resp = await client.post("/api/documents", headers=ADA, **_upload_kwargs(is_public="false"))
        doc_id = resp.json()["document"]["id"]

        assert (await client.get("/api/documents", headers=BOB)).json() == []
        assert [d["id"] for d in (await client.get("/api/documents/mine", headers=ADA)).json()] == [doc_id]
        assert (await client.get(f"/api/documents/{doc_id}/download", headers=BOB)).status_code == 403

        assert (await client.delete(f"/api/documents/{doc_id}", headers=BOB)).status_code == 403
        deleted = await client.delete(f"/api/documents/{doc_id}", headers=ADA)
        assert deleted.status_code == 204
        assert (await client.get(f"/api/documents/{doc_id}/download", headers=ADA)).status_code == 404
    assert platform.storage.objects == {}


async def test_listing_requires_session(platform):
    async with _client() as client:
        resp = await client.get("/api/documents")
    assert resp.status_code == 401
    assert resp.headers["Cache-Control"] == "private, no-store"


async def test_cookie_authenticated_cross_site_write_is_rejected(platform):
    async with _client() as client:
        client.cookies.set("docshare_session", "tok-ada")
        resp = await client.post("/api/documents", headers={"Origin": "https://evil.example"}, **_upload_kwargs())
        assert resp.status_code == 403
        assert resp.json()["detail"] == "csrf_violation"

        same_origin = await client.post("/api/documents", headers={"Origin": "http://test"}, **_upload_kwargs())
        assert same_origin.status_code == 201


async def test_health_reports_platform(platform):
    async with _client() as client:
        resp = await client.get("/health")
    assert resp.json() == {"status": "healthy", "platform": "memory"}
