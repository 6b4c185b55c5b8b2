"""Unit tests for FastAPI endpoints in the check-in service.

Tests cover:
- POST /v1/storage/presign and /v1/storage/clear
- POST /v1/qr-codes/mass-upload + GET /v1/qr-codes/mass-upload/stream
- POST /v1/check-in + GET /v1/check-in/stream
- POST /v1/qr-image
- GET /liveness and GET /readiness
- Auth middleware (missing token returns 401) and request ids

Uses httpx.AsyncClient with ASGITransport. Services are assembled from the
in-memory fakes in conftest.py and placed on app.state directly.
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient

from checkin_service.auth import Identity
from checkin_service.images import QRImageResolver
from checkin_service.jobs.checkin import SingleCheckInJobController
from checkin_service.services import Services
from checkin_service.stores.file_host import DriveFile

TEST_IDENTITY = Identity(principal="staff@example.com", email="staff@example.com")

TEST_TOKEN = "test-dev-token"

SOURCE_KEY = "uploads/batch.pdf"


def _sse_payloads(body: str) -> list[dict[str, Any]]:
    payloads = []
    for frame in body.split("\n\n"):
        lines = [line for line in frame.splitlines() if line.startswith("data: ")]
        if lines and not frame.startswith("event: open"):
            payloads.append(json.loads("".join(line[len("data: ") :] for line in lines)))
    return payloads


@pytest.fixture()
def _mock_auth():
    """Patch get_identity in auth middleware to accept TEST_TOKEN."""

    async def _patched_get_identity(request: Any) -> Identity:
        from checkin_service.auth import _extract_token

        token = _extract_token(request)
        if token == TEST_TOKEN:
            return TEST_IDENTITY
        if not token:
            raise HTTPException(status_code=401, detail="Missing authorization token")
        raise HTTPException(status_code=401, detail="Invalid token")

    return patch("checkin_service.app.get_identity", side_effect=_patched_get_identity)


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture()
async def services(
    ingest_cfg,
    registry,
    progress_stream,
    fake_objects,
    fake_roster,
    fake_files,
    batch_controller,
    clock,
):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(204)))
    svc = Services(
        cfg=ingest_cfg,
        http=http,
        registry=registry,
        stream=progress_stream,
        object_store=fake_objects,  # type: ignore[arg-type]
        roster=fake_roster,  # type: ignore[arg-type]
        file_host=fake_files,  # type: ignore[arg-type]
        batch=batch_controller,
        checkin=SingleCheckInJobController(
            roster=fake_roster,  # type: ignore[arg-type]
            registry=registry,
            http=http,
            grace_seconds=2.0,
            clock=clock,
        ),
        images=QRImageResolver(file_host=fake_files, roster=fake_roster, render_dpi=50),  # type: ignore[arg-type]
    )
    yield svc
    await http.aclose()


@pytest.fixture()
async def client(services, _mock_auth):
    """Async httpx client wired to the FastAPI app with in-memory services."""
    with _mock_auth:
        from checkin_service.app import app

        # Reset rate limiter state between tests to avoid cross-test interference
        app.state.limiter.reset()
        app.state.services = services

        transport = ASGITransport(app=app)
        try:
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                yield ac
        finally:
            app.state.services = None


# ---------------------------------------------------------------------------
# Health endpoints
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_liveness_does_not_require_auth(self, client: AsyncClient):
        resp = await client.get("/liveness")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_readiness_ok(self, client: AsyncClient):
        resp = await client.get("/readiness")
        assert resp.status_code == 200

    async def test_readiness_bucket_down(self, client: AsyncClient, fake_objects):
        fake_objects.healthy = False
        resp = await client.get("/readiness")
        assert resp.status_code == 503
        assert "Upload bucket unavailable" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class TestMiddleware:
    async def test_missing_token_returns_401(self, client: AsyncClient):
        resp = await client.post("/v1/check-in", json={"studentId": "4"})
        assert resp.status_code == 401

    async def test_request_id_echoed(self, client: AsyncClient):
        resp = await client.get("/liveness", headers={"x-request-id": "req-123"})
        assert resp.headers["x-request-id"] == "req-123"

    async def test_request_id_generated(self, client: AsyncClient):
        resp = await client.get("/liveness")
        assert len(resp.headers["x-request-id"]) == 16

    async def test_oversized_body_returns_413(self, client: AsyncClient, auth_headers):
        headers = {**auth_headers, "content-length": str(50 * 1024 * 1024)}
        resp = await client.post("/v1/check-in", headers=headers, content=b"{}")
        assert resp.status_code == 413


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestStorage:
    async def test_presign_pdf(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/storage/presign",
            headers=auth_headers,
            json={"objectKey": "uploads/batch.pdf", "contentType": "application/pdf"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["objectKey"] == "uploads/batch.pdf"
        assert body["url"].startswith("https://storage.googleapis.com/test-bucket/uploads/batch.pdf")
        assert "X-Goog-Expires=1800" in body["url"]

    async def test_presign_rejects_non_pdf(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/storage/presign",
            headers=auth_headers,
            json={"objectKey": "notes.txt", "contentType": "text/plain"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Only PDF files are allowed"

    async def test_presign_rejects_path_traversal(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/storage/presign",
            headers=auth_headers,
            json={"objectKey": "../secrets.pdf", "contentType": "application/pdf"},
        )
        assert resp.status_code == 400

    async def test_clear_bucket(self, client: AsyncClient, auth_headers, fake_objects):
        fake_objects.objects = {"a.pdf": b"1", "b.pdf": b"2"}
        resp = await client.post("/v1/storage/clear", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 2, "message": "Deleted 2 files"}
        assert fake_objects.objects == {}


# ---------------------------------------------------------------------------
# Mass upload
# ---------------------------------------------------------------------------


class TestMassUpload:
    async def test_start_and_stream(self, client: AsyncClient, auth_headers, fake_objects, three_student_pdf):
        fake_objects.objects[SOURCE_KEY] = three_student_pdf
        resp = await client.post(
            "/v1/qr-codes/mass-upload",
            headers=auth_headers,
            json={"sourceObjectKey": SOURCE_KEY, "accessToken": "drive-token"},
        )
        assert resp.status_code == 202
        job_id = resp.json()["jobId"]

        stream = await client.get(
            "/v1/qr-codes/mass-upload/stream",
            params={"jobId": job_id, "token": TEST_TOKEN},
        )
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert stream.text.startswith("event: open\n")

        events = _sse_payloads(stream.text)
        final = events[-1]
        assert final["done"] is True
        assert final["progress"] == 100
        assert final["summary"] == {
            "totalStudentsInPdf": 3,
            "matchedStudents": 2,
            "successfulUploads": 2,
            "failedUploads": 1,
            "uploadedStudents": ["Alice Smith", "Bob Lee"],
            "failedStudents": ["Carol White"],
        }
        assert all("error" not in e for e in events)

    async def test_missing_drive_token(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/qr-codes/mass-upload",
            headers=auth_headers,
            json={"sourceObjectKey": SOURCE_KEY},
        )
        assert resp.status_code == 401
        assert "sign out and sign in again" in resp.json()["detail"]

    async def test_missing_object(self, client: AsyncClient, auth_headers, registry):
        resp = await client.post(
            "/v1/qr-codes/mass-upload",
            headers=auth_headers,
            json={"sourceObjectKey": "uploads/nope.pdf", "accessToken": "drive-token"},
        )
        assert resp.status_code == 404
        assert len(registry) == 0

    async def test_missing_source_key_is_validation_error(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/qr-codes/mass-upload",
            headers=auth_headers,
            json={"accessToken": "drive-token"},
        )
        assert resp.status_code == 422

    async def test_stream_unknown_job(self, client: AsyncClient, auth_headers):
        resp = await client.get("/v1/qr-codes/mass-upload/stream", params={"jobId": "nope"}, headers=auth_headers)
        assert resp.status_code == 404

    async def test_stream_without_job_id(self, client: AsyncClient, auth_headers):
        resp = await client.get("/v1/qr-codes/mass-upload/stream", headers=auth_headers)
        assert resp.status_code == 400

    async def test_stream_requires_auth(self, client: AsyncClient):
        resp = await client.get("/v1/qr-codes/mass-upload/stream", params={"jobId": "x"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Single check-in
# ---------------------------------------------------------------------------


class TestCheckIn:
    async def test_start_and_stream(self, client: AsyncClient, auth_headers):
        resp = await client.post("/v1/check-in", headers=auth_headers, json={"studentId": "4"})
        assert resp.status_code == 202
        job_id = resp.json()["jobId"]

        stream = await client.get("/v1/check-in/stream", params={"jobId": job_id}, headers=auth_headers)
        events = _sse_payloads(stream.text)
        assert events[-1]["done"] is True
        assert events[-1]["qrCode"] == "https://drive.google.com/file/d/dana-qr/view"

    async def test_check_in_job_not_visible_on_mass_upload_stream(self, client: AsyncClient, auth_headers):
        resp = await client.post("/v1/check-in", headers=auth_headers, json={"studentId": "4"})
        job_id = resp.json()["jobId"]
        stream = await client.get("/v1/qr-codes/mass-upload/stream", params={"jobId": job_id}, headers=auth_headers)
        assert stream.status_code == 404

    async def test_failure_is_streamed_as_error(self, client: AsyncClient, auth_headers):
        resp = await client.post("/v1/check-in", headers=auth_headers, json={"studentId": "999"})
        job_id = resp.json()["jobId"]

        stream = await client.get("/v1/check-in/stream", params={"jobId": job_id}, headers=auth_headers)
        events = _sse_payloads(stream.text)
        assert events[-1]["error"] == "Student 999 not found"
        assert "summary" not in events[-1]


# ---------------------------------------------------------------------------
# QR image
# ---------------------------------------------------------------------------


class TestQRImage:
    async def test_image_by_student_id(self, client: AsyncClient, auth_headers, fake_files):
        fake_files.hosted["dana-qr"] = DriveFile(
            file_id="dana-qr", name="d.png", mime_type="image/png", content=b"\x89PNG"
        )
        resp = await client.post("/v1/qr-image", headers=auth_headers, json={"studentId": "4"})
        assert resp.status_code == 200
        assert resp.json()["imageData"].startswith("data:image/png;base64,")

    async def test_requires_url_or_student(self, client: AsyncClient, auth_headers):
        resp = await client.post("/v1/qr-image", headers=auth_headers, json={})
        assert resp.status_code == 400

    async def test_student_without_qr(self, client: AsyncClient, auth_headers):
        resp = await client.post("/v1/qr-image", headers=auth_headers, json={"studentId": "2"})
        assert resp.status_code == 404

    async def test_unsupported_file_type(self, client: AsyncClient, auth_headers, fake_files):
        fake_files.hosted["txt"] = DriveFile(file_id="txt", name="a.txt", mime_type="text/plain", content=b"x")
        resp = await client.post(
            "/v1/qr-image",
            headers=auth_headers,
            json={"qrCodeUrl": "https://drive.google.com/file/d/txt/view"},
        )
        assert resp.status_code == 415

    async def test_missing_drive_file(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/v1/qr-image",
            headers=auth_headers,
            json={"qrCodeUrl": "https://drive.google.com/file/d/gone/view"},
        )
        assert resp.status_code == 404
