"""Unit test conftest: in-memory stand-ins for Sheets, Drive and the bucket."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pytest

from checkin_service.google_api import GoogleApiError
from checkin_service.ingestion.config import IngestConfig
from checkin_service.jobs.batch import BatchJobController
from checkin_service.jobs.registry import JobRegistry
from checkin_service.jobs.stream import ProgressStream
from checkin_service.stores.file_host import (
    ALLOWED_MIME_TYPES,
    DriveAuthError,
    DriveCredentials,
    DriveFile,
    UnsupportedMimeTypeError,
    UploadMetadata,
    extract_drive_file_id,
    public_url,
)
from checkin_service.stores.roster_store import apply_qr_links


class FakeRosterStore:
    """Two in-memory tables with the SheetsRosterStore interface."""

    def __init__(self, students: list[list[str]], qr_rows: list[list[str]] | None = None) -> None:
        self.students = [list(r) for r in students]
        self.qr_rows = [list(r) for r in (qr_rows or [["Student ID", "QR Code URL"]])]
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None
        self.student_reads = 0
        self.student_writes = 0
        self.cell_writes = 0
        self.qr_writes = 0

    async def read_students(self) -> list[list[str]]:
        self.student_reads += 1
        if self.read_error is not None:
            raise self.read_error
        return [list(r) for r in self.students]

    async def write_students(self, rows: list[list[str]]) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.student_writes += 1
        self.students = [list(r) for r in rows]

    async def update_student_cell(self, row_index: int, column: int, value: str) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.cell_writes += 1
        row = self.students[row_index]
        if len(row) <= column:
            row.extend([""] * (column + 1 - len(row)))
        row[column] = value

    async def read_qr_codes(self) -> list[list[str]]:
        return [list(r) for r in self.qr_rows]

    async def write_qr_codes(self, rows: list[list[str]]) -> None:
        self.qr_writes += 1
        self.qr_rows = [list(r) for r in rows]

    async def find_qr_code(self, student_id: str) -> str | None:
        for row in self.qr_rows:
            if row and row[0] == student_id and len(row) > 1 and row[1]:
                return row[1]
        return None

    async def upsert_qr_codes(self, links: dict[str, str]) -> dict[str, str]:
        rows = await self.read_qr_codes()
        actions = apply_qr_links(rows, links)
        await self.write_qr_codes(rows)
        return actions


class FakeObjectStore:
    bucket_name = "test-bucket"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.download_error: Exception | None = None
        self.healthy = True

    def presign_put(self, name: str, *, content_type: str, ttl_seconds: int) -> str:
        return f"https://storage.googleapis.com/{self.bucket_name}/{name}?X-Goog-Expires={ttl_seconds}"

    def exists(self, name: str) -> bool:
        return name in self.objects

    def download(self, name: str) -> bytes:
        if self.download_error is not None:
            raise self.download_error
        return self.objects[name]

    def delete(self, name: str) -> None:
        self.objects.pop(name, None)
        self.deleted.append(name)

    def clear(self) -> int:
        count = len(self.objects)
        self.deleted.extend(self.objects)
        self.objects.clear()
        return count

    def check_bucket(self) -> bool:
        return self.healthy


@dataclass
class FakeFileHost:
    """Drive stand-in that enforces the MIME allow-list like the real one."""

    uploads: list[dict[str, Any]] = field(default_factory=list)
    failing_student_ids: set[str] = field(default_factory=set)
    auth_error: bool = False
    on_upload: Callable[[UploadMetadata], None] | None = None
    hosted: dict[str, DriveFile] = field(default_factory=dict)

    async def upload(
        self,
        content: bytes,
        *,
        mime_type: str,
        folder_id: str,
        filename: str,
        metadata: UploadMetadata,
        credentials: DriveCredentials,
    ) -> str:
        if mime_type not in ALLOWED_MIME_TYPES:
            raise UnsupportedMimeTypeError("Only PDF and image files are allowed")
        if self.auth_error:
            raise DriveAuthError("Authentication failed. Please sign out and sign in again.")
        if metadata.student_id in self.failing_student_ids:
            raise GoogleApiError("Uploading failed with status 500: backendError", status_code=500)
        file_id = f"qr-{metadata.student_id}"
        self.uploads.append(
            {
                "content": content,
                "mime_type": mime_type,
                "folder_id": folder_id,
                "filename": filename,
                "metadata": metadata,
            }
        )
        if self.on_upload is not None:
            self.on_upload(metadata)
        return public_url(file_id)

    async def fetch(self, url: str) -> DriveFile:
        file_id = extract_drive_file_id(url)
        if file_id is None or file_id not in self.hosted:
            raise GoogleApiError("Reading file metadata failed with status 404", status_code=404)
        return self.hosted[file_id]


@pytest.fixture
def make_qr_pdf() -> Callable[[list[list[str]]], bytes]:
    """Build a PDF where each inner list is the text lines of one page."""
    fpdf = pytest.importorskip("fpdf")

    def _make(pages: list[list[str]]) -> bytes:
        pdf = fpdf.FPDF()
        pdf.set_font("Helvetica", size=14)
        for lines in pages:
            pdf.add_page()
            for line in lines:
                pdf.cell(text=line)
                pdf.ln()
        return bytes(pdf.output())

    return _make


@pytest.fixture
def three_student_pdf(make_qr_pdf: Callable[[list[list[str]]], bytes]) -> bytes:
    return make_qr_pdf(
        [
            ["Math Center QR Code", "UUID: 1", "Alice Smith"],
            ["Math Center QR Code", "UUID: 2", "Bob Lee"],
            ["Math Center QR Code", "UUID: 3", "Carol White"],
        ]
    )


@pytest.fixture
def fake_roster(roster_rows: list[list[str]]) -> FakeRosterStore:
    return FakeRosterStore(roster_rows)


@pytest.fixture
def fake_objects() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def fake_files() -> FakeFileHost:
    return FakeFileHost()


@pytest.fixture
def ingest_cfg() -> IngestConfig:
    return IngestConfig(
        qr_folder_id="qr-folder",
        marker="UUID:",
        pages_per_student=1,
        upload_format="png",
        render_dpi=50,
        reject_ambiguous=False,
        subscribe_grace_seconds=2.0,
        delete_source_after_job=True,
    )


@pytest.fixture
async def registry() -> AsyncIterator[JobRegistry]:
    reg = JobRegistry()
    yield reg
    await reg.shutdown()


@pytest.fixture
def progress_stream(registry: JobRegistry) -> ProgressStream:
    return ProgressStream(registry, keepalive_seconds=5.0)


@pytest.fixture
def drive_credentials() -> DriveCredentials:
    return DriveCredentials(access_token="user-access-token", refresh_token="user-refresh-token")


@pytest.fixture
def batch_controller(
    ingest_cfg: IngestConfig,
    fake_objects: FakeObjectStore,
    fake_roster: FakeRosterStore,
    fake_files: FakeFileHost,
    registry: JobRegistry,
    clock: Callable[[], datetime],
) -> BatchJobController:
    return BatchJobController(
        cfg=ingest_cfg,
        object_store=fake_objects,  # type: ignore[arg-type]
        roster=fake_roster,  # type: ignore[arg-type]
        file_host=fake_files,  # type: ignore[arg-type]
        registry=registry,
        clock=clock,
    )


@pytest.fixture
def wait_for_job(registry: JobRegistry) -> Callable[[str], Any]:
    """Await until a job has left the registry (i.e. published its terminal event)."""

    async def _wait(job_id: str, timeout: float = 10.0) -> None:
        async def _poll() -> None:
            while job_id in registry:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _wait
