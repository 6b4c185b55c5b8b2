"""Turn a stored QR code reference into something an <img> tag can show."""

from __future__ import annotations

import asyncio
import base64
import logging

import fitz  # PyMuPDF

from checkin_service.ingestion.matcher import RosterSnapshot
from checkin_service.models import QRImageResponse
from checkin_service.stores.file_host import DriveFileHost, UnsupportedMimeTypeError
from checkin_service.stores.roster_store import SheetsRosterStore

logger = logging.getLogger(__name__)


class QRCodeNotFoundError(LookupError):
    pass


def render_pdf_page_png(data: bytes, *, dpi: int = 150, page_index: int = 0) -> bytes:
    with fitz.open(stream=data, filetype="pdf") as doc:
        if doc.page_count == 0:
            raise ValueError("PDF has no pages")
        return doc[page_index].get_pixmap(dpi=dpi).tobytes("png")


def png_data_url(data: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(data).decode('ascii')}"


class QRImageResolver:
    def __init__(
        self,
        *,
        file_host: DriveFileHost,
        roster: SheetsRosterStore,
        render_dpi: int = 150,
    ) -> None:
        self._files = file_host
        self._roster = roster
        self._dpi = render_dpi

    async def resolve(
        self,
        *,
        qr_code_url: str | None = None,
        student_id: str | None = None,
    ) -> QRImageResponse:
        """Fetch the hosted QR file and return it as a base64 data URL.

        Images pass through unchanged; PDFs are rendered to PNG (first page).

        Raises:
            ValueError: neither a URL nor a student id was given.
            QRCodeNotFoundError: the student has no QR code on file.
            UnsupportedMimeTypeError: the hosted file is neither an image nor a PDF.
        """
        url = (qr_code_url or "").strip()
        if not url:
            if not student_id or not student_id.strip():
                raise ValueError("Either qrCodeUrl or studentId is required")
            url = await self._lookup(student_id.strip())

        if url.startswith("data:image/"):
            return QRImageResponse(image_data=url, qr_code_url=url, source_mime_type=url[5:].split(";", 1)[0])

        hosted = await self._files.fetch(url)
        if hosted.mime_type.startswith("image/"):
            return QRImageResponse(
                image_data=hosted.as_data_url(),
                qr_code_url=url,
                source_mime_type=hosted.mime_type,
            )
        if hosted.mime_type == "application/pdf":
            png = await asyncio.to_thread(render_pdf_page_png, hosted.content, dpi=self._dpi)
            logger.info("Rendered PDF QR code %s to PNG (%d bytes)", hosted.file_id, len(png))
            return QRImageResponse(
                image_data=png_data_url(png),
                qr_code_url=url,
                source_mime_type=hosted.mime_type,
            )
        raise UnsupportedMimeTypeError(f"Unsupported file type: {hosted.mime_type or 'unknown'}")

    async def _lookup(self, student_id: str) -> str:
        url = await self._roster.find_qr_code(student_id)
        if url:
            return url
        snapshot = RosterSnapshot(await self._roster.read_students())
        row = snapshot.find_by_student_id(student_id)
        if row is not None:
            url = snapshot.cell(row, snapshot.columns.qr_code)
            if url:
                return url
        raise QRCodeNotFoundError(f"No QR code found for student {student_id}")
