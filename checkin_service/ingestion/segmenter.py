"""Split a multi-student QR-code PDF into per-student segments.

Each student's sub-document carries a labeled identifier line such as
``UUID: 1042`` followed by the student's display name on the next
non-blank line. Boundaries come either from a fixed page count per
student or from the marker itself (every marker page starts a segment).
"""

from __future__ import annotations

import io
import logging
from collections.abc import Iterator
from types import TracebackType

import fitz  # PyMuPDF
from pypdf import PdfReader, PdfWriter

from checkin_service.ingestion.types import RenderedSegment, Segment, SegmentToken

logger = logging.getLogger(__name__)


class PdfSegmentationError(RuntimeError):
    """The source PDF could not be opened at all."""


def extract_token(text: str, marker: str) -> SegmentToken | None:
    """Find the marker line and the name line that follows it.

    Returns None when the marker does not appear in ``text``.
    """
    if not text:
        return None
    needle = marker.strip().lower()
    lines = [line.strip() for line in text.splitlines()]

    for i, line in enumerate(lines):
        pos = line.lower().find(needle)
        if pos == -1:
            continue
        identifier = line[pos + len(needle) :].strip() or None
        name = next((candidate for candidate in lines[i + 1 :] if candidate), None)
        return SegmentToken(identifier=identifier, name=name, marker_line=line)

    return None


class SegmentedPdf:
    """A source PDF with its segment boundaries planned.

    Page text is extracted on demand and cached; iterating yields one
    ``Segment`` at a time so large PDFs are never fully parsed up front
    in fixed-size mode.
    """

    def __init__(self, data: bytes, *, marker: str, pages_per_student: int, render_dpi: int) -> None:
        try:
            self._reader = PdfReader(io.BytesIO(data))
            self._page_count = len(self._reader.pages)
        except Exception as e:
            raise PdfSegmentationError(f"Could not read PDF: {e}") from e

        self._data = data
        self._marker = marker
        self._pages_per_student = pages_per_student
        self._render_dpi = render_dpi
        self._page_texts: dict[int, str] = {}
        self._fitz_doc: fitz.Document | None = None
        self._ranges = self._plan_ranges()

    @property
    def page_count(self) -> int:
        return self._page_count

    def __len__(self) -> int:
        return len(self._ranges)

    def __iter__(self) -> Iterator[Segment]:
        for index in range(len(self._ranges)):
            yield self.segment(index)

    def __enter__(self) -> SegmentedPdf:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._fitz_doc is not None:
            self._fitz_doc.close()
            self._fitz_doc = None

    def page_text(self, page_index: int) -> str:
        if page_index not in self._page_texts:
            try:
                text = self._reader.pages[page_index].extract_text() or ""
            except Exception as e:
                logger.warning("Text extraction failed on page %d: %s", page_index + 1, e)
                text = ""
            self._page_texts[page_index] = text.replace("\x00", "")
        return self._page_texts[page_index]

    def segment(self, index: int) -> Segment:
        first, last = self._ranges[index]
        for page in range(first, last + 1):
            token = extract_token(self.page_text(page), self._marker)
            if token is not None:
                return Segment(
                    index=index,
                    first_page=first,
                    last_page=last,
                    token=token,
                    marker_page=page,
                )
        return Segment(index=index, first_page=first, last_page=last, token=None)

    def render(self, segment: Segment, *, output_format: str = "png") -> RenderedSegment:
        """Produce the uploadable artifact for a segment."""
        if output_format == "pdf":
            return RenderedSegment(
                content=self._extract_pdf(segment),
                mime_type="application/pdf",
                extension=".pdf",
            )
        return RenderedSegment(
            content=self._render_png(segment),
            mime_type="image/png",
            extension=".png",
        )

    def _render_png(self, segment: Segment) -> bytes:
        if self._fitz_doc is None:
            self._fitz_doc = fitz.open(stream=self._data, filetype="pdf")
        page_index = segment.marker_page if segment.marker_page is not None else segment.first_page
        pix = self._fitz_doc[page_index].get_pixmap(dpi=self._render_dpi)
        return pix.tobytes("png")

    def _extract_pdf(self, segment: Segment) -> bytes:
        writer = PdfWriter()
        for page in segment.page_range:
            writer.add_page(self._reader.pages[page])
        buf = io.BytesIO()
        writer.write(buf)
        return buf.getvalue()

    def _plan_ranges(self) -> list[tuple[int, int]]:
        if self._page_count == 0:
            return []

        if self._pages_per_student > 0:
            step = self._pages_per_student
            return [
                (start, min(start + step, self._page_count) - 1)
                for start in range(0, self._page_count, step)
            ]

        # Marker mode needs every page's text to find the boundaries
        starts = [
            page
            for page in range(self._page_count)
            if extract_token(self.page_text(page), self._marker) is not None
        ]
        if not starts or starts[0] != 0:
            starts.insert(0, 0)
        ends = [s - 1 for s in starts[1:]] + [self._page_count - 1]
        return list(zip(starts, ends, strict=True))


class PdfSegmenter:
    def __init__(self, *, marker: str = "UUID:", pages_per_student: int = 1, render_dpi: int = 150) -> None:
        self._marker = marker
        self._pages_per_student = max(0, int(pages_per_student))
        self._render_dpi = render_dpi

    def open(self, data: bytes) -> SegmentedPdf:
        if not data:
            raise PdfSegmentationError("Source PDF is empty")
        return SegmentedPdf(
            data,
            marker=self._marker,
            pages_per_student=self._pages_per_student,
            render_dpi=self._render_dpi,
        )
