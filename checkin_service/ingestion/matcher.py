"""Resolve extracted student names against a roster snapshot.

The roster is a 2-D table with the header row at index 0. Columns are
located by header name (case-insensitive, trimmed, first occurrence wins);
missing required headers fail the whole job once rather than per row.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from functools import cached_property

from checkin_service.ingestion.types import MatchResult, MatchStatus, SegmentToken

HEADER_FIRST_NAME = "first name"
HEADER_LAST_NAME = "last name"
HEADER_STUDENT_ID = "student id"
HEADER_QR_CODE = "qr code"
HEADER_CENTER = "center"
HEADER_LAST_ATTENDANCE = "last attendance date"

REQUIRED_HEADERS = (HEADER_FIRST_NAME, HEADER_LAST_NAME, HEADER_STUDENT_ID, HEADER_QR_CODE)

# Sheet column AX; older rosters keep "Center" there even when the header
# text appears again further left.
LEGACY_CENTER_COLUMN = 49


class RosterHeaderError(ValueError):
    """The roster is empty or is missing required header columns."""


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(value.split()).casefold()


def find_header(header_row: Sequence[object], name: str) -> int | None:
    wanted = name.strip().lower()
    for i, cell in enumerate(header_row):
        if isinstance(cell, str) and cell.strip().lower() == wanted:
            return i
    return None


@dataclass(frozen=True)
class RosterColumns:
    first_name: int
    last_name: int
    student_id: int
    qr_code: int
    center: int | None
    last_attendance: int | None

    @classmethod
    def from_header(cls, header_row: Sequence[object]) -> RosterColumns:
        found = {name: find_header(header_row, name) for name in REQUIRED_HEADERS}
        missing = [name for name, idx in found.items() if idx is None]
        if missing:
            raise RosterHeaderError(
                f"Required columns not found in student data: {', '.join(missing)}"
            )

        center = None
        if len(header_row) > LEGACY_CENTER_COLUMN:
            legacy = header_row[LEGACY_CENTER_COLUMN]
            if isinstance(legacy, str) and legacy.strip().lower() == HEADER_CENTER:
                center = LEGACY_CENTER_COLUMN
        if center is None:
            center = find_header(header_row, HEADER_CENTER)

        return cls(
            first_name=found[HEADER_FIRST_NAME],  # type: ignore[arg-type]
            last_name=found[HEADER_LAST_NAME],  # type: ignore[arg-type]
            student_id=found[HEADER_STUDENT_ID],  # type: ignore[arg-type]
            qr_code=found[HEADER_QR_CODE],  # type: ignore[arg-type]
            center=center,
            last_attendance=find_header(header_row, HEADER_LAST_ATTENDANCE),
        )


class RosterSnapshot:
    """One read of the student table, with header columns resolved."""

    def __init__(self, rows: Sequence[Sequence[object]]) -> None:
        if not rows:
            raise RosterHeaderError("No student data available")
        self.rows: list[list[str]] = [["" if c is None else str(c) for c in row] for row in rows]
        self.columns = RosterColumns.from_header(self.rows[0])

    def __len__(self) -> int:
        return max(0, len(self.rows) - 1)

    def data_rows(self) -> Iterator[tuple[int, list[str]]]:
        for i in range(1, len(self.rows)):
            yield i, self.rows[i]

    def cell(self, row_index: int, column: int | None) -> str:
        if column is None:
            return ""
        row = self.rows[row_index]
        return row[column].strip() if column < len(row) else ""

    def set_cell(self, row_index: int, column: int, value: str) -> None:
        row = self.rows[row_index]
        if len(row) <= column:
            row.extend([""] * (column + 1 - len(row)))
        row[column] = value

    def full_name(self, row_index: int) -> str:
        first = self.cell(row_index, self.columns.first_name)
        last = self.cell(row_index, self.columns.last_name)
        return f"{first} {last}".strip()

    def student_id(self, row_index: int) -> str:
        return self.cell(row_index, self.columns.student_id)

    def find_by_student_id(self, student_id: str, *, hint: int | None = None) -> int | None:
        """Locate a student's row, preferring ``hint`` if it still holds that id."""
        wanted = student_id.strip()
        if not wanted:
            return None
        if hint is not None and 0 < hint < len(self.rows) and self.student_id(hint) == wanted:
            return hint
        for i, _ in self.data_rows():
            if self.student_id(i) == wanted:
                return i
        return None

    @cached_property
    def name_index(self) -> dict[str, list[int]]:
        index: dict[str, list[int]] = {}
        for i, _ in self.data_rows():
            key = normalize_name(self.full_name(i))
            if key:
                index.setdefault(key, []).append(i)
        return index


class StudentMatcher:
    def __init__(self, *, reject_ambiguous: bool = False) -> None:
        self._reject_ambiguous = reject_ambiguous

    def match(self, token: SegmentToken | None, snapshot: RosterSnapshot) -> MatchResult:
        query = token.name if token is not None else None
        key = normalize_name(query)
        if not key:
            return MatchResult(status=MatchStatus.UNMATCHED, query_name=query)

        rows = snapshot.name_index.get(key, [])
        if not rows:
            return MatchResult(status=MatchStatus.UNMATCHED, query_name=query)

        if len(rows) > 1 and self._reject_ambiguous:
            return MatchResult(
                status=MatchStatus.AMBIGUOUS,
                query_name=query,
                candidates=tuple(rows),
            )

        row_index = rows[0]
        return MatchResult(
            status=MatchStatus.MATCHED,
            query_name=query,
            student_id=snapshot.student_id(row_index),
            full_name=snapshot.full_name(row_index),
            row_index=row_index,
            candidates=tuple(rows),
        )
