from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


@dataclass(frozen=True)
class SegmentToken:
    """Text pulled from a marker page.

    Matching uses ``name`` only; ``identifier`` is carried for logs and reports.
    """

    identifier: str | None  # text after the marker on the marker line
    name: str | None  # next non-blank line after the marker line
    marker_line: str


@dataclass(frozen=True)
class Segment:
    index: int  # 0-based position in the source PDF
    first_page: int  # 0-based, inclusive
    last_page: int  # 0-based, inclusive
    token: SegmentToken | None
    marker_page: int | None = None

    @property
    def page_range(self) -> range:
        return range(self.first_page, self.last_page + 1)

    @property
    def display_name(self) -> str:
        if self.token is not None and self.token.name:
            return self.token.name
        if self.first_page == self.last_page:
            return f"Unreadable segment (page {self.first_page + 1})"
        return f"Unreadable segment (pages {self.first_page + 1}-{self.last_page + 1})"


@dataclass(frozen=True)
class RenderedSegment:
    content: bytes
    mime_type: str
    extension: str


class MatchStatus(StrEnum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    query_name: str | None
    student_id: str | None = None
    full_name: str | None = None
    row_index: int | None = None  # header row is 0, data rows start at 1
    candidates: tuple[int, ...] = ()

    @property
    def matched(self) -> bool:
        return self.status is MatchStatus.MATCHED


@dataclass(frozen=True)
class StudentOutcome:
    name: str
    status: str  # uploaded|unmatched|ambiguous|upload_failed|not_persisted
    student_id: str | None = None
    row_index: int | None = None
    public_url: str | None = None
    error_message: str | None = None


@dataclass
class BatchTally:
    total: int = 0
    matched: int = 0
    uploaded: list[StudentOutcome] = field(default_factory=list)
    failed: list[StudentOutcome] = field(default_factory=list)

    def record(self, outcome: StudentOutcome) -> None:
        if outcome.status == "uploaded":
            self.uploaded.append(outcome)
        else:
            self.failed.append(outcome)
