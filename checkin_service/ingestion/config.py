from __future__ import annotations

import os
from dataclasses import dataclass


def _get_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "t", "yes", "y", "on")


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    return int(v)


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    return float(v)


_UPLOAD_FORMATS = ("png", "pdf")


@dataclass(frozen=True)
class IngestConfig:
    # Drive
    qr_folder_id: str

    # Segmentation
    marker: str  # label preceding the identifier, e.g. "UUID:"
    pages_per_student: int  # 0 = start a new segment at every marker page
    upload_format: str  # png|pdf
    render_dpi: int

    # Matching
    reject_ambiguous: bool

    # Job lifecycle
    subscribe_grace_seconds: float
    delete_source_after_job: bool

    @classmethod
    def from_env(cls) -> IngestConfig:
        return cls(
            qr_folder_id=os.getenv("CHECKIN_QR_FOLDER_ID", ""),
            marker=os.getenv("CHECKIN_SEGMENT_MARKER", "UUID:"),
            pages_per_student=_get_int("CHECKIN_PAGES_PER_STUDENT", 1),
            upload_format=os.getenv("CHECKIN_QR_UPLOAD_FORMAT", "png").strip().lower(),
            render_dpi=_get_int("CHECKIN_RENDER_DPI", 150),
            reject_ambiguous=_get_bool("CHECKIN_MATCH_REJECT_AMBIGUOUS", False),
            subscribe_grace_seconds=_get_float("CHECKIN_SUBSCRIBE_GRACE_SECONDS", 5.0),
            delete_source_after_job=_get_bool("CHECKIN_DELETE_SOURCE_AFTER_JOB", True),
        )

    def validate(self) -> None:
        if not self.qr_folder_id:
            raise ValueError("CHECKIN_QR_FOLDER_ID is required")
        if not self.marker.strip():
            raise ValueError("CHECKIN_SEGMENT_MARKER must not be blank")
        if self.pages_per_student < 0:
            raise ValueError("CHECKIN_PAGES_PER_STUDENT must be >= 0")
        if self.upload_format not in _UPLOAD_FORMATS:
            raise ValueError(
                f"CHECKIN_QR_UPLOAD_FORMAT must be one of: {', '.join(_UPLOAD_FORMATS)}"
            )
        if self.render_dpi < 36:
            raise ValueError("CHECKIN_RENDER_DPI must be >= 36")
        if self.subscribe_grace_seconds < 0:
            raise ValueError("CHECKIN_SUBSCRIBE_GRACE_SECONDS must be >= 0")
