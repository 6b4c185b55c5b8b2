from __future__ import annotations

import argparse


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="checkin-qr-ingest",
        description="Run a mass QR-code upload job for a PDF already in the upload bucket",
    )

    p.add_argument("object_key", help="Object key of the source PDF in CHECKIN_UPLOAD_BUCKET")
    p.add_argument(
        "--access-token",
        default=None,
        help="Drive OAuth access token (default from env CHECKIN_DRIVE_ACCESS_TOKEN)",
    )
    p.add_argument(
        "--refresh-token",
        default=None,
        help="Drive OAuth refresh token (default from env CHECKIN_DRIVE_REFRESH_TOKEN)",
    )
    p.add_argument(
        "--pages-per-student",
        type=int,
        default=None,
        help="Override CHECKIN_PAGES_PER_STUDENT (0 = split at every marker page)",
    )
    p.add_argument(
        "--format",
        choices=("png", "pdf"),
        default=None,
        help="Override CHECKIN_QR_UPLOAD_FORMAT",
    )
    p.add_argument("--keep-source", action="store_true", help="Do not delete the PDF afterwards")
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Segment and match only; no uploads and no roster writes",
    )
    p.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")
    return p
