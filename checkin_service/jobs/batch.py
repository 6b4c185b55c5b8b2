"""Mass QR-code upload job.

One job takes a multi-student PDF from the upload bucket to Drive-hosted
per-student images linked from the roster:

    download -> segment -> roster snapshot -> per segment:
    match -> render -> upload -> one batched roster write -> summary

Per-student problems (no marker, no roster match, a failed upload) are
tallied and the job still completes. Problems that affect every student
(PDF unreadable, roster unreadable or missing headers, Drive auth
rejected, the final roster write failing) fail the job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

import httpx

from checkin_service.google_api import GoogleApiError
from checkin_service.ingestion.config import IngestConfig
from checkin_service.ingestion.matcher import RosterHeaderError, RosterSnapshot, StudentMatcher
from checkin_service.ingestion.segmenter import PdfSegmentationError, PdfSegmenter, SegmentedPdf
from checkin_service.ingestion.types import BatchTally, MatchResult, MatchStatus, Segment, StudentOutcome
from checkin_service.jobs.registry import Job, JobFailure, JobRegistry
from checkin_service.models import BatchSummary
from checkin_service.stores.file_host import (
    DriveAuthError,
    DriveCredentials,
    DriveFileHost,
    UploadMetadata,
    sanitize_filename_part,
)
from checkin_service.stores.object_store import GcsObjectStore
from checkin_service.stores.roster_store import SheetsRosterStore

logger = logging.getLogger(__name__)

JOB_KIND = "mass_upload"

# Progress checkpoints
_P_DOWNLOAD = 2
_P_SEGMENT = 5
_P_ROSTER = 8
_P_SEGMENTS_START = 10
_P_SEGMENTS_END = 90
_P_PERSIST = 92

_ROSTER_ERRORS = (GoogleApiError, httpx.HTTPError)


def _now() -> datetime:
    return datetime.now(UTC)


class SourceObjectNotFoundError(LookupError):
    pass


class BatchJobController:
    def __init__(
        self,
        *,
        cfg: IngestConfig,
        object_store: GcsObjectStore,
        roster: SheetsRosterStore,
        file_host: DriveFileHost,
        registry: JobRegistry,
        segmenter: PdfSegmenter | None = None,
        matcher: StudentMatcher | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._cfg = cfg
        self._objects = object_store
        self._roster = roster
        self._files = file_host
        self._registry = registry
        self._segmenter = segmenter or PdfSegmenter(
            marker=cfg.marker,
            pages_per_student=cfg.pages_per_student,
            render_dpi=cfg.render_dpi,
        )
        self._matcher = matcher or StudentMatcher(reject_ambiguous=cfg.reject_ambiguous)
        self._clock = clock

    @property
    def segmenter(self) -> PdfSegmenter:
        return self._segmenter

    @property
    def matcher(self) -> StudentMatcher:
        return self._matcher

    async def start(self, source_object_key: str, credentials: DriveCredentials) -> str:
        """Accept a job for an uploaded PDF and return its id without waiting.

        Raises:
            SourceObjectNotFoundError: nothing is stored under ``source_object_key``.
        """
        if not await asyncio.to_thread(self._objects.exists, source_object_key):
            raise SourceObjectNotFoundError(f"No uploaded file found for {source_object_key}")

        job = self._registry.create(JOB_KIND, source_object_key=source_object_key)

        async def work(j: Job) -> None:
            await self.run(j, credentials)

        self._registry.spawn(job, work, grace_seconds=self._cfg.subscribe_grace_seconds)
        return job.job_id

    async def run(self, job: Job, credentials: DriveCredentials) -> None:
        key = job.source_object_key or ""
        log_extra = {"job_id": job.job_id}

        job.emit("Downloading PDF...", progress=_P_DOWNLOAD)
        try:
            data = await asyncio.to_thread(self._objects.download, key)
        except Exception as e:
            raise JobFailure(f"Could not fetch uploaded PDF: {e}") from e

        job.emit("Splitting PDF into student pages...", progress=_P_SEGMENT)
        try:
            pdf = await asyncio.to_thread(self._segmenter.open, data)
        except PdfSegmentationError as e:
            raise JobFailure(str(e)) from e

        with pdf:
            total = len(pdf)
            logger.info(
                "PDF %s: %d pages, %d segments", key, pdf.page_count, total, extra=log_extra
            )

            job.emit(f"Found {total} students in PDF. Loading roster...", progress=_P_ROSTER)
            snapshot = await self._read_roster()

            tally = BatchTally(total=total)
            for index in range(total):
                segment = await asyncio.to_thread(pdf.segment, index)
                match, outcome = await self._process_segment(pdf, segment, snapshot, credentials)
                if match.matched:
                    tally.matched += 1
                tally.record(outcome)

                done = index + 1
                progress = _P_SEGMENTS_START + (_P_SEGMENTS_END - _P_SEGMENTS_START) * done // total
                job.emit(f"Processed {done} of {total}: {outcome.name}", progress=progress)

        if tally.uploaded:
            job.emit("Saving QR code links to roster...", progress=_P_PERSIST)
            await self._persist(tally)

        summary = BatchSummary(
            total_students_in_pdf=tally.total,
            matched_students=tally.matched,
            successful_uploads=len(tally.uploaded),
            failed_uploads=len(tally.failed),
            uploaded_students=[o.name for o in tally.uploaded],
            failed_students=[o.name for o in tally.failed],
        )
        logger.info(
            "Batch %s done: total=%d matched=%d uploaded=%d failed=%d",
            job.job_id,
            summary.total_students_in_pdf,
            summary.matched_students,
            summary.successful_uploads,
            summary.failed_uploads,
            extra=log_extra,
        )

        if self._cfg.delete_source_after_job:
            await self._delete_source(key)

        job.complete(
            f"Processed {tally.total} students: {summary.successful_uploads} uploaded, "
            f"{summary.failed_uploads} failed",
            summary=summary,
        )

    async def _read_roster(self) -> RosterSnapshot:
        try:
            return RosterSnapshot(await self._roster.read_students())
        except RosterHeaderError as e:
            raise JobFailure(str(e)) from e
        except _ROSTER_ERRORS as e:
            raise JobFailure(f"Could not read student roster: {e}") from e

    async def _process_segment(
        self,
        pdf: SegmentedPdf,
        segment: Segment,
        snapshot: RosterSnapshot,
        credentials: DriveCredentials,
    ) -> tuple[MatchResult, StudentOutcome]:
        name = segment.display_name
        match = self._matcher.match(segment.token, snapshot)

        if match.status is MatchStatus.UNMATCHED:
            reason = "No student marker found" if segment.token is None else "No matching student in roster"
            if segment.token is not None:
                logger.info("No roster match for %s (identifier %s)", name, segment.token.identifier or "-")
            return match, StudentOutcome(name=name, status="unmatched", error_message=reason)
        if match.status is MatchStatus.AMBIGUOUS:
            return match, StudentOutcome(
                name=name,
                status="ambiguous",
                error_message=f"{len(match.candidates)} roster rows share this name",
            )

        student_id = match.student_id or ""
        full_name = match.full_name or name
        try:
            rendered = await asyncio.to_thread(
                pdf.render, segment, output_format=self._cfg.upload_format
            )
            url = await self._files.upload(
                rendered.content,
                mime_type=rendered.mime_type,
                folder_id=self._cfg.qr_folder_id,
                filename=self._filename(student_id, full_name, rendered.extension),
                metadata=UploadMetadata(student_id=student_id, full_name=full_name),
                credentials=credentials,
            )
        except DriveAuthError as e:
            raise JobFailure(str(e)) from e
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            logger.warning("Upload failed for %s (%s): %s", full_name, student_id, err)
            return match, StudentOutcome(
                name=full_name,
                status="upload_failed",
                student_id=student_id,
                row_index=match.row_index,
                error_message=err,
            )

        return match, StudentOutcome(
            name=full_name,
            status="uploaded",
            student_id=student_id,
            row_index=match.row_index,
            public_url=url,
        )

    async def _persist(self, tally: BatchTally) -> None:
        """Re-read the roster, link every upload by student id, write both tables once."""
        fresh = await self._read_roster()

        persisted: list[StudentOutcome] = []
        links: dict[str, str] = {}
        for outcome in tally.uploaded:
            row = fresh.find_by_student_id(outcome.student_id or "", hint=outcome.row_index)
            if row is None:
                logger.warning("Student %s left the roster during the job", outcome.student_id)
                tally.failed.append(
                    replace(outcome, status="not_persisted", error_message="Student no longer in roster")
                )
                continue
            fresh.set_cell(row, fresh.columns.qr_code, outcome.public_url or "")
            links[outcome.student_id or ""] = outcome.public_url or ""
            persisted.append(replace(outcome, row_index=row))

        try:
            if persisted:
                await self._roster.write_students(fresh.rows)
                actions = await self._roster.upsert_qr_codes(links)
                logger.info(
                    "QR table: %d added, %d updated",
                    sum(1 for a in actions.values() if a == "added"),
                    sum(1 for a in actions.values() if a == "updated"),
                )
        except _ROSTER_ERRORS as e:
            raise JobFailure(f"Failed to save QR code links to roster: {e}") from e

        tally.uploaded = persisted

    async def _delete_source(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._objects.delete, key)
        except Exception:
            logger.warning("Could not delete processed upload %s", key, exc_info=True)

    def _filename(self, student_id: str, full_name: str, extension: str) -> str:
        stamp = self._clock().strftime("%Y%m%dT%H%M%S")
        return f"{sanitize_filename_part(student_id)}_{sanitize_filename_part(full_name)}_QR_{stamp}{extension}"
