"""Remote check-in for one student, streamed like a batch job."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

import httpx

from checkin_service.google_api import GoogleApiError, request_with_retry
from checkin_service.ingestion.matcher import RosterHeaderError, RosterSnapshot, normalize_name
from checkin_service.jobs.registry import Job, JobFailure, JobRegistry
from checkin_service.stores.roster_store import SheetsRosterStore

logger = logging.getLogger(__name__)

JOB_KIND = "check_in"

_ROSTER_ERRORS = (GoogleApiError, httpx.HTTPError)


def _now() -> datetime:
    return datetime.now(UTC)


class SingleCheckInJobController:
    def __init__(
        self,
        *,
        roster: SheetsRosterStore,
        registry: JobRegistry,
        http: httpx.AsyncClient,
        webhook_url: str | None = None,
        date_format: str = "%m/%d/%Y",
        grace_seconds: float = 0.0,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._roster = roster
        self._registry = registry
        self._http = http
        self._webhook_url = webhook_url
        self._date_format = date_format
        self._grace = grace_seconds
        self._clock = clock

    async def start(
        self,
        student_id: str,
        *,
        qr_code_url: str | None = None,
        region: str | None = None,
    ) -> str:
        student_id = student_id.strip()
        if not student_id:
            raise ValueError("studentId is required")

        job = self._registry.create(JOB_KIND)

        async def work(j: Job) -> None:
            await self.run(j, student_id, qr_code_url=qr_code_url, region=region)

        self._registry.spawn(job, work, grace_seconds=self._grace)
        return job.job_id

    async def run(
        self,
        job: Job,
        student_id: str,
        *,
        qr_code_url: str | None = None,
        region: str | None = None,
    ) -> None:
        job.emit(f"Looking up student {student_id}...", progress=10)
        try:
            snapshot = RosterSnapshot(await self._roster.read_students())
        except RosterHeaderError as e:
            raise JobFailure(str(e)) from e
        except _ROSTER_ERRORS as e:
            raise JobFailure(f"Could not read student roster: {e}") from e

        row = snapshot.find_by_student_id(student_id)
        if row is None:
            raise JobFailure(f"Student {student_id} not found")
        name = snapshot.full_name(row) or student_id

        if region:
            center = snapshot.cell(row, snapshot.columns.center)
            if center and normalize_name(center) != normalize_name(region):
                logger.warning(
                    "Check-in for %s requested from %s but roster center is %s",
                    student_id,
                    region,
                    center,
                    extra={"job_id": job.job_id},
                )

        job.emit(f"Found {name}. Retrieving QR code...", progress=35)
        qr_code = qr_code_url or snapshot.cell(row, snapshot.columns.qr_code)
        if not qr_code:
            try:
                qr_code = await self._roster.find_qr_code(student_id)
            except _ROSTER_ERRORS as e:
                raise JobFailure(f"Could not read QR code table: {e}") from e
        if not qr_code:
            raise JobFailure(f"No QR code on file for {name}")

        job.emit(f"Checking in {name}...", progress=60)
        if snapshot.columns.last_attendance is not None:
            today = self._clock().strftime(self._date_format)
            try:
                await self._roster.update_student_cell(row, snapshot.columns.last_attendance, today)
            except _ROSTER_ERRORS as e:
                raise JobFailure(f"Could not record attendance: {e}") from e

        if self._webhook_url:
            job.emit("Notifying check-in station...", progress=80)
            await self._notify(self._webhook_url, student_id, name, qr_code, region)

        logger.info("Checked in %s (%s)", name, student_id, extra={"job_id": job.job_id})
        job.complete(f"{name} checked in", qr_code=qr_code)

    async def _notify(
        self, url: str, student_id: str, name: str, qr_code: str, region: str | None
    ) -> None:
        payload = {
            "studentId": student_id,
            "fullName": name,
            "qrCodeUrl": qr_code,
            "region": region,
            "checkedInAt": self._clock().isoformat(),
        }
        try:
            resp = await request_with_retry(
                self._http,
                "POST",
                url,
                headers={"Content-Type": "application/json"},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise JobFailure(f"Check-in notification failed: {e}") from e
        if not resp.is_success:
            raise JobFailure(f"Check-in notification failed with status {resp.status_code}")
