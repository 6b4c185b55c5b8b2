"""Process-wide collaborators, built once at startup and injected by reference."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from google.cloud import storage

from checkin_service.config import (
    CHECKIN_ATTENDANCE_DATE_FORMAT,
    CHECKIN_QR_SHEET,
    CHECKIN_SPREADSHEET_URL,
    CHECKIN_STREAM_KEEPALIVE_SECONDS,
    CHECKIN_STUDENT_SHEET,
    CHECKIN_UPLOAD_BUCKET,
    CHECKIN_WEBHOOK_URL,
    GOOGLE_API_TIMEOUT_SECONDS,
    GOOGLE_OAUTH_CLIENT_ID,
    GOOGLE_OAUTH_CLIENT_SECRET,
    GOOGLE_PRIVATE_KEY,
    GOOGLE_SERVICE_ACCOUNT_EMAIL,
)
from checkin_service.google_api import (
    DRIVE_READONLY_SCOPE,
    SHEETS_SCOPE,
    ServiceAccountTokenSource,
)
from checkin_service.images import QRImageResolver
from checkin_service.ingestion.config import IngestConfig
from checkin_service.jobs.batch import BatchJobController
from checkin_service.jobs.checkin import SingleCheckInJobController
from checkin_service.jobs.registry import JobRegistry
from checkin_service.jobs.stream import ProgressStream
from checkin_service.stores.file_host import DriveFileHost
from checkin_service.stores.object_store import GcsObjectStore
from checkin_service.stores.roster_store import SheetsRosterStore, extract_spreadsheet_id

logger = logging.getLogger(__name__)


@dataclass
class Services:
    cfg: IngestConfig
    http: httpx.AsyncClient
    registry: JobRegistry
    stream: ProgressStream
    object_store: GcsObjectStore
    roster: SheetsRosterStore
    file_host: DriveFileHost
    batch: BatchJobController
    checkin: SingleCheckInJobController
    images: QRImageResolver

    async def aclose(self) -> None:
        await self.registry.shutdown()
        await self.http.aclose()


def build_services(
    cfg: IngestConfig | None = None,
    *,
    storage_client: storage.Client | None = None,
) -> Services:
    cfg = cfg or IngestConfig.from_env()
    cfg.validate()

    if not GOOGLE_SERVICE_ACCOUNT_EMAIL or not GOOGLE_PRIVATE_KEY:
        raise RuntimeError("GOOGLE_SERVICE_ACCOUNT_EMAIL and GOOGLE_PRIVATE_KEY are required")

    http = httpx.AsyncClient(timeout=GOOGLE_API_TIMEOUT_SECONDS)
    tokens = ServiceAccountTokenSource(
        client_email=GOOGLE_SERVICE_ACCOUNT_EMAIL,
        private_key=GOOGLE_PRIVATE_KEY,
        scopes=[SHEETS_SCOPE, DRIVE_READONLY_SCOPE],
    )
    roster = SheetsRosterStore(
        spreadsheet_id=extract_spreadsheet_id(CHECKIN_SPREADSHEET_URL),
        student_sheet=CHECKIN_STUDENT_SHEET,
        qr_sheet=CHECKIN_QR_SHEET,
        tokens=tokens,
        http=http,
    )
    file_host = DriveFileHost(
        http=http,
        oauth_client_id=GOOGLE_OAUTH_CLIENT_ID,
        oauth_client_secret=GOOGLE_OAUTH_CLIENT_SECRET,
        service_tokens=tokens,
    )
    object_store = GcsObjectStore(storage_client or storage.Client(), CHECKIN_UPLOAD_BUCKET)

    registry = JobRegistry()
    services = Services(
        cfg=cfg,
        http=http,
        registry=registry,
        stream=ProgressStream(registry, keepalive_seconds=CHECKIN_STREAM_KEEPALIVE_SECONDS),
        object_store=object_store,
        roster=roster,
        file_host=file_host,
        batch=BatchJobController(
            cfg=cfg,
            object_store=object_store,
            roster=roster,
            file_host=file_host,
            registry=registry,
        ),
        checkin=SingleCheckInJobController(
            roster=roster,
            registry=registry,
            http=http,
            webhook_url=CHECKIN_WEBHOOK_URL,
            date_format=CHECKIN_ATTENDANCE_DATE_FORMAT,
            grace_seconds=cfg.subscribe_grace_seconds,
        ),
        images=QRImageResolver(file_host=file_host, roster=roster, render_dpi=cfg.render_dpi),
    )
    logger.info(
        "Services ready: bucket=%s student_sheet=%s qr_sheet=%s",
        CHECKIN_UPLOAD_BUCKET,
        CHECKIN_STUDENT_SHEET,
        CHECKIN_QR_SHEET,
    )
    return services
