"""FastAPI entry point for the student check-in service.

Endpoints:
- POST /v1/storage/presign           : Signed PUT URL for a source PDF
- POST /v1/storage/clear             : Empty the upload bucket
- POST /v1/qr-codes/mass-upload      : Start a mass QR upload job (202)
- GET  /v1/qr-codes/mass-upload/stream: SSE progress for that job
- POST /v1/check-in                  : Start a single-student check-in job (202)
- GET  /v1/check-in/stream           : SSE progress for that job
- POST /v1/qr-image                  : QR code as a base64 data URL
- GET  /liveness, /readiness         : Health checks
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, cast

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from checkin_service.auth import Identity, get_identity, is_public_path, require_auth_on_cloud_run
from checkin_service.config import (
    CHECKIN_CORS_ALLOW_CREDENTIALS,
    CHECKIN_CORS_ALLOW_HEADERS,
    CHECKIN_CORS_ALLOW_METHODS,
    CHECKIN_CORS_ALLOW_ORIGINS,
    CHECKIN_PRESIGN_TTL_SECONDS,
)
from checkin_service.google_api import GoogleApiError
from checkin_service.images import QRCodeNotFoundError
from checkin_service.ingestion.matcher import RosterHeaderError
from checkin_service.jobs import batch as batch_jobs
from checkin_service.jobs import checkin as checkin_jobs
from checkin_service.jobs.batch import SourceObjectNotFoundError
from checkin_service.jobs.stream import JobNotFoundError
from checkin_service.logging_config import generate_request_id, setup_logging
from checkin_service.models import (
    ClearStorageResponse,
    HealthResponse,
    PresignRequest,
    PresignResponse,
    QRImageRequest,
    QRImageResponse,
    StartCheckInRequest,
    StartJobResponse,
    StartMassUploadRequest,
)
from checkin_service.services import Services, build_services
from checkin_service.stores.file_host import DriveCredentials, UnsupportedMimeTypeError

logger = logging.getLogger(__name__)

DRIVE_REAUTH_MESSAGE = "Google Drive authentication expired. Please sign out and sign in again."

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build shared clients on startup, cancel jobs on shutdown."""
    setup_logging()
    require_auth_on_cloud_run()
    services = build_services()
    app.state.services = services
    logger.info("Check-in service started")
    yield
    await services.aclose()
    logger.info("Check-in service stopped")


app = FastAPI(
    title="Student Check-in API",
    version="0.1.0",
    lifespan=lifespan,
)

# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


if CHECKIN_CORS_ALLOW_CREDENTIALS and "*" in CHECKIN_CORS_ALLOW_ORIGINS:
    raise RuntimeError("Invalid CORS config: wildcard origin cannot be combined with credentials=true")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CHECKIN_CORS_ALLOW_ORIGINS,
    allow_credentials=CHECKIN_CORS_ALLOW_CREDENTIALS,
    allow_methods=CHECKIN_CORS_ALLOW_METHODS,
    allow_headers=CHECKIN_CORS_ALLOW_HEADERS,
)


# -- Body size limit ----------------------------------------------------------

_MAX_BODY_BYTES = 1 * 1024 * 1024  # 1 MB; PDFs go straight to the bucket


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and int(content_length) > _MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    return await call_next(request)


# -- Auth middleware ----------------------------------------------------------


@app.middleware("http")
async def auth_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Enforce authentication on all non-public paths."""
    if request.method == "OPTIONS" or is_public_path(request.url.path):
        return await call_next(request)

    try:
        identity = await get_identity(request)
        request.state.identity = identity
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    except Exception as e:
        logger.warning("Auth middleware error: %s", e)
        return JSONResponse(status_code=401, content={"detail": "Authentication failed"})

    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def _get_identity(request: Request) -> Identity:
    """Dependency: extract identity from request state (set by middleware)."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return cast(Identity, identity)


def _get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return cast(Services, services)


ServicesDep = Annotated[Services, Depends(_get_services)]
IdentityDep = Annotated[Identity, Depends(_get_identity)]


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/readiness", response_model=HealthResponse)
async def readiness(services: ServicesDep) -> HealthResponse:
    bucket_ok = await asyncio.to_thread(services.object_store.check_bucket)
    if not bucket_ok:
        raise HTTPException(status_code=503, detail="Upload bucket unavailable")
    return HealthResponse(status="ok")


# -- Object storage -----------------------------------------------------------


@app.post("/v1/storage/presign", response_model=PresignResponse, response_model_by_alias=True)
@limiter.limit("30/minute")
async def presign_upload(
    request: Request,
    body: PresignRequest,
    identity: IdentityDep,
    services: ServicesDep,
) -> PresignResponse:
    """Signed PUT URL so the browser can send the PDF straight to the bucket."""
    if body.content_type != "application/pdf":
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")
    key = body.object_key.strip().lstrip("/")
    if not key or ".." in key.split("/"):
        raise HTTPException(status_code=400, detail="Invalid object key")

    try:
        url = await asyncio.to_thread(
            services.object_store.presign_put,
            key,
            content_type=body.content_type,
            ttl_seconds=CHECKIN_PRESIGN_TTL_SECONDS,
        )
    except Exception as e:
        logger.exception("Failed to generate upload URL")
        raise HTTPException(status_code=503, detail="Failed to generate upload URL") from e

    logger.info("Presigned upload %s for %s", key, identity.principal)
    return PresignResponse(url=url, object_key=key)


@app.post("/v1/storage/clear", response_model=ClearStorageResponse, response_model_by_alias=True)
@limiter.limit("5/minute")
async def clear_storage(
    request: Request,
    identity: IdentityDep,
    services: ServicesDep,
) -> ClearStorageResponse:
    try:
        deleted = await asyncio.to_thread(services.object_store.clear)
    except Exception as e:
        logger.exception("Failed to clear upload bucket")
        raise HTTPException(status_code=503, detail="Failed to clear upload bucket") from e
    logger.info("%s cleared %d uploads", identity.principal, deleted)
    return ClearStorageResponse(deleted=deleted, message=f"Deleted {deleted} files")


# -- Mass QR upload -----------------------------------------------------------


@app.post(
    "/v1/qr-codes/mass-upload",
    response_model=StartJobResponse,
    response_model_by_alias=True,
    status_code=202,
)
@limiter.limit("10/minute")
async def start_mass_upload(
    request: Request,
    body: StartMassUploadRequest,
    identity: IdentityDep,
    services: ServicesDep,
) -> StartJobResponse:
    """Accept a mass upload job; progress is read from the stream endpoint."""
    if not body.access_token:
        raise HTTPException(status_code=401, detail=DRIVE_REAUTH_MESSAGE)
    key = body.source_object_key.strip()
    if not key:
        raise HTTPException(status_code=400, detail="sourceObjectKey is required")

    credentials = DriveCredentials(access_token=body.access_token, refresh_token=body.refresh_token)
    try:
        job_id = await services.batch.start(key, credentials)
    except SourceObjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except Exception as e:
        logger.exception("Failed to start mass upload for %s", key)
        raise HTTPException(status_code=503, detail="Upload storage unavailable") from e

    logger.info("%s started mass upload %s", identity.principal, job_id, extra={"job_id": job_id})
    return StartJobResponse(job_id=job_id)


@app.get("/v1/qr-codes/mass-upload/stream")
async def stream_mass_upload(
    services: ServicesDep,
    identity: IdentityDep,
    job_id: Annotated[str | None, Query(alias="jobId")] = None,
) -> StreamingResponse:
    return _open_stream(services, job_id, kind=batch_jobs.JOB_KIND)


# -- Single check-in ----------------------------------------------------------


@app.post(
    "/v1/check-in",
    response_model=StartJobResponse,
    response_model_by_alias=True,
    status_code=202,
)
@limiter.limit("30/minute")
async def start_check_in(
    request: Request,
    body: StartCheckInRequest,
    identity: IdentityDep,
    services: ServicesDep,
) -> StartJobResponse:
    try:
        job_id = await services.checkin.start(
            body.student_id,
            qr_code_url=body.qr_code_url,
            region=body.region,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info("%s started check-in %s", identity.principal, job_id, extra={"job_id": job_id})
    return StartJobResponse(job_id=job_id)


@app.get("/v1/check-in/stream")
async def stream_check_in(
    services: ServicesDep,
    identity: IdentityDep,
    job_id: Annotated[str | None, Query(alias="jobId")] = None,
) -> StreamingResponse:
    return _open_stream(services, job_id, kind=checkin_jobs.JOB_KIND)


def _open_stream(services: Services, job_id: str | None, *, kind: str) -> StreamingResponse:
    if not job_id or not job_id.strip():
        raise HTTPException(status_code=400, detail="jobId is required")
    try:
        subscription = services.stream.subscribe(job_id.strip(), kind=kind)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail="Job not found") from e
    return StreamingResponse(
        subscription.sse(),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# -- QR image -----------------------------------------------------------------


@app.post("/v1/qr-image", response_model=QRImageResponse, response_model_by_alias=True)
@limiter.limit("60/minute")
async def qr_image(
    request: Request,
    body: QRImageRequest,
    identity: IdentityDep,
    services: ServicesDep,
) -> QRImageResponse:
    """Resolve a QR code (by URL or student id) to a displayable data URL."""
    try:
        return await services.images.resolve(
            qr_code_url=body.qr_code_url,
            student_id=body.student_id,
        )
    except UnsupportedMimeTypeError as e:
        raise HTTPException(status_code=415, detail=str(e)) from e
    except RosterHeaderError as e:
        logger.error("Roster misconfigured: %s", e)
        raise HTTPException(status_code=500, detail=str(e)) from e
    except QRCodeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except GoogleApiError as e:
        status = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status, detail=str(e)) from e
    except httpx.HTTPError as e:
        logger.warning("Drive request failed: %s", e)
        raise HTTPException(status_code=502, detail="Google Drive unavailable") from e
