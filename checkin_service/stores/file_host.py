"""Google Drive file host for per-student QR images.

Uploads run with the signed-in admin's OAuth access token so files land in
their Drive folder; a 401 triggers one refresh-token exchange and a retry.
The file-create call is sent once, without gateway-error retries.
Read-back for the check-in display uses the service account instead.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import uuid
from dataclasses import dataclass

import httpx

from checkin_service.google_api import (
    DEFAULT_RETRIES,
    GoogleApiError,
    raise_for_google_status,
    request_with_retry,
)
from checkin_service.stores.roster_store import TokenSource

logger = logging.getLogger(__name__)

_DRIVE_FILES = "https://www.googleapis.com/drive/v3/files"
_DRIVE_UPLOAD = "https://www.googleapis.com/upload/drive/v3/files"
_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

ALLOWED_MIME_TYPES: dict[str, str] = {
    "application/pdf": ".pdf",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
}

_FILE_ID_PATTERNS = (
    re.compile(r"/file/d/([a-zA-Z0-9-_]+)"),
    re.compile(r"id=([a-zA-Z0-9-_]+)"),
    re.compile(r"/d/([a-zA-Z0-9-_]+)$"),
)


class UnsupportedMimeTypeError(ValueError):
    pass


class DriveAuthError(RuntimeError):
    """The user's Drive token is invalid and could not be refreshed."""


@dataclass
class DriveCredentials:
    access_token: str
    refresh_token: str | None = None


@dataclass(frozen=True)
class UploadMetadata:
    student_id: str
    full_name: str


@dataclass(frozen=True)
class DriveFile:
    file_id: str
    name: str
    mime_type: str
    content: bytes

    def as_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.content).decode('ascii')}"


def extract_drive_file_id(url: str | None) -> str | None:
    if not url or not isinstance(url, str):
        return None
    for pattern in _FILE_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def public_url(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view"


def sanitize_filename_part(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-_]", "_", value)


class DriveFileHost:
    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        oauth_client_id: str | None,
        oauth_client_secret: str | None,
        service_tokens: TokenSource | None = None,
    ) -> None:
        self._http = http
        self._client_id = oauth_client_id
        self._client_secret = oauth_client_secret
        self._service_tokens = service_tokens

    async def upload(
        self,
        content: bytes,
        *,
        mime_type: str,
        folder_id: str,
        filename: str,
        metadata: UploadMetadata,
        credentials: DriveCredentials,
    ) -> str:
        """Upload a file, make it world-readable, and return its public URL.

        Raises:
            UnsupportedMimeTypeError: before any network call, for non-allowed types.
            DriveAuthError: the token was rejected and could not be refreshed.
            GoogleApiError: any other Drive failure.
        """
        if mime_type not in ALLOWED_MIME_TYPES:
            raise UnsupportedMimeTypeError("Only PDF and image files are allowed")
        if not credentials.access_token:
            raise DriveAuthError("No access token provided")

        file_meta = {
            "name": filename,
            "parents": [folder_id],
            "appProperties": {"studentId": metadata.student_id, "fullName": metadata.full_name},
        }
        boundary = f"qr-{uuid.uuid4().hex}"
        body = _multipart_related(boundary, file_meta, content, mime_type)

        resp = await self._authorized(
            "POST",
            _DRIVE_UPLOAD,
            credentials,
            params={"uploadType": "multipart", "fields": "id", "supportsAllDrives": "true"},
            content=body,
            content_type=f"multipart/related; boundary={boundary}",
            retry=False,
        )
        raise_for_google_status(resp, f"Uploading {filename}")
        file_id = resp.json()["id"]

        resp = await self._authorized(
            "POST",
            f"{_DRIVE_FILES}/{file_id}/permissions",
            credentials,
            params={"supportsAllDrives": "true"},
            json_body={"role": "reader", "type": "anyone"},
        )
        raise_for_google_status(resp, f"Sharing {filename}")

        logger.info("Uploaded %s for student %s", filename, metadata.student_id)
        return public_url(file_id)

    async def refresh_access_token(self, refresh_token: str) -> str:
        if not self._client_id or not self._client_secret:
            raise DriveAuthError("OAuth client is not configured for token refresh")
        resp = await self._http.post(
            _OAUTH_TOKEN_URL,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        if not resp.is_success:
            raise DriveAuthError("Failed to refresh token")
        token = resp.json().get("access_token")
        if not token:
            raise DriveAuthError("Token refresh returned no access token")
        return str(token)

    async def fetch(self, url: str) -> DriveFile:
        """Download a hosted file using the service account."""
        file_id = extract_drive_file_id(url)
        if not file_id:
            raise ValueError("Invalid Google Drive file URL")
        if self._service_tokens is None:
            raise GoogleApiError("Service account is not configured for Drive reads")

        headers = {"Authorization": f"Bearer {await self._service_tokens.token()}"}
        params = {"fields": "mimeType,name", "supportsAllDrives": "true"}
        meta = await request_with_retry(
            self._http, "GET", f"{_DRIVE_FILES}/{file_id}", headers=headers, params=params
        )
        raise_for_google_status(meta, "Reading file metadata")
        info = meta.json()

        media = await request_with_retry(
            self._http,
            "GET",
            f"{_DRIVE_FILES}/{file_id}",
            headers=headers,
            params={"alt": "media", "supportsAllDrives": "true"},
        )
        raise_for_google_status(media, "Downloading file")
        if not media.content:
            raise GoogleApiError("No file data received from Google Drive")

        return DriveFile(
            file_id=file_id,
            name=str(info.get("name", "")),
            mime_type=str(info.get("mimeType", "")),
            content=media.content,
        )

    async def _authorized(
        self,
        method: str,
        url: str,
        credentials: DriveCredentials,
        *,
        params: dict[str, str],
        content: bytes | None = None,
        content_type: str | None = None,
        json_body: dict[str, str] | None = None,
        retry: bool = True,
    ) -> httpx.Response:
        refreshed = False
        while True:
            headers = {"Authorization": f"Bearer {credentials.access_token}"}
            if content_type:
                headers["Content-Type"] = content_type
            resp = await request_with_retry(
                self._http,
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                content=content,
                retries=DEFAULT_RETRIES if retry else 0,
            )
            if resp.status_code != 401:
                return resp
            if refreshed or not credentials.refresh_token:
                raise DriveAuthError("Authentication failed. Please sign out and sign in again.")
            try:
                credentials.access_token = await self.refresh_access_token(credentials.refresh_token)
            except DriveAuthError as e:
                raise DriveAuthError(
                    "Authentication failed. Please sign out and sign in again."
                ) from e
            refreshed = True
            logger.info("Drive access token refreshed after 401")


def _multipart_related(boundary: str, metadata: dict[str, object], content: bytes, mime_type: str) -> bytes:
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode()
    return head + content + f"\r\n--{boundary}--\r\n".encode()
