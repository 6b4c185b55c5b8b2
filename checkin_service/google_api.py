"""Shared plumbing for calling Google REST APIs with httpx.

Service-account access tokens are minted with google-auth and cached
until shortly before expiry. Requests are retried on transient
gateway errors.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from google.auth.transport import requests as google_requests
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"

_TOKEN_URI = "https://oauth2.googleapis.com/token"

DEFAULT_RETRIES = 2
_RETRY_BACKOFF_BASE = 0.5
_RETRYABLE_STATUS = {502, 503, 504}


class GoogleApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceAccountTokenSource:
    """Caches a service-account access token for the given scopes."""

    def __init__(self, *, client_email: str, private_key: str, scopes: list[str]) -> None:
        info = {
            "type": "service_account",
            "client_email": client_email,
            # Keys pasted into env vars usually carry literal "\n" sequences
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": _TOKEN_URI,
        }
        self._credentials = service_account.Credentials.from_service_account_info(
            info, scopes=scopes
        )
        self._lock = asyncio.Lock()

    async def token(self) -> str:
        async with self._lock:
            if not self._credentials.valid:
                await asyncio.to_thread(self._credentials.refresh, google_requests.Request())
            return str(self._credentials.token)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
    json: Any = None,
    content: bytes | None = None,
    retries: int = DEFAULT_RETRIES,
) -> httpx.Response:
    """Make an HTTP request with retry on transient failures.

    Pass ``retries=0`` for non-idempotent calls such as file creation.
    """
    for attempt in range(retries + 1):
        try:
            resp = await client.request(
                method, url, headers=headers, params=params, json=json, content=content
            )
            if resp.status_code not in _RETRYABLE_STATUS or attempt >= retries:
                return resp
            logger.warning(
                "Google API returned %d (attempt %d/%d): %s %s",
                resp.status_code,
                attempt + 1,
                retries + 1,
                method,
                url,
            )
        except (httpx.ConnectError, httpx.ReadTimeout) as e:
            if attempt >= retries:
                raise
            logger.warning(
                "HTTP request failed (attempt %d/%d): %s",
                attempt + 1,
                retries + 1,
                e,
            )
        await asyncio.sleep(_RETRY_BACKOFF_BASE * (2**attempt))
    raise RuntimeError("Unreachable retry path")


def raise_for_google_status(resp: httpx.Response, action: str) -> None:
    if resp.is_success:
        return
    try:
        body = resp.json()
    except ValueError:
        body = None
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        detail = str(err.get("message", ""))
    elif err:
        detail = str(err)
    else:
        detail = resp.text[:200]
    raise GoogleApiError(
        f"{action} failed with status {resp.status_code}: {detail}".rstrip(": "),
        status_code=resp.status_code,
    )
