"""Environment-variable-driven configuration for the check-in service.

All config comes from env vars; values are opaque to the job logic.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_users(name: str) -> set[str]:
    # Accepts comma- or whitespace-separated email lists.
    raw = os.getenv(name, "")
    return {item.strip().lower() for item in raw.replace(",", " ").split() if item.strip()}


# -- Spreadsheet roster -------------------------------------------------------
CHECKIN_SPREADSHEET_URL: str = os.getenv("CHECKIN_SPREADSHEET_URL", "")
CHECKIN_STUDENT_SHEET: str = os.getenv("CHECKIN_STUDENT_SHEET", "Students")
CHECKIN_QR_SHEET: str = os.getenv("CHECKIN_QR_SHEET", "QRCodes")

# -- Drive --------------------------------------------------------------------
CHECKIN_QR_FOLDER_ID: str = os.getenv("CHECKIN_QR_FOLDER_ID", "")
GOOGLE_SERVICE_ACCOUNT_EMAIL: str | None = os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL")
GOOGLE_PRIVATE_KEY: str | None = os.getenv("GOOGLE_PRIVATE_KEY")
GOOGLE_OAUTH_CLIENT_ID: str | None = os.getenv("GOOGLE_OAUTH_CLIENT_ID")
GOOGLE_OAUTH_CLIENT_SECRET: str | None = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET")
GOOGLE_API_TIMEOUT_SECONDS: float = float(os.getenv("GOOGLE_API_TIMEOUT_SECONDS", "30"))

# -- Object storage -----------------------------------------------------------
CHECKIN_UPLOAD_BUCKET: str = os.getenv("CHECKIN_UPLOAD_BUCKET", "mathcheckin-pdfs")
CHECKIN_PRESIGN_TTL_SECONDS: int = int(os.getenv("CHECKIN_PRESIGN_TTL_SECONDS", "1800"))

# -- Check-in -----------------------------------------------------------------
CHECKIN_WEBHOOK_URL: str | None = os.getenv("CHECKIN_WEBHOOK_URL")
CHECKIN_ATTENDANCE_DATE_FORMAT: str = os.getenv("CHECKIN_ATTENDANCE_DATE_FORMAT", "%m/%d/%Y")

# -- Streaming ----------------------------------------------------------------
CHECKIN_STREAM_KEEPALIVE_SECONDS: float = float(
    os.getenv("CHECKIN_STREAM_KEEPALIVE_SECONDS", "15")
)

# -- Auth ---------------------------------------------------------------------
CHECKIN_SHARED_TOKEN: str | None = os.getenv("CHECKIN_SHARED_TOKEN")
CHECKIN_OIDC_AUDIENCE: str | None = os.getenv("CHECKIN_OIDC_AUDIENCE")
CHECKIN_ALLOWED_ISSUERS: set[str] = set(
    _env_csv("CHECKIN_ALLOWED_ISSUERS", "https://accounts.google.com,accounts.google.com")
)
CHECKIN_APPROVED_USERS: set[str] = _env_users("CHECKIN_APPROVED_USERS")

# -- CORS ---------------------------------------------------------------------
CHECKIN_CORS_ALLOW_ORIGINS: list[str] = _env_csv(
    "CHECKIN_CORS_ALLOW_ORIGINS",
    "http://localhost:3000",
)
CHECKIN_CORS_ALLOW_METHODS: list[str] = _env_csv(
    "CHECKIN_CORS_ALLOW_METHODS",
    "GET,POST,OPTIONS",
)
CHECKIN_CORS_ALLOW_HEADERS: list[str] = _env_csv(
    "CHECKIN_CORS_ALLOW_HEADERS",
    "Authorization,Content-Type",
)
CHECKIN_CORS_ALLOW_CREDENTIALS: bool = _env_bool("CHECKIN_CORS_ALLOW_CREDENTIALS", False)

# -- Server -------------------------------------------------------------------
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))
