"""Authentication for the check-in service.

Two auth modes:
1. Google OIDC: verifies Google identity tokens from the signed-in staff
   member's browser session (or a Cloud Run caller).
2. Shared bearer token: for local dev only (disabled when K_SERVICE is set).

A verified caller must also be on the approved-user list; unknown users
get 403 so the client can tell "sign in again" apart from "ask an admin".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from checkin_service.config import (
    CHECKIN_ALLOWED_ISSUERS,
    CHECKIN_APPROVED_USERS,
    CHECKIN_OIDC_AUDIENCE,
    CHECKIN_SHARED_TOKEN,
    IS_CLOUD_RUN,
)

logger = logging.getLogger(__name__)

# Cache the Google transport session for token verification
_transport = google_requests.Request()

# Paths that skip auth
_PUBLIC_PATHS = {"/liveness", "/readiness", "/docs", "/openapi.json"}

DEV_PRINCIPAL = "dev-user@local"


@dataclass
class Identity:
    """Authenticated caller identity."""

    principal: str  # email or sub claim
    email: str | None = None


async def get_identity(request: Request) -> Identity:
    """Extract and verify caller identity from the request.

    Raises HTTPException 401 if no valid credentials are provided and 403
    if the caller is authenticated but not approved.
    """
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    # Try shared token first (dev only)
    if not IS_CLOUD_RUN and CHECKIN_SHARED_TOKEN and token == CHECKIN_SHARED_TOKEN:
        return Identity(principal=DEV_PRINCIPAL)

    try:
        claims = id_token.verify_token(token, _transport, audience=CHECKIN_OIDC_AUDIENCE)
    except Exception as e:
        logger.warning("Token verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token") from e

    issuer = str(claims.get("iss", "")).strip()
    if issuer not in CHECKIN_ALLOWED_ISSUERS:
        raise HTTPException(status_code=401, detail="Invalid token issuer")

    email = str(claims.get("email", "")).strip().lower()
    principal = email or str(claims.get("sub", ""))
    if not principal:
        raise HTTPException(status_code=401, detail="Token missing email and sub claims")

    if not is_approved(email):
        logger.warning("Rejected unapproved user %s", principal)
        raise HTTPException(status_code=403, detail="User is not approved for this application")

    return Identity(principal=principal, email=email or None)


def is_approved(email: str | None) -> bool:
    return bool(email) and email.lower() in CHECKIN_APPROVED_USERS


def _extract_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header or query param."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()

    # Fallback: query param (EventSource cannot send headers)
    token = request.query_params.get("token")
    if token:
        return token

    return None


def is_public_path(path: str) -> bool:
    """Check if the request path skips authentication."""
    return path in _PUBLIC_PATHS or path.startswith("/docs")


def require_auth_on_cloud_run() -> None:
    """Safety check: shared token must not be usable on Cloud Run."""
    if IS_CLOUD_RUN and CHECKIN_SHARED_TOKEN:
        logger.warning(
            "CHECKIN_SHARED_TOKEN is set on Cloud Run; it will be ignored. "
            "Use OIDC tokens for authentication in production."
        )
    if IS_CLOUD_RUN and not CHECKIN_OIDC_AUDIENCE:
        raise RuntimeError("CHECKIN_OIDC_AUDIENCE must be set on Cloud Run")
    if not CHECKIN_APPROVED_USERS:
        logger.warning("CHECKIN_APPROVED_USERS is empty; only the dev token can sign in")
