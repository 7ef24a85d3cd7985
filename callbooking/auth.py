"""Admin guards for the operator endpoints (call listing and live tracing).

  ADMIN_API_KEY set + matching token   → allow
  ADMIN_API_KEY set + wrong/missing    → 401
  ADMIN_API_KEY empty + DEBUG=true     → allow
  ADMIN_API_KEY empty + DEBUG=false    → 403

HTTP endpoints take ``Authorization: Bearer <key>``; the WebSocket takes
``?token=<key>`` because browsers cannot set headers on a WebSocket.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Query, WebSocketException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from callbooking.config import settings

log = logging.getLogger("callbooking.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _token_matches(token: str | None, key: str) -> bool:
    return bool(token) and secrets.compare_digest(token.encode(), key.encode())


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency guarding the admin HTTP endpoints."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )

    if credentials is None or not _token_matches(credentials.credentials, key):
        log.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(
    token: str = Query(default=""),
) -> None:
    """Same policy for the trace WebSocket, rejected with a close code."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return
        raise WebSocketException(code=4003, reason="Admin API key not configured")

    if not _token_matches(token, key):
        raise WebSocketException(code=4001, reason="Unauthorized")
