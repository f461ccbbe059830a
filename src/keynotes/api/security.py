# Local API authentication
#
# A random token is generated when the server starts and handed to the UI.
# Every route requires it in the X-Session-Token header, so other local
# processes cannot read the vault through the API.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

_SESSION_TOKEN: Optional[str] = None


def initialize_session_token() -> str:
    """Generate this server instance's token (256 bits) and return it."""
    global _SESSION_TOKEN
    _SESSION_TOKEN = secrets.token_urlsafe(32)
    return _SESSION_TOKEN


def get_session_token() -> str:
    if _SESSION_TOKEN is None:
        raise RuntimeError("Session token not initialized. Call initialize_session_token() first.")
    return _SESSION_TOKEN


async def verify_session_token(x_session_token: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: reject requests without the current session token.

    Raises:
        HTTPException: 503 before startup, 401 if missing or wrong.
    """
    if _SESSION_TOKEN is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session token not initialized",
        )
    if x_session_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Session-Token header",
        )
    # Constant-time comparison
    if not secrets.compare_digest(x_session_token, _SESSION_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )
    return x_session_token
