# Keynotes local API
#
# FastAPI backend the UI talks to. Binds to localhost; every vault and
# sync route requires the per-run session token (see security.py).
#
# Vault and sync exceptions propagate out of the routes and are turned
# into HTTP responses by the handlers below.

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import KeynotesConfig
from ..core import EventSeverity, EventType, get_audit_logger
from ..sync import SyncAuthError, SyncError, SyncUnavailable
from ..vault import (
    DecryptionError,
    VaultCorruptOrWrongPassword,
    VaultError,
    VaultLocked,
    WrongPassword,
)
from .security import get_session_token, initialize_session_token
from .services import services
from .sync_routes import router as sync_router
from .vault_routes import router as vault_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Keynotes API",
    description="Local-first encrypted vault for notes, keys and passwords",
    version=__version__,
)

_allowed_origins = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:5173", "http://127.0.0.1:5173",
    "http://localhost:8000", "http://127.0.0.1:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vault_router)
app.include_router(sync_router)


# Exception -> HTTP status
_VAULT_STATUS = (
    (VaultLocked, 403),
    (WrongPassword, 401),
    (VaultCorruptOrWrongPassword, 409),
    (DecryptionError, 422),
)

_SYNC_STATUS = (
    (SyncUnavailable, 503),
    (SyncAuthError, 401),
)


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    for exc_type, code in _VAULT_STATUS:
        if isinstance(exc, exc_type):
            return JSONResponse(status_code=code, content={"detail": str(exc)})
    logger.error("Unhandled vault error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    for exc_type, code in _SYNC_STATUS:
        if isinstance(exc, exc_type):
            return JSONResponse(status_code=code, content={"detail": str(exc)})
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    """Wire services (unless already wired) and start background workers."""
    initialize_session_token()
    if services.engine is None:
        services.configure(KeynotesConfig.from_env())
    services.start()

    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="Keynotes API server started",
        details={"version": __version__},
    )


@app.on_event("shutdown")
async def shutdown_event():
    services.stop()
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_STOP,
        severity=EventSeverity.INFO,
        message="Keynotes API server shutting down",
    )


@app.get("/api/session")
async def get_session():
    """
    Session token for the X-Session-Token header.

    Unprotected so the UI can bootstrap. The token is random, changes on
    every restart, and the server only listens on localhost.
    """
    return {"session_token": get_session_token()}


@app.get("/api")
async def api_info():
    return {"name": "Keynotes API", "version": __version__}


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start the FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_api_server()
