# Sync API - remote account connection and sync control
#
# - Connect: store service config, OAuth authorize + code exchange
# - Status, manual sync run, offline queue inspection
# - Apply or dismiss a held remote vault update
# - Push sync preferences, disconnect

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..sync import OfflineQueue, SyncApiClient, SyncConfig, SyncCoordinator
from ..sync.api_client import DEFAULT_API_BASE
from ..vault import VaultEngine, WrongPassword
from .security import verify_session_token
from .services import get_api_client, get_coordinator, get_engine, get_queue

router = APIRouter(prefix="/api/sync", tags=["sync"])


# Request Models
class SyncConfigRequest(BaseModel):
    api_base: str = Field(DEFAULT_API_BASE, min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = ""


class AuthorizeRequest(BaseModel):
    redirect_uri: str = Field(..., min_length=1)
    state: Optional[str] = None


class TokenExchangeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    redirect_uri: Optional[str] = None


class PreferencesRequest(BaseModel):
    sync_settings: bool
    sync_data: bool


class ApplyRemoteUpdateRequest(BaseModel):
    master_password: str = Field(..., min_length=1)


# Endpoints

@router.get("/status")
def get_sync_status(
    token: str = Depends(verify_session_token),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    return coordinator.status()


@router.put("/config")
def set_sync_config(
    request: SyncConfigRequest,
    token: str = Depends(verify_session_token),
    api_client: SyncApiClient = Depends(get_api_client),
):
    """Store the remote service location and OAuth client credentials."""
    api_client.set_config(SyncConfig(
        api_base=request.api_base,
        client_id=request.client_id,
        client_secret=request.client_secret,
    ))
    return {"success": True}


@router.post("/oauth/authorize")
def authorize(
    request: AuthorizeRequest,
    token: str = Depends(verify_session_token),
    api_client: SyncApiClient = Depends(get_api_client),
):
    return api_client.initiate_oauth(request.redirect_uri, request.state)


@router.post("/oauth/token")
def exchange_token(
    request: TokenExchangeRequest,
    token: str = Depends(verify_session_token),
    api_client: SyncApiClient = Depends(get_api_client),
    coordinator: SyncCoordinator = Depends(get_coordinator),
    engine: VaultEngine = Depends(get_engine),
):
    """Finish the OAuth flow, mark the account connected and start syncing."""
    api_client.exchange_code_for_token(request.code, request.redirect_uri)
    settings = engine.settings.update(connected=True, sync_enabled=True)
    started = coordinator.start()
    return {"success": True, "settings": settings.to_dict(), "running": started}


@router.post("/disconnect")
def disconnect(
    token: str = Depends(verify_session_token),
    api_client: SyncApiClient = Depends(get_api_client),
    coordinator: SyncCoordinator = Depends(get_coordinator),
    engine: VaultEngine = Depends(get_engine),
):
    coordinator.stop()
    api_client.clear_config()
    settings = engine.settings.update(connected=False, sync_enabled=False)
    return {"success": True, "settings": settings.to_dict()}


@router.post("/run")
def run_sync(
    token: str = Depends(verify_session_token),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Run one full sync now."""
    return coordinator.perform_sync().to_dict()


@router.put("/preferences")
def update_preferences(
    request: PreferencesRequest,
    token: str = Depends(verify_session_token),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Push preferences; queued for later delivery if the service is unreachable."""
    delivered = coordinator.update_preferences(request.sync_settings, request.sync_data)
    return {"success": True, "delivered": delivered}


@router.get("/queue")
def get_queue_contents(
    token: str = Depends(verify_session_token),
    queue: OfflineQueue = Depends(get_queue),
):
    """Queued operations without their payloads."""
    operations = []
    for op in queue.get_queue():
        data = op.to_dict()
        data.pop("data", None)
        operations.append(data)
    return {"operations": operations, "total": len(operations)}


@router.delete("/queue")
def clear_queue(
    token: str = Depends(verify_session_token),
    queue: OfflineQueue = Depends(get_queue),
):
    return {"success": True, "removed": queue.clear()}


@router.post("/remote-update/apply")
def apply_remote_update(
    request: ApplyRemoteUpdateRequest,
    token: str = Depends(verify_session_token),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Import the held remote vault with the re-entered master password."""
    if coordinator.pending_remote_update is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No remote update pending",
        )
    if not coordinator.apply_remote_update(request.master_password):
        raise WrongPassword("Remote vault could not be opened with this password")
    return {"success": True}


@router.post("/remote-update/dismiss")
def dismiss_remote_update(
    token: str = Depends(verify_session_token),
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    return {"success": True, "dismissed": coordinator.dismiss_remote_update()}
