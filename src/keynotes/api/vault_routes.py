# Vault API - endpoints the UI uses to drive the vault engine
#
# - Status, unlock (creates the vault on first run), lock
# - Entry CRUD (notes, keys, passwords)
# - Master password change, export/import, settings
#
# Entries use the same camelCase JSON as exported vaults. Secret fields
# are left out of list responses unless ?reveal=true.
#
# Vault exceptions are mapped to HTTP status codes in main.py.

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..vault import Entry, VaultEngine, VaultLocked, WrongPassword
from ..vault.models import entry_from_dict, entry_to_dict, new_entry_id, utc_now_iso
from .security import verify_session_token
from .services import get_engine, services

router = APIRouter(prefix="/api/vault", tags=["vault"])

_SECRET_KEYS = ("content", "key", "publicKey", "password")


# Request Models
class UnlockVaultRequest(BaseModel):
    master_password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str = Field(..., min_length=1)


class EntryRequest(BaseModel):
    type: str = Field(..., pattern="^(note|key|password)$")
    title: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = None
    tags: List[str] = []
    # note
    content: Optional[str] = None
    language: Optional[str] = None
    # key
    key: Optional[str] = None
    publicKey: Optional[str] = None
    algorithm: Optional[str] = None
    keySize: Optional[int] = Field(None, ge=1)
    # password
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None


class ImportVaultRequest(BaseModel):
    vault: str = Field(..., min_length=1)
    master_password: str = Field(..., min_length=1)


class SettingsRequest(BaseModel):
    autoLock: Optional[bool] = None
    lockTimeout: Optional[int] = Field(None, ge=1, le=24 * 60)
    syncEnabled: Optional[bool] = None


def _entry_view(entry: Entry, reveal: bool = True) -> Dict[str, Any]:
    data = entry_to_dict(entry)
    if not reveal:
        for key in _SECRET_KEYS:
            data.pop(key, None)
    return data


def _build_entry(engine: VaultEngine, entry_id: str, request: EntryRequest) -> Entry:
    existing = engine.get_entry(entry_id)
    if existing is not None and existing.kind != request.type:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Entry {entry_id} is a {existing.kind}, not a {request.type}",
        )

    data = request.model_dump(exclude_none=True)
    now = utc_now_iso()
    data["id"] = entry_id
    data["createdAt"] = existing.created_at if existing else now
    data["updatedAt"] = now
    try:
        return entry_from_dict(data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# Endpoints

@router.get("/status")
def get_vault_status(
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """Whether a vault exists, whether it is unlocked, entry count."""
    return engine.status()


@router.post("/unlock")
def unlock_vault(
    request: UnlockVaultRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """
    Unlock with the master password. On first run this creates the vault
    protected by that password.
    """
    created = not engine.vault_exists()
    if not engine.unlock(request.master_password):
        raise WrongPassword("Incorrect master password")
    return {"success": True, "created": created}


@router.post("/lock")
def lock_vault(
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    engine.lock()
    return {"success": True}


@router.get("/entries")
def list_entries(
    kind: Optional[str] = None,
    reveal: bool = False,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """List entries, optionally filtered by kind (note, key, password)."""
    entries = engine.get_entries()
    if kind:
        entries = [e for e in entries if e.kind == kind]
    return {"entries": [_entry_view(e, reveal) for e in entries], "total": len(entries)}


@router.get("/entries/{entry_id}")
def get_entry(
    entry_id: str,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    entry = engine.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found")
    return _entry_view(entry)


@router.post("/entries", status_code=status.HTTP_201_CREATED)
def create_entry(
    request: EntryRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    entry = _build_entry(engine, new_entry_id(), request)
    engine.save_entry(entry)
    return _entry_view(entry)


@router.put("/entries/{entry_id}")
def save_entry(
    entry_id: str,
    request: EntryRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """Insert or replace the entry with this id."""
    entry = _build_entry(engine, entry_id, request)
    engine.save_entry(entry)
    return _entry_view(entry)


@router.delete("/entries/{entry_id}")
def delete_entry(
    entry_id: str,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """Delete an entry. Deleting an unknown id succeeds with deleted=false."""
    return {"success": True, "deleted": engine.delete_entry(entry_id)}


@router.post("/change-password")
def change_master_password(
    request: ChangePasswordRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """Re-encrypt the whole vault under a new master password."""
    if not engine.is_unlocked():
        raise VaultLocked("Vault is locked")
    if not engine.change_password(request.old_password, request.new_password):
        raise WrongPassword("Current master password is incorrect")
    return {"success": True}


@router.get("/export")
def export_vault(
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    """The encrypted vault blob, decryptable only with the master password."""
    return {"vault": engine.export_vault()}


@router.post("/import")
def import_vault(
    request: ImportVaultRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    if not engine.import_vault(request.vault, request.master_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Import rejected: wrong password or invalid vault data",
        )
    return {"success": True, "is_unlocked": engine.is_unlocked()}


@router.get("/settings")
def get_settings(
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    return engine.get_settings().to_dict()


@router.put("/settings")
def update_settings(
    request: SettingsRequest,
    token: str = Depends(verify_session_token),
    engine: VaultEngine = Depends(get_engine),
):
    changes = {
        name: value
        for name, value in (
            ("auto_lock", request.autoLock),
            ("lock_timeout", request.lockTimeout),
            ("sync_enabled", request.syncEnabled),
        )
        if value is not None
    }
    settings = engine.settings.update(**changes)

    # Follow the sync toggle
    coordinator = services.coordinator
    if coordinator is not None and request.syncEnabled is not None:
        if settings.sync_enabled:
            coordinator.start()
        else:
            coordinator.stop()
    return settings.to_dict()
