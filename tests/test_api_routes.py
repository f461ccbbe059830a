"""
Tests for the local HTTP API.

Covers:
- Every route requires the session token (401 without, 401 wrong)
- Unlock creates the vault on first run, wrong password is 401
- Locked vault maps to 403, corrupt stored vault to 409
- Entry CRUD, secret fields hidden from lists unless revealed
- Change password, export/import, settings
- Sync status, config, preferences, queue, remote update apply/dismiss
"""

import base64
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from keynotes.core.store import KEY_VAULT
from keynotes.sync import (
    OfflineQueue,
    OperationKind,
    SyncApiClient,
    SyncConfig,
    SyncCoordinator,
    SyncUnavailable,
)
from keynotes.vault import NoteEntry, VaultEngine


PASSWORD = "correct-horse"


@pytest.fixture
def session_token():
    return "test-session-token-12345"


@pytest.fixture
def remote_api():
    mock = MagicMock()
    mock.has_credentials.return_value = True
    mock.get_sync_status.return_value = {"syncSettings": True, "syncData": True}
    mock.check_updates.return_value = {"hasUpdates": False}
    return mock


@pytest.fixture
def wired(engine, store, clock, remote_api):
    """Engine, queue, client and coordinator injected into the service registry."""
    from keynotes.api.services import services

    queue = OfflineQueue(store, clock=clock)
    coordinator = SyncCoordinator(
        engine, remote_api, queue, store=store, clock=clock,
        sync_interval=3600, heartbeat_interval=3600,
    )
    old = (services.engine, services.queue, services.api_client, services.coordinator)
    services.engine = engine
    services.queue = queue
    services.api_client = SyncApiClient(store)
    services.coordinator = coordinator

    yield services

    coordinator.stop()
    services.engine, services.queue, services.api_client, services.coordinator = old


@pytest.fixture
def client(wired, session_token):
    from keynotes.api import security
    from keynotes.api.main import app

    old_token = security._SESSION_TOKEN
    security._SESSION_TOKEN = session_token

    yield TestClient(app)

    security._SESSION_TOKEN = old_token


@pytest.fixture
def auth(session_token):
    return {"X-Session-Token": session_token}


@pytest.fixture
def unlocked(client, auth):
    resp = client.post("/api/vault/unlock", json={"master_password": PASSWORD}, headers=auth)
    assert resp.status_code == 200
    return client


def _note(**overrides):
    body = {"type": "note", "title": "Deploy notes", "content": "ssh deploy@10.0.0.5"}
    body.update(overrides)
    return body


# ── Session token ─────────────────────────────────────────────────────


class TestSessionToken:
    def test_missing_token(self, client):
        assert client.get("/api/vault/status").status_code == 401

    def test_wrong_token(self, client):
        resp = client.get("/api/vault/status", headers={"X-Session-Token": "nope"})
        assert resp.status_code == 401

    def test_sync_routes_protected(self, client):
        assert client.get("/api/sync/status").status_code == 401

    def test_session_endpoint_unprotected(self, client, session_token):
        assert client.get("/api/session").json() == {"session_token": session_token}


# ── Lock / unlock ─────────────────────────────────────────────────────


class TestUnlock:
    def test_first_unlock_creates_vault(self, client, auth):
        resp = client.post("/api/vault/unlock", json={"master_password": PASSWORD}, headers=auth)
        assert resp.json() == {"success": True, "created": True}
        status = client.get("/api/vault/status", headers=auth).json()
        assert status["vault_exists"] is True
        assert status["is_unlocked"] is True
        assert status["entry_count"] == 0

    def test_wrong_password(self, unlocked, auth):
        unlocked.post("/api/vault/lock", headers=auth)
        resp = unlocked.post("/api/vault/unlock", json={"master_password": "wrong"}, headers=auth)
        assert resp.status_code == 401

    def test_relock_and_unlock(self, unlocked, auth):
        unlocked.post("/api/vault/lock", headers=auth)
        resp = unlocked.post("/api/vault/unlock", json={"master_password": PASSWORD}, headers=auth)
        assert resp.json() == {"success": True, "created": False}

    def test_locked_vault_is_403(self, unlocked, auth):
        unlocked.post("/api/vault/lock", headers=auth)
        assert unlocked.get("/api/vault/entries", headers=auth).status_code == 403
        assert unlocked.get("/api/vault/export", headers=auth).status_code == 403

    def test_corrupt_vault_is_409(self, unlocked, auth, store):
        unlocked.post("/api/vault/lock", headers=auth)
        store.set(KEY_VAULT, base64.b64encode(b"\x00" * 100).decode())
        resp = unlocked.post("/api/vault/unlock", json={"master_password": PASSWORD}, headers=auth)
        assert resp.status_code == 409

    def test_empty_password_rejected(self, client, auth):
        resp = client.post("/api/vault/unlock", json={"master_password": ""}, headers=auth)
        assert resp.status_code == 422


# ── Entries ───────────────────────────────────────────────────────────


class TestEntries:
    def test_create_and_get(self, unlocked, auth):
        resp = unlocked.post("/api/vault/entries", json=_note(tags=["ops"]), headers=auth)
        assert resp.status_code == 201
        created = resp.json()
        assert created["id"]
        assert created["content"] == "ssh deploy@10.0.0.5"

        fetched = unlocked.get(f"/api/vault/entries/{created['id']}", headers=auth).json()
        assert fetched["title"] == "Deploy notes"
        assert fetched["tags"] == ["ops"]
        assert fetched["encrypted"] is False

    def test_list_hides_secrets(self, unlocked, auth):
        unlocked.post("/api/vault/entries", json=_note(), headers=auth)
        listed = unlocked.get("/api/vault/entries", headers=auth).json()
        assert listed["total"] == 1
        assert "content" not in listed["entries"][0]

        revealed = unlocked.get("/api/vault/entries?reveal=true", headers=auth).json()
        assert revealed["entries"][0]["content"] == "ssh deploy@10.0.0.5"

    def test_filter_by_kind(self, unlocked, auth):
        unlocked.post("/api/vault/entries", json=_note(), headers=auth)
        unlocked.post(
            "/api/vault/entries",
            json={"type": "password", "title": "Mail", "password": "hunter2", "username": "me"},
            headers=auth,
        )
        listed = unlocked.get("/api/vault/entries?kind=password", headers=auth).json()
        assert [e["title"] for e in listed["entries"]] == ["Mail"]

    def test_update_keeps_created_at(self, unlocked, auth):
        created = unlocked.post("/api/vault/entries", json=_note(), headers=auth).json()
        updated = unlocked.put(
            f"/api/vault/entries/{created['id']}",
            json=_note(title="Deploy notes v2"),
            headers=auth,
        ).json()
        assert updated["title"] == "Deploy notes v2"
        assert updated["createdAt"] == created["createdAt"]

    def test_update_cannot_change_kind(self, unlocked, auth):
        created = unlocked.post("/api/vault/entries", json=_note(), headers=auth).json()
        resp = unlocked.put(
            f"/api/vault/entries/{created['id']}",
            json={"type": "password", "title": "x", "password": "y"},
            headers=auth,
        )
        assert resp.status_code == 409

    def test_missing_secret_field(self, unlocked, auth):
        resp = unlocked.post("/api/vault/entries", json={"type": "note", "title": "t"}, headers=auth)
        assert resp.status_code == 400

    def test_invalid_type(self, unlocked, auth):
        resp = unlocked.post(
            "/api/vault/entries", json={"type": "card", "title": "t"}, headers=auth
        )
        assert resp.status_code == 422

    def test_get_missing(self, unlocked, auth):
        assert unlocked.get("/api/vault/entries/nope", headers=auth).status_code == 404

    def test_delete_idempotent(self, unlocked, auth):
        created = unlocked.post("/api/vault/entries", json=_note(), headers=auth).json()
        first = unlocked.delete(f"/api/vault/entries/{created['id']}", headers=auth).json()
        second = unlocked.delete(f"/api/vault/entries/{created['id']}", headers=auth).json()
        assert first == {"success": True, "deleted": True}
        assert second == {"success": True, "deleted": False}


# ── Password, export / import, settings ───────────────────────────────


class TestVaultManagement:
    def test_change_password(self, unlocked, auth):
        unlocked.post("/api/vault/entries", json=_note(), headers=auth)
        resp = unlocked.post(
            "/api/vault/change-password",
            json={"old_password": PASSWORD, "new_password": "battery-staple"},
            headers=auth,
        )
        assert resp.json() == {"success": True}

        unlocked.post("/api/vault/lock", headers=auth)
        resp = unlocked.post(
            "/api/vault/unlock", json={"master_password": "battery-staple"}, headers=auth
        )
        assert resp.status_code == 200
        assert unlocked.get("/api/vault/status", headers=auth).json()["entry_count"] == 1

    def test_change_password_wrong_old(self, unlocked, auth):
        resp = unlocked.post(
            "/api/vault/change-password",
            json={"old_password": "nope", "new_password": "battery-staple"},
            headers=auth,
        )
        assert resp.status_code == 401

    def test_change_password_locked(self, client, auth):
        resp = client.post(
            "/api/vault/change-password",
            json={"old_password": PASSWORD, "new_password": "battery-staple"},
            headers=auth,
        )
        assert resp.status_code == 403

    def test_export_then_import(self, unlocked, auth):
        unlocked.post("/api/vault/entries", json=_note(), headers=auth)
        blob = unlocked.get("/api/vault/export", headers=auth).json()["vault"]
        assert "ssh deploy" not in blob

        resp = unlocked.post(
            "/api/vault/import",
            json={"vault": blob, "master_password": PASSWORD},
            headers=auth,
        )
        assert resp.json() == {"success": True, "is_unlocked": True}

    def test_import_wrong_password(self, unlocked, auth):
        blob = unlocked.get("/api/vault/export", headers=auth).json()["vault"]
        resp = unlocked.post(
            "/api/vault/import",
            json={"vault": blob, "master_password": "wrong"},
            headers=auth,
        )
        assert resp.status_code == 400

    def test_settings_roundtrip(self, client, auth):
        assert client.get("/api/vault/settings", headers=auth).json()["lockTimeout"] == 15
        resp = client.put(
            "/api/vault/settings", json={"autoLock": False, "lockTimeout": 5}, headers=auth
        )
        assert resp.json()["autoLock"] is False
        assert resp.json()["lockTimeout"] == 5

    def test_settings_timeout_bounds(self, client, auth):
        resp = client.put("/api/vault/settings", json={"lockTimeout": 0}, headers=auth)
        assert resp.status_code == 422

    def test_disabling_sync_stops_coordinator(self, client, auth, wired):
        wired.coordinator.start()
        resp = client.put("/api/vault/settings", json={"syncEnabled": False}, headers=auth)
        assert resp.json()["syncEnabled"] is False
        assert wired.coordinator.is_running is False


# ── Sync ──────────────────────────────────────────────────────────────


class TestSyncRoutes:
    def test_status(self, client, auth):
        status = client.get("/api/sync/status", headers=auth).json()
        assert status["connected"] is True
        assert status["pending_remote_update"] is None

    def test_set_config(self, client, auth, wired):
        resp = client.put(
            "/api/sync/config",
            json={"api_base": "https://sync.example.test/api", "client_id": "desktop"},
            headers=auth,
        )
        assert resp.status_code == 200
        assert wired.api_client.get_config().client_id == "desktop"

    @patch("keynotes.sync.api_client.httpx.request")
    def test_oauth_token_connects(self, mock_request, client, auth, wired):
        wired.api_client.set_config(
            SyncConfig(api_base="https://sync.example.test/api", client_id="desktop")
        )
        resp_mock = MagicMock()
        resp_mock.status_code = 200
        resp_mock.content = b"{}"
        resp_mock.json.return_value = {"access_token": "a1", "refresh_token": "r1"}
        mock_request.return_value = resp_mock

        resp = client.post("/api/sync/oauth/token", json={"code": "abc"}, headers=auth)

        body = resp.json()
        assert body["success"] is True
        assert body["settings"]["connected"] is True
        assert body["settings"]["syncEnabled"] is True
        assert wired.api_client.access_token == "a1"

    def test_disconnect(self, client, auth, wired):
        resp = client.post("/api/sync/disconnect", headers=auth).json()
        assert resp["settings"]["connected"] is False
        assert wired.api_client.get_config() is None

    def test_run_skips_when_locked(self, client, auth):
        result = client.post("/api/sync/run", headers=auth).json()
        assert result["performed"] is False
        assert result["skipped_reason"] == "vault locked"

    def test_run_uploads(self, unlocked, auth, remote_api):
        result = unlocked.post("/api/sync/run", headers=auth).json()
        assert result["performed"] is True
        assert result["uploaded"] is True
        remote_api.upload_data.assert_called_once()

    def test_preferences_queued_when_offline(self, client, auth, remote_api, wired):
        remote_api.update_sync_preferences.side_effect = SyncUnavailable("offline")
        resp = client.put(
            "/api/sync/preferences",
            json={"sync_settings": True, "sync_data": False},
            headers=auth,
        ).json()
        assert resp == {"success": True, "delivered": False}
        assert wired.queue.size == 1

    def test_queue_listing_hides_payload(self, client, auth, wired):
        wired.queue.enqueue(OperationKind.DATA, {"vault": "ciphertext"}, "vault")
        listed = client.get("/api/sync/queue", headers=auth).json()
        assert listed["total"] == 1
        assert "data" not in listed["operations"][0]
        assert listed["operations"][0]["dataType"] == "vault"

        cleared = client.delete("/api/sync/queue", headers=auth).json()
        assert cleared == {"success": True, "removed": 1}

    def test_apply_without_pending(self, client, auth):
        resp = client.post(
            "/api/sync/remote-update/apply", json={"master_password": PASSWORD}, headers=auth
        )
        assert resp.status_code == 404

    def test_apply_and_dismiss(self, unlocked, auth, wired, tmp_path, codec, clock):
        from keynotes.core import KeyValueStore

        other = VaultEngine(KeyValueStore(tmp_path / "other.db"), codec=codec, clock=clock)
        other.unlock(PASSWORD)
        other.save_entry(NoteEntry(id="remote-1", title="From laptop", content="hi"))
        message = {
            "type": "sync:data:update",
            "dataType": "vault",
            "data": {"vault": other.export_vault()},
            "updatedAt": clock.now + 60_000,
        }
        assert wired.coordinator.handle_push_message(message)

        wrong = unlocked.post(
            "/api/sync/remote-update/apply", json={"master_password": "wrong"}, headers=auth
        )
        assert wrong.status_code == 401

        ok = unlocked.post(
            "/api/sync/remote-update/apply", json={"master_password": PASSWORD}, headers=auth
        )
        assert ok.json() == {"success": True}
        assert unlocked.get("/api/vault/entries/remote-1", headers=auth).status_code == 200

        dismissed = unlocked.post("/api/sync/remote-update/dismiss", headers=auth).json()
        assert dismissed == {"success": True, "dismissed": False}
