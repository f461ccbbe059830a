# Sync Module - Sync Coordinator
#
# Keeps the encrypted vault in step with the remote account service:
#   - Polls every 5 minutes (full sync while the push channel is down)
#   - Pushes local changes as soon as the vault reports them
#   - Receives remote updates over the real-time channel
#   - Sends a session heartbeat every 30 seconds
#
# Conflict rule is whole-vault newer-wins. A strictly newer remote vault is
# never applied silently: it is held as a pending update until the user
# re-enters the master password (apply_remote_update).
#
# Network calls never run while the vault's session guard is held.

import logging
import platform
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..core import EventSeverity, EventType, get_audit_logger
from ..core.store import KEY_LAST_SYNC_UPLOAD, KeyValueStore
from ..vault.exceptions import VaultLocked
from ..vault.vault_engine import VaultEngine, VaultEvent
from .api_client import USER_AGENT, SyncApiClient
from .exceptions import SyncError, SyncUnavailable
from .offline_queue import OfflineQueue, OperationKind, QueuedOperation, QueueReport
from .realtime import RealtimeChannel

logger = logging.getLogger(__name__)

SYNC_INTERVAL = 5 * 60  # seconds, fallback HTTP sync
HEARTBEAT_INTERVAL = 30  # seconds

VAULT_DATA_TYPE = "vault"
MSG_SYNC_DATA = "sync:data"
MSG_SYNC_DATA_UPDATE = "sync:data:update"

# Vault events that mean there is something new to upload
_CHANGE_EVENTS = {
    VaultEvent.ENTRY_SAVED,
    VaultEvent.ENTRY_DELETED,
    VaultEvent.PASSWORD_CHANGED,
    VaultEvent.IMPORTED,
}


@dataclass
class RemoteUpdate:
    """A remote vault blob newer than our last upload, awaiting the password."""

    blob: str
    updated_at_ms: int
    received_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"updated_at_ms": self.updated_at_ms, "received_at_ms": self.received_at_ms}


@dataclass
class SyncResult:
    """Outcome of one perform_sync() call."""

    performed: bool = False
    skipped_reason: Optional[str] = None
    uploaded: bool = False
    remote_update_available: bool = False
    queue: Optional[QueueReport] = None
    error: Optional[str] = None
    finished_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "performed": self.performed,
            "skipped_reason": self.skipped_reason,
            "uploaded": self.uploaded,
            "remote_update_available": self.remote_update_available,
            "queue": None if self.queue is None else {
                "processed": self.queue.processed,
                "succeeded": self.queue.succeeded,
                "failed": self.queue.failed,
                "dropped": list(self.queue.dropped),
            },
            "error": self.error,
            "finished_at_ms": self.finished_at_ms,
        }


RemoteUpdateListener = Callable[[RemoteUpdate], None]


def parse_timestamp_ms(value: Any) -> int:
    """Epoch ms from an ISO-8601 string or a number. 0 when unusable."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def default_device_info() -> Dict[str, str]:
    return {"platform": platform.platform(), "userAgent": USER_AGENT}


class SyncCoordinator:
    """Background synchronization between the vault and the remote service.

    Args:
        engine: Vault engine (source of the encrypted blob).
        api: Remote API client.
        queue: Offline queue for undelivered writes.
        channel: Optional real-time push channel.
        store: Optional key/value store; persists the last upload time
            so newer-wins survives restarts.
        sync_interval: Seconds between poll ticks.
        heartbeat_interval: Seconds between heartbeats.
        clock: Callable returning epoch milliseconds.
        device_info: Sent with each heartbeat.
    """

    def __init__(
        self,
        engine: VaultEngine,
        api: SyncApiClient,
        queue: OfflineQueue,
        channel: Optional[RealtimeChannel] = None,
        store: Optional[KeyValueStore] = None,
        sync_interval: float = SYNC_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        clock: Optional[Callable[[], int]] = None,
        device_info: Optional[Dict[str, Any]] = None,
    ):
        self._engine = engine
        self._api = api
        self._queue = queue
        self._channel = channel
        self._store = store
        self._sync_interval = sync_interval
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._device_info = device_info or default_device_info()

        self._state_lock = threading.Lock()
        self._last_upload_ms = self._load_last_upload()
        self._pending: Optional[RemoteUpdate] = None
        self._dirty = False
        self._change_seq = 0
        self._needs_full_sync = True
        self._last_result: Optional[SyncResult] = None
        self._listeners: List[RemoteUpdateListener] = []
        self._local = threading.local()

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self.logger = get_audit_logger()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _load_last_upload(self) -> int:
        if self._store is None:
            return 0
        raw = self._store.get(KEY_LAST_SYNC_UPLOAD)
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    def _record_upload(self, when_ms: int) -> None:
        with self._state_lock:
            self._last_upload_ms = max(self._last_upload_ms, when_ms)
            value = self._last_upload_ms
        if self._store is not None:
            self._store.set(KEY_LAST_SYNC_UPLOAD, str(value))

    @property
    def last_upload_ms(self) -> int:
        with self._state_lock:
            return self._last_upload_ms

    @property
    def pending_remote_update(self) -> Optional[RemoteUpdate]:
        with self._state_lock:
            return self._pending

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    def status(self) -> Dict[str, Any]:
        pending = self.pending_remote_update
        return {
            "running": self.is_running,
            "connected": self._api.has_credentials(),
            "realtime_connected": bool(self._channel and self._channel.is_connected()),
            "last_upload_ms": self.last_upload_ms or None,
            "pending_remote_update": pending.to_dict() if pending else None,
            "queue": self._queue.stats(),
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

    def subscribe(self, listener: RemoteUpdateListener) -> Callable[[], None]:
        """Be told when a newer remote vault is held. Returns an unsubscribe callable."""
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start background sync. Returns False when there are no credentials."""
        if self.is_running:
            return True
        if not self._api.has_credentials():
            logger.info("Sync not configured; coordinator not started")
            return False

        self._stop_event.clear()
        self._needs_full_sync = True
        self._unsubscribe = self._engine.subscribe(self._on_vault_event)

        if self._channel is not None:
            self._channel.on(MSG_SYNC_DATA_UPDATE, self.handle_push_message)
            self._connect_channel()

        # Initial sync runs on the poll thread right away
        self._wake_event.set()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="sync-poll", daemon=True
        )
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name="sync-heartbeat", daemon=True
        )
        self._poll_thread.start()
        self._heartbeat_thread.start()
        logger.info(
            "Sync coordinator started (poll %ss, heartbeat %ss)",
            self._sync_interval, self._heartbeat_interval,
        )
        return True

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        for thread in (self._poll_thread, self._heartbeat_thread):
            if thread is not None:
                thread.join(timeout=5)
        self._poll_thread = None
        self._heartbeat_thread = None

        if self._channel is not None:
            self._channel.off(MSG_SYNC_DATA_UPDATE, self.handle_push_message)
            self._channel.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._wake_event.clear()
        logger.info("Sync coordinator stopped")

    def _connect_channel(self) -> bool:
        try:
            self._channel.connect()
            return True
        except SyncUnavailable as exc:
            logger.warning("Realtime channel unavailable, polling only: %s", exc)
            return False

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait(self._sync_interval)
            if self._stop_event.is_set():
                break
            self._wake_event.clear()
            try:
                self.tick()
            except Exception:
                logger.exception("Sync tick failed")

    def _heartbeat_loop(self) -> None:
        while not self._stop_event.wait(self._heartbeat_interval):
            try:
                self.send_heartbeat()
            except Exception:
                logger.exception("Heartbeat failed")

    def tick(self) -> None:
        """One poll step.

        With the push channel up only pending local changes and the queue
        are handled; otherwise (or on the first tick) a full sync runs.
        """
        if self._channel is not None and not self._channel.is_connected():
            self._connect_channel()

        realtime = self._channel is not None and self._channel.is_connected()
        if self._needs_full_sync or not realtime:
            self._last_result = self.perform_sync()
            if self._last_result.performed:
                self._needs_full_sync = False
            return

        if self._dirty:
            self.upload_vault()
        self.process_offline_queue()

    def _on_vault_event(self, event: VaultEvent, detail: Dict[str, Any]) -> None:
        if getattr(self._local, "applying_remote", False):
            return
        if event in _CHANGE_EVENTS:
            self._mark_dirty()
            self._wake_event.set()
        elif event is VaultEvent.UNLOCKED:
            self._needs_full_sync = True
            self._wake_event.set()

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    def perform_sync(self) -> SyncResult:
        """Full sync: check for a newer remote vault, upload, drain the queue.

        Never raises; failures are reported in SyncResult.error.
        """
        result = SyncResult()
        if not self._api.has_credentials():
            result.skipped_reason = "not connected"
            return result
        if not self._engine.is_unlocked():
            result.skipped_reason = "vault locked"
            return result

        try:
            status = self._api.get_sync_status()
            if not status.get("syncData"):
                result.skipped_reason = "data sync disabled"
                return result

            updates = self._api.check_updates([VAULT_DATA_TYPE])
            remote_meta = ((updates.get("updates") or {}).get("data") or {}).get(VAULT_DATA_TYPE)
            if updates.get("hasUpdates") and remote_meta:
                result.remote_update_available = self._fetch_remote(remote_meta)

            result.performed = True
            # A held remote update must not be overwritten unless we have newer edits
            if self._dirty or self.pending_remote_update is None:
                result.uploaded = self.upload_vault(check_status=False)
            result.queue = self.process_offline_queue()
        except SyncError as exc:
            result.error = str(exc)
            logger.error("Sync error: %s", exc)
            self.logger.log_event(
                event_type=EventType.SYNC_ERROR,
                severity=EventSeverity.INVESTIGATE,
                message=f"Sync failed: {exc}",
            )
        except VaultLocked:
            result.skipped_reason = "vault locked"

        result.finished_at_ms = self._clock()
        return result

    def _fetch_remote(self, remote_meta: Dict[str, Any]) -> bool:
        try:
            remote = self._api.download_data(VAULT_DATA_TYPE)
        except SyncError as exc:
            logger.error("Failed to download vault: %s", exc)
            return False
        blob = (remote.get("data") or {}).get("vault")
        if not isinstance(blob, str) or not blob:
            return False
        return self._consider_remote(blob, remote_meta.get("updatedAt"))

    def _consider_remote(self, blob: str, updated_at: Any) -> bool:
        """Newer-wins check. Returns True if the blob is held as a pending update."""
        remote_ms = parse_timestamp_ms(updated_at)
        with self._state_lock:
            if remote_ms <= self._last_upload_ms:
                return False
            if self._pending is not None and remote_ms < self._pending.updated_at_ms:
                return False
            update = RemoteUpdate(blob=blob, updated_at_ms=remote_ms, received_at_ms=self._clock())
            self._pending = update
            listeners = list(self._listeners)

        logger.info("Remote vault update available (newer than local)")
        self.logger.log_event(
            event_type=EventType.SYNC_REMOTE_UPDATE,
            severity=EventSeverity.INFO,
            message="Newer remote vault held until the master password is re-entered",
            details={"remote_updated_at_ms": remote_ms},
        )
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                logger.exception("Remote update listener failed")
        return True

    def upload_vault(self, check_status: bool = True) -> bool:
        """Upload the current encrypted vault.

        Skipped when the vault is locked or remote data sync is off. A
        failed upload is queued for later delivery.

        Returns:
            True if the vault was uploaded.
        """
        if not self._engine.is_unlocked():
            return False
        with self._state_lock:
            generation = self._change_seq
        try:
            blob = self._engine.export_vault()
        except VaultLocked:
            return False
        payload = {"vault": blob}

        try:
            if check_status and not self._api.get_sync_status().get("syncData"):
                return False
            self._api.upload_data(VAULT_DATA_TYPE, payload)
        except SyncError as exc:
            logger.error("Failed to upload vault: %s", exc)
            self._queue_vault_upload(payload, generation)
            return False

        self._clear_dirty(generation)
        self._record_upload(self._clock())
        with self._state_lock:
            self._pending = None
        self._drop_queued_vault_uploads()
        self.logger.log_event(
            event_type=EventType.SYNC_UPLOADED,
            severity=EventSeverity.INFO,
            message="Vault uploaded",
        )

        if self._channel is not None and self._channel.is_connected():
            self._channel.send({
                "type": MSG_SYNC_DATA,
                "dataType": VAULT_DATA_TYPE,
                "data": payload,
            })
        return True

    def _queue_vault_upload(self, payload: Dict[str, Any], generation: int) -> None:
        # Only the latest vault matters; older queued copies are superseded
        self._drop_queued_vault_uploads()
        op_id = self._queue.enqueue(OperationKind.DATA, payload, VAULT_DATA_TYPE)
        self._clear_dirty(generation)
        self.logger.log_event(
            event_type=EventType.SYNC_QUEUED,
            severity=EventSeverity.INFO,
            message="Vault upload queued for later delivery",
            details={"operation_id": op_id},
        )

    def _mark_dirty(self) -> None:
        with self._state_lock:
            self._change_seq += 1
            self._dirty = True

    def _clear_dirty(self, generation: int) -> None:
        # Edits made after the exported snapshot still need uploading
        with self._state_lock:
            if self._change_seq == generation:
                self._dirty = False

    def _drop_queued_vault_uploads(self) -> None:
        for op in self._queue.get_queue():
            if op.kind is OperationKind.DATA and op.data_type == VAULT_DATA_TYPE:
                self._queue.remove(op.id)

    def process_offline_queue(self) -> QueueReport:
        """Replay queued uploads and preference changes."""
        if not self._api.has_credentials():
            return QueueReport(skipped=True)
        return self._queue.process_queue(self._replay)

    def _replay(self, op: QueuedOperation) -> bool:
        if op.kind is OperationKind.DATA:
            if op.data_type != VAULT_DATA_TYPE:
                logger.warning("Discarding queued upload of unknown data type %r", op.data_type)
                return True
            self._api.upload_data(op.data_type, op.payload)
            self._record_upload(self._clock())
            return True

        payload = op.payload or {}
        self._api.update_sync_preferences(
            bool(payload.get("syncSettings")), bool(payload.get("syncData"))
        )
        return True

    def handle_push_message(self, message: Dict[str, Any]) -> bool:
        """Handle a real-time sync:data:update message (newer-wins).

        Returns:
            True if the message produced a pending remote update.
        """
        if message.get("dataType") != VAULT_DATA_TYPE:
            return False
        blob = (message.get("data") or {}).get("vault")
        if not isinstance(blob, str) or not blob:
            return False
        return self._consider_remote(blob, message.get("updatedAt"))

    def send_heartbeat(self) -> bool:
        """Best-effort session heartbeat."""
        if not self._api.has_credentials():
            return False
        try:
            self._api.heartbeat(self._device_info)
            return True
        except SyncError as exc:
            logger.debug("Heartbeat failed: %s", exc)
            return False

    def update_preferences(self, sync_settings: bool, sync_data: bool) -> bool:
        """Push sync preferences. Queued for later delivery on failure."""
        try:
            self._api.update_sync_preferences(sync_settings, sync_data)
            return True
        except SyncError as exc:
            logger.warning("Failed to update sync preferences, queueing: %s", exc)
            self._queue.enqueue(
                OperationKind.SETTINGS,
                {"syncSettings": sync_settings, "syncData": sync_data},
            )
            return False

    # ------------------------------------------------------------------
    # Remote update application
    # ------------------------------------------------------------------

    def apply_remote_update(self, password: str) -> bool:
        """Import the held remote vault, decrypted with ``password``.

        Returns:
            True if applied; False if nothing is pending or the vault
            engine rejected the blob or password.
        """
        pending = self.pending_remote_update
        if pending is None:
            return False

        self._local.applying_remote = True
        try:
            ok = self._engine.import_vault(pending.blob, password)
        finally:
            self._local.applying_remote = False

        if not ok:
            return False

        with self._state_lock:
            if self._pending is pending:
                self._pending = None
        self._record_upload(pending.updated_at_ms)
        logger.info("Applied remote vault update")
        return True

    def dismiss_remote_update(self) -> bool:
        """Forget the held remote update. The next local upload replaces it remotely."""
        with self._state_lock:
            had = self._pending is not None
            self._pending = None
        if had:
            self._mark_dirty()
        return had
