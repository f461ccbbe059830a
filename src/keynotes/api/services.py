# Service registry for the local API
#
# Route modules look components up here instead of importing singletons,
# so tests can swap in their own engine, queue or coordinator.

import logging
from typing import Optional

from fastapi import HTTPException, status

from ..config import KeynotesConfig
from ..core import AuditLogger, KeyValueStore, set_audit_logger
from ..sync import (
    OfflineQueue,
    SyncApiClient,
    SyncConfig,
    SyncCoordinator,
    WebSocketChannel,
    websocket_url,
)
from ..vault import AesGcmCodec, AutoLockMonitor, VaultEngine

logger = logging.getLogger(__name__)


class KeynotesServices:
    """Holds the wired-up vault and sync components."""

    def __init__(self):
        self.config: Optional[KeynotesConfig] = None
        self.store: Optional[KeyValueStore] = None
        self.engine: Optional[VaultEngine] = None
        self.auto_lock: Optional[AutoLockMonitor] = None
        self.queue: Optional[OfflineQueue] = None
        self.api_client: Optional[SyncApiClient] = None
        self.coordinator: Optional[SyncCoordinator] = None

    def configure(self, config: KeynotesConfig) -> None:
        """Build every component from ``config``."""
        config.data_dir.mkdir(parents=True, exist_ok=True)
        if config.audit_log_dir is not None:
            set_audit_logger(AuditLogger(config.audit_log_dir))

        store = KeyValueStore(config.db_path)
        engine = VaultEngine(store, codec=AesGcmCodec(config.pbkdf2_iterations))
        api_client = SyncApiClient(store, default_api_base=config.sync_api_base)
        queue = OfflineQueue(store)
        if api_client.get_config() is None and config.sync_client_id:
            api_client.set_config(SyncConfig(
                api_base=config.sync_api_base,
                client_id=config.sync_client_id,
                client_secret=config.sync_client_secret,
            ))

        def channel_url() -> str:
            if config.sync_ws_url:
                return config.sync_ws_url
            current = api_client.get_config()
            return websocket_url(current.api_base if current else config.sync_api_base)

        channel = WebSocketChannel(
            channel_url, token_provider=lambda: api_client.access_token
        )

        self.config = config
        self.store = store
        self.engine = engine
        self.auto_lock = AutoLockMonitor(engine, tick_interval=config.lock_tick)
        self.queue = queue
        self.api_client = api_client
        self.coordinator = SyncCoordinator(
            engine,
            api_client,
            queue,
            channel=channel,
            store=store,
            sync_interval=config.sync_interval,
            heartbeat_interval=config.heartbeat_interval,
        )
        logger.info("Keynotes services configured (data dir %s)", config.data_dir)

    def start(self) -> None:
        if self.auto_lock is not None:
            self.auto_lock.start()
        if self.coordinator is not None and self.engine is not None:
            if self.engine.get_settings().sync_enabled:
                self.coordinator.start()

    def stop(self) -> None:
        if self.coordinator is not None:
            self.coordinator.stop()
        if self.auto_lock is not None:
            self.auto_lock.stop()
        if self.engine is not None:
            self.engine.lock(reason="shutdown")


services = KeynotesServices()


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return component


def get_engine() -> VaultEngine:
    return _require(services.engine, "Vault")


def get_coordinator() -> SyncCoordinator:
    return _require(services.coordinator, "Sync coordinator")


def get_api_client() -> SyncApiClient:
    return _require(services.api_client, "Sync client")


def get_queue() -> OfflineQueue:
    return _require(services.queue, "Offline queue")
