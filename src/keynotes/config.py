# Keynotes Configuration
#
# Reads KEYNOTES_* environment variables, after loading a .env file from
# the working directory when one exists. Every field has a default so a
# bare `keynotes` run works out of the box.

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .sync.api_client import DEFAULT_API_BASE
from .sync.coordinator import HEARTBEAT_INTERVAL, SYNC_INTERVAL
from .vault.auto_lock import TICK_INTERVAL
from .vault.encryption import AesGcmCodec

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default


@dataclass
class KeynotesConfig:
    """Runtime configuration."""

    data_dir: Path = Path("data")
    audit_log_dir: Optional[Path] = None
    sync_api_base: str = DEFAULT_API_BASE
    sync_ws_url: Optional[str] = None
    sync_client_id: str = ""
    sync_client_secret: str = ""
    sync_interval: int = SYNC_INTERVAL
    heartbeat_interval: int = HEARTBEAT_INTERVAL
    lock_tick: int = TICK_INTERVAL
    pbkdf2_iterations: int = AesGcmCodec.PBKDF2_ITERATIONS
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @property
    def db_path(self) -> Path:
        return self.data_dir / "keynotes.db"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "KeynotesConfig":
        """Build a config from the environment (and ``env_file``/.env)."""
        load_dotenv(env_file or find_dotenv(usecwd=True))

        data_dir = Path(os.getenv("KEYNOTES_DATA_DIR", "data"))
        audit_dir = os.getenv("KEYNOTES_AUDIT_LOG_DIR")
        return cls(
            data_dir=data_dir,
            audit_log_dir=Path(audit_dir) if audit_dir else None,
            sync_api_base=os.getenv("KEYNOTES_SYNC_API_BASE", DEFAULT_API_BASE),
            sync_ws_url=os.getenv("KEYNOTES_SYNC_WS_URL") or None,
            sync_client_id=os.getenv("KEYNOTES_SYNC_CLIENT_ID", ""),
            sync_client_secret=os.getenv("KEYNOTES_SYNC_CLIENT_SECRET", ""),
            sync_interval=_env_int("KEYNOTES_SYNC_INTERVAL", SYNC_INTERVAL),
            heartbeat_interval=_env_int("KEYNOTES_HEARTBEAT_INTERVAL", HEARTBEAT_INTERVAL),
            lock_tick=_env_int("KEYNOTES_LOCK_TICK", TICK_INTERVAL),
            pbkdf2_iterations=_env_int("KEYNOTES_PBKDF2_ITERATIONS", AesGcmCodec.PBKDF2_ITERATIONS),
            api_host=os.getenv("KEYNOTES_API_HOST", "127.0.0.1"),
            api_port=_env_int("KEYNOTES_API_PORT", 8000),
        )
