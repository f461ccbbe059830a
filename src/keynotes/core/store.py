# Key/Value Store - durable home for every persisted Keynotes entity
#
# One SQLite table, one row per well-known key (verifier, encrypted vault
# blob, settings JSON, last-unlock time, offline queue, sync tokens).
# Follows the UserPreferences pattern: fresh connection per call, WAL mode,
# upsert on write.
#
# set_many() writes several keys inside a single transaction. Password
# rotation and vault import rely on it so the verifier and the blob can
# never disagree on disk.

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Well-known keys
KEY_MASTER_PASSWORD_HASH = "master_password_hash"
KEY_VAULT = "vault"
KEY_SETTINGS = "settings"
KEY_LAST_UNLOCK_TIME = "last_unlock_time"
KEY_OFFLINE_QUEUE = "offline_queue"
KEY_ACCESS_TOKEN = "sync_access_token"
KEY_REFRESH_TOKEN = "sync_refresh_token"
KEY_SYNC_CONFIG = "sync_config"
KEY_LAST_SYNC_UPLOAD = "sync_last_upload"


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


class KeyValueStore:
    """SQLite key/value store for vault, settings, queue and tokens.

    Args:
        db_path: Path to SQLite file. Defaults to data/keynotes.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path("data/keynotes.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes writers inside this process; SQLite handles the rest.
        self._write_lock = threading.Lock()
        self._init_database()

    def _init_database(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a value by key. Returns default if not found."""
        conn = _connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return default
        return row["value"]

    def set(self, key: str, value: str) -> None:
        """Set a value (upsert)."""
        self.set_many({key: value})

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if the key existed."""
        with self._write_lock:
            conn = _connect(self.db_path)
            try:
                cur = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
                return cur.rowcount > 0
            finally:
                conn.close()

    def set_many(self, values: Mapping[str, Optional[str]]) -> None:
        """Write several keys atomically.

        A value of None deletes the key. Either every change is committed
        or none is.
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._write_lock:
            conn = _connect(self.db_path)
            try:
                with conn:
                    for key, value in values.items():
                        if value is None:
                            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                            continue
                        conn.execute(
                            """INSERT INTO kv_store (key, value, updated_at)
                               VALUES (?, ?, ?)
                               ON CONFLICT(key) DO UPDATE SET
                                   value = excluded.value,
                                   updated_at = excluded.updated_at""",
                            (key, value, now),
                        )
            except sqlite3.Error:
                logger.exception("kv_store transaction rolled back (%d keys)", len(values))
                raise
            finally:
                conn.close()

    def get_all(self) -> Dict[str, str]:
        """Return every stored key/value pair."""
        conn = _connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key, value FROM kv_store ORDER BY key"
            ).fetchall()
        finally:
            conn.close()
        return {row["key"]: row["value"] for row in rows}

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
