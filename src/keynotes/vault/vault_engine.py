# Vault Engine - Encrypted secrets vault
#
# Owns the single vault session (Locked -> Unlocked -> Locked), reads and
# writes the encrypted envelope through the key/value store, and applies
# field-level encryption to every entry's secret fields.
#
# Security:
# - Master password verified against a stored one-way verifier
# - Whole envelope encrypted with the master password at rest
# - Secret fields additionally encrypted one by one inside the envelope
# - Password rotation stages a fully re-encrypted envelope and commits
#   verifier + blob in a single store transaction
# - Audit logging for all vault access (never secret values)

import logging
import secrets
import threading
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core import EventSeverity, EventType, get_audit_logger
from ..core.store import (
    KEY_LAST_UNLOCK_TIME,
    KEY_MASTER_PASSWORD_HASH,
    KEY_VAULT,
    KeyValueStore,
)
from .encryption import AesGcmCodec, CryptoCodec
from .exceptions import DecryptionError, VaultCorruptOrWrongPassword, VaultLocked
from .models import (
    ENTRY_TYPES,
    AppSettings,
    Entry,
    VaultEnvelope,
    secret_fields,
    utc_now_iso,
)
from .session import VaultSession
from .settings import SettingsStore

logger = logging.getLogger(__name__)

_ENTRY_CLASSES = tuple(ENTRY_TYPES.values())


class VaultEvent(str, Enum):
    """State changes published to subscribers."""
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    ENTRY_SAVED = "entry_saved"
    ENTRY_DELETED = "entry_deleted"
    PASSWORD_CHANGED = "password_changed"
    IMPORTED = "imported"


VaultListener = Callable[[VaultEvent, Dict[str, Any]], None]


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class VaultEngine:
    """
    Single source of truth for vault state.

    Every public method takes the session guard, so callers on other
    threads (auto-lock tick, sync coordinator, API handlers) are serialized
    against each other. Observers learn about changes through subscribe()
    instead of polling is_unlocked().

    Args:
        store: Key/value store holding the verifier, blob and settings.
        codec: Crypto codec (defaults to AesGcmCodec).
        session: Session handle (defaults to a fresh Locked session).
        clock: Callable returning epoch milliseconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        codec: Optional[CryptoCodec] = None,
        session: Optional[VaultSession] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store
        self._codec = codec or AesGcmCodec()
        self._session = session or VaultSession()
        self._clock = clock or _epoch_ms
        self.settings = SettingsStore(store)

        self._listeners: List[VaultListener] = []
        self._listeners_lock = threading.Lock()

        self.logger = get_audit_logger()

    @property
    def session(self) -> VaultSession:
        return self._session

    @property
    def codec(self) -> CryptoCodec:
        return self._codec

    # ------------------------------------------------------------------
    # Lock / unlock
    # ------------------------------------------------------------------

    def vault_exists(self) -> bool:
        """True once a master password verifier has been stored."""
        return bool(self._store.get(KEY_MASTER_PASSWORD_HASH))

    def is_unlocked(self) -> bool:
        return self._session.is_unlocked

    def unlock(self, password: str) -> bool:
        """
        Unlock the vault with the master password.

        First run (no stored verifier): creates an empty vault protected
        by ``password`` and unlocks it.

        Returns:
            True if unlocked, False if the password does not match.

        Raises:
            VaultCorruptOrWrongPassword: Verifier matched but the stored
                blob could not be decrypted or parsed.
        """
        with self._session.guard:
            stored_hash = self._store.get(KEY_MASTER_PASSWORD_HASH)
            password_hash = self._codec.hash_password(password)
            now = self._clock()

            if not stored_hash:
                envelope = VaultEnvelope.new(password_hash)
                self._store.set_many({
                    KEY_MASTER_PASSWORD_HASH: password_hash,
                    KEY_VAULT: self._codec.encrypt(envelope.to_json(), password),
                    KEY_LAST_UNLOCK_TIME: str(now),
                })
                self._session.open(password, envelope, now)
                self.logger.log_vault_event(
                    EventType.VAULT_CREATED, "New vault created and unlocked"
                )
            else:
                if not secrets.compare_digest(password_hash.encode(), stored_hash.encode()):
                    self.logger.log_event(
                        event_type=EventType.VAULT_UNLOCK_FAILED,
                        severity=EventSeverity.INVESTIGATE,
                        message="Vault unlock failed: incorrect password",
                    )
                    return False

                try:
                    envelope = self._load_envelope(password, stored_hash)
                except VaultCorruptOrWrongPassword as exc:
                    self._session.close()
                    self.logger.log_event(
                        event_type=EventType.VAULT_ERROR,
                        severity=EventSeverity.CRITICAL,
                        message=f"Vault unlock failed after verifier match: {exc}",
                    )
                    raise

                self._session.open(password, envelope, now)
                self._store.set(KEY_LAST_UNLOCK_TIME, str(now))
                self.logger.log_vault_event(
                    EventType.VAULT_UNLOCKED,
                    "Vault unlocked",
                    details={"entries": len(envelope.entries)},
                )

        self._publish(VaultEvent.UNLOCKED)
        return True

    def lock(self, reason: str = "manual") -> None:
        """Discard the password and decrypted envelope. Idempotent."""
        with self._session.guard:
            was_unlocked = self._session.is_unlocked
            self._session.close()
            self._store.delete(KEY_LAST_UNLOCK_TIME)

        if not was_unlocked:
            return

        event_type = EventType.VAULT_AUTO_LOCKED if reason == "auto" else EventType.VAULT_LOCKED
        self.logger.log_vault_event(event_type, "Vault locked", details={"reason": reason})
        self._publish(VaultEvent.LOCKED, {"reason": reason})

    def _load_envelope(self, password: str, stored_hash: str) -> VaultEnvelope:
        blob = self._store.get(KEY_VAULT)
        if not blob:
            # Verifier without a blob: start an empty vault under it
            logger.warning("Verifier present but no vault blob stored; starting empty vault")
            return VaultEnvelope.new(stored_hash)

        try:
            raw = self._codec.decrypt(blob, password)
        except DecryptionError as exc:
            raise VaultCorruptOrWrongPassword(
                "Stored vault failed authentication: it was modified or is "
                "encrypted under a different password than the stored verifier"
            ) from exc

        try:
            envelope = VaultEnvelope.from_json(raw)
        except ValueError as exc:
            raise VaultCorruptOrWrongPassword(
                f"Stored vault decrypted but is malformed: {exc}"
            ) from exc

        if not secrets.compare_digest(envelope.password_hash.encode(), stored_hash.encode()):
            logger.warning("Vault envelope verifier differs from stored verifier")
        return envelope

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _require_unlocked(self) -> None:
        if not self._session.is_unlocked:
            raise VaultLocked("Vault is locked")

    def get_entries(self) -> List[Entry]:
        """
        Return every entry with secret fields decrypted.

        Raises:
            VaultLocked: Vault is not unlocked.
        """
        with self._session.guard:
            self._require_unlocked()
            password = self._session.password
            return [self._decrypt_entry(e, password) for e in self._session.envelope.entries]

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        """
        Return one decrypted entry, or None if not found.

        Raises:
            VaultLocked: Vault is not unlocked.
        """
        with self._session.guard:
            self._require_unlocked()
            envelope = self._session.envelope
            index = envelope.find(entry_id)
            if index is None:
                return None
            return self._decrypt_entry(envelope.entries[index], self._session.password)

    def save_entry(self, entry: Entry) -> None:
        """
        Insert or replace an entry (matched by id) and persist the vault.

        Raises:
            VaultLocked: Vault is not unlocked.
            DecryptionError: Entry arrived flagged encrypted but its secret
                fields do not decrypt under the active password.
            TypeError: Not a vault entry.
        """
        if not isinstance(entry, _ENTRY_CLASSES):
            raise TypeError(f"Not a vault entry: {type(entry).__name__}")

        with self._session.guard:
            self._require_unlocked()
            password = self._session.password
            stored = self._encrypt_entry(entry, password)

            envelope = self._session.envelope
            entries = list(envelope.entries)
            index = envelope.find(entry.id)
            if index is not None:
                entries[index] = stored
            else:
                entries.append(stored)

            staged = replace(envelope, entries=entries, updated_at=utc_now_iso())
            self._persist(staged, password)
            self._session.replace_envelope(staged)

        self.logger.log_vault_event(
            EventType.VAULT_ENTRY_SAVED,
            f"Entry saved: {entry.title}",
            details={"entry_id": entry.id, "kind": entry.kind, "replaced": index is not None},
        )
        self._publish(VaultEvent.ENTRY_SAVED, {"entry_id": entry.id})

    def delete_entry(self, entry_id: str) -> bool:
        """
        Remove an entry by id. Deleting an unknown id is a no-op.

        Returns:
            True if an entry was removed.

        Raises:
            VaultLocked: Vault is not unlocked.
        """
        with self._session.guard:
            self._require_unlocked()
            envelope = self._session.envelope
            if envelope.find(entry_id) is None:
                logger.debug("delete_entry: %s not present", entry_id)
                return False

            staged = replace(
                envelope,
                entries=[e for e in envelope.entries if e.id != entry_id],
                updated_at=utc_now_iso(),
            )
            self._persist(staged, self._session.password)
            self._session.replace_envelope(staged)

        self.logger.log_vault_event(
            EventType.VAULT_ENTRY_DELETED, "Entry deleted", details={"entry_id": entry_id}
        )
        self._publish(VaultEvent.ENTRY_DELETED, {"entry_id": entry_id})
        return True

    # ------------------------------------------------------------------
    # Field-level encryption
    # ------------------------------------------------------------------

    def _encrypt_entry(self, entry: Entry, password: str) -> Entry:
        # Round-tripped records come back flagged; never double-encrypt
        if entry.encrypted:
            entry = self._decrypt_entry(entry, password)

        changes = {
            name: self._codec.encrypt(getattr(entry, name), password)
            for name in secret_fields(entry)
            if getattr(entry, name) is not None
        }
        return replace(entry, encrypted=True, tags=list(entry.tags), **changes)

    def _decrypt_entry(self, entry: Entry, password: str) -> Entry:
        if not entry.encrypted:
            return replace(entry, tags=list(entry.tags))

        changes = {
            name: self._codec.decrypt(getattr(entry, name), password)
            for name in secret_fields(entry)
            if getattr(entry, name) is not None
        }
        return replace(entry, encrypted=False, tags=list(entry.tags), **changes)

    def _persist(
        self,
        envelope: VaultEnvelope,
        password: str,
        extra: Optional[Dict[str, Optional[str]]] = None,
    ) -> None:
        """Encrypt the whole envelope and commit it (plus ``extra`` keys) atomically."""
        values: Dict[str, Optional[str]] = {
            KEY_VAULT: self._codec.encrypt(envelope.to_json(), password),
            KEY_LAST_UNLOCK_TIME: str(self._clock()),
        }
        if extra:
            values.update(extra)
        self._store.set_many(values)

    # ------------------------------------------------------------------
    # Password rotation
    # ------------------------------------------------------------------

    def change_password(self, old_password: str, new_password: str) -> bool:
        """
        Re-encrypt the whole vault under a new master password.

        Verifies ``old_password`` before touching anything. The fully
        re-encrypted envelope and the new verifier are committed in one
        store transaction; only then does the session adopt the new
        password. If staging fails the session is locked and the stored
        vault is left exactly as it was (old password still valid).

        Returns:
            True on success, False if locked or ``old_password`` is wrong.
        """
        if not new_password:
            raise ValueError("New master password must not be empty")

        with self._session.guard:
            if not self._session.is_unlocked:
                return False

            stored_hash = self._store.get(KEY_MASTER_PASSWORD_HASH)
            if not stored_hash or not self._codec.verify_password(old_password, stored_hash):
                self.logger.log_event(
                    event_type=EventType.VAULT_UNLOCK_FAILED,
                    severity=EventSeverity.INVESTIGATE,
                    message="Password change rejected: incorrect current password",
                )
                return False

            envelope = self._session.envelope
            new_hash = self._codec.hash_password(new_password)
            try:
                plain = [self._decrypt_entry(e, old_password) for e in envelope.entries]
                staged = replace(
                    envelope,
                    password_hash=new_hash,
                    entries=[self._encrypt_entry(e, new_password) for e in plain],
                    updated_at=utc_now_iso(),
                )
                self._persist(staged, new_password, {KEY_MASTER_PASSWORD_HASH: new_hash})
            except Exception:
                # Nothing was committed; drop the session rather than keep
                # state we could not re-encrypt.
                self._session.close()
                self._store.delete(KEY_LAST_UNLOCK_TIME)
                self.logger.log_event(
                    event_type=EventType.VAULT_ERROR,
                    severity=EventSeverity.CRITICAL,
                    message="Password change aborted before commit; vault locked",
                )
                raise

            self._session.adopt_password(new_password)
            self._session.replace_envelope(staged)

        self.logger.log_vault_event(
            EventType.VAULT_PASSWORD_CHANGED,
            "Master password changed",
            details={"entries": len(staged.entries)},
        )
        self._publish(VaultEvent.PASSWORD_CHANGED)
        return True

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_vault(self) -> str:
        """
        Return the current envelope encrypted under the active password.

        Raises:
            VaultLocked: Vault is not unlocked.
        """
        with self._session.guard:
            self._require_unlocked()
            blob = self._codec.encrypt(
                self._session.envelope.to_json(), self._session.password
            )
        self.logger.log_vault_event(EventType.VAULT_EXPORTED, "Vault exported")
        return blob

    def import_vault(self, blob: str, password: str) -> bool:
        """
        Import an exported vault blob.

        The blob must decrypt under ``password`` and carry a verifier that
        matches ``hash_password(password)``. If the session is unlocked with
        the same password the envelope is replaced in place. Otherwise the
        blob and verifier are stored for the next unlock; a session unlocked
        under a different password is locked, since its password no longer
        opens the stored vault.

        Returns:
            True if imported, False if the blob or password is rejected.
        """
        try:
            imported = VaultEnvelope.from_json(self._codec.decrypt(blob, password))
        except (DecryptionError, ValueError) as exc:
            self.logger.log_event(
                event_type=EventType.VAULT_ERROR,
                severity=EventSeverity.ALERT,
                message=f"Vault import rejected: {type(exc).__name__}",
            )
            return False

        password_hash = self._codec.hash_password(password)
        if not secrets.compare_digest(imported.password_hash.encode(), password_hash.encode()):
            self.logger.log_event(
                event_type=EventType.VAULT_ERROR,
                severity=EventSeverity.ALERT,
                message="Vault import rejected: verifier mismatch",
            )
            return False

        relocked = False
        with self._session.guard:
            same_session = (
                self._session.is_unlocked
                and self._codec.verify_password(self._session.password, password_hash)
            )
            if same_session:
                staged = replace(imported, updated_at=utc_now_iso())
                self._persist(staged, password, {KEY_MASTER_PASSWORD_HASH: password_hash})
                self._session.replace_envelope(staged)
            else:
                relocked = self._session.is_unlocked
                self._store.set_many({
                    KEY_VAULT: blob,
                    KEY_MASTER_PASSWORD_HASH: password_hash,
                    KEY_LAST_UNLOCK_TIME: None,
                })
                self._session.close()

        self.logger.log_vault_event(
            EventType.VAULT_IMPORTED,
            "Vault imported",
            details={"entries": len(imported.entries), "applied_to_session": same_session},
        )
        if relocked:
            self._publish(VaultEvent.LOCKED, {"reason": "import"})
        self._publish(VaultEvent.IMPORTED, {"applied_to_session": same_session})
        return True

    # ------------------------------------------------------------------
    # Activity, settings, subscribers
    # ------------------------------------------------------------------

    def last_activity_ms(self) -> Optional[int]:
        """Epoch ms of the last unlock or write, None when locked."""
        raw = self._store.get(KEY_LAST_UNLOCK_TIME)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def get_settings(self) -> AppSettings:
        return self.settings.get()

    def save_settings(self, settings: AppSettings) -> None:
        self.settings.save(settings)

    def status(self) -> Dict[str, Any]:
        with self._session.guard:
            unlocked = self._session.is_unlocked
            count = len(self._session.envelope.entries) if unlocked else None
        return {
            "vault_exists": self.vault_exists(),
            "is_unlocked": unlocked,
            "entry_count": count,
            "last_activity_ms": self.last_activity_ms(),
        }

    def subscribe(self, listener: VaultListener) -> Callable[[], None]:
        """Register a listener for VaultEvents. Returns an unsubscribe callable."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: VaultEvent, detail: Optional[Dict[str, Any]] = None) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, detail or {})
            except Exception:
                logger.exception("Vault listener failed for %s", event.value)
