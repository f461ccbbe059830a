"""The single in-memory vault session.

A session is either Locked or Unlocked{password, envelope}. It also owns
the re-entrant lock that serializes every vault operation: engine calls,
the auto-lock tick and the sync threads all take ``session.guard`` before
touching session state, so a read-modify-write of the envelope can never
interleave with another one.
"""

import threading
from typing import Optional

from .exceptions import VaultLocked
from .models import VaultEnvelope


class VaultSession:
    """Holds the master password and decrypted-on-demand envelope while unlocked."""

    def __init__(self):
        self.guard = threading.RLock()
        self._password: Optional[str] = None
        self._envelope: Optional[VaultEnvelope] = None
        self.unlocked_at: Optional[int] = None  # epoch ms

    @property
    def is_unlocked(self) -> bool:
        return self._password is not None and self._envelope is not None

    @property
    def password(self) -> str:
        if self._password is None:
            raise VaultLocked("Vault is locked")
        return self._password

    @property
    def envelope(self) -> VaultEnvelope:
        if self._envelope is None:
            raise VaultLocked("Vault is locked")
        return self._envelope

    def open(self, password: str, envelope: VaultEnvelope, now_ms: int) -> None:
        with self.guard:
            self._password = password
            self._envelope = envelope
            self.unlocked_at = now_ms

    def close(self) -> None:
        """Discard password and envelope. Safe to call when already locked."""
        with self.guard:
            self._password = None
            self._envelope = None
            self.unlocked_at = None

    def replace_envelope(self, envelope: VaultEnvelope) -> None:
        with self.guard:
            if not self.is_unlocked:
                raise VaultLocked("Vault is locked")
            self._envelope = envelope

    def adopt_password(self, password: str) -> None:
        with self.guard:
            if not self.is_unlocked:
                raise VaultLocked("Vault is locked")
            self._password = password

    def __repr__(self) -> str:
        state = "Unlocked" if self.is_unlocked else "Locked"
        return f"<VaultSession {state}>"
