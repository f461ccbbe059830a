# Vault Module - Encrypted secrets vault
#
# Notes, key pairs and password credentials in one envelope,
# encrypted with the master password (PBKDF2 + AES-256-GCM),
# with field-level encryption of every secret value.

from .auto_lock import AutoLockMonitor, should_lock
from .encryption import AesGcmCodec, CryptoCodec
from .exceptions import (
    DecryptionError,
    VaultCorruptOrWrongPassword,
    VaultError,
    VaultLocked,
    WrongPassword,
)
from .models import (
    AppSettings,
    Entry,
    KeyEntry,
    NoteEntry,
    PasswordEntry,
    VaultEnvelope,
)
from .session import VaultSession
from .settings import SettingsStore
from .vault_engine import VaultEngine, VaultEvent

__all__ = [
    "AesGcmCodec",
    "AppSettings",
    "AutoLockMonitor",
    "CryptoCodec",
    "DecryptionError",
    "Entry",
    "KeyEntry",
    "NoteEntry",
    "PasswordEntry",
    "SettingsStore",
    "VaultCorruptOrWrongPassword",
    "VaultEngine",
    "VaultEnvelope",
    "VaultError",
    "VaultEvent",
    "VaultLocked",
    "VaultSession",
    "WrongPassword",
    "should_lock",
]
