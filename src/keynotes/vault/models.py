"""Vault data model -- secret entries, the vault envelope, and app settings.

Entries are a tagged union of three independent record types keyed by
``kind`` (JSON ``type``). Nothing here encrypts anything: the engine uses
``SECRET_FIELDS`` to decide which attributes to pass through the codec.

JSON keys follow the exported-blob format (camelCase) so vaults exported
by other Keynotes clients import cleanly.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

SCHEMA_VERSION = 1

KIND_NOTE = "note"
KIND_KEY = "key"
KIND_PASSWORD = "password"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_entry_id() -> str:
    return str(uuid.uuid4())


# ── Entries ──────────────────────────────────────────────────────────


@dataclass
class NoteEntry:
    """Free text or code snippet. ``content`` is secret."""

    id: str
    title: str
    content: str
    language: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    encrypted: bool = False
    kind: str = field(default=KIND_NOTE, init=False)


@dataclass
class KeyEntry:
    """Key pair. ``key`` (private material) and ``public_key`` are secret."""

    id: str
    title: str
    key: str
    public_key: Optional[str] = None
    algorithm: Optional[str] = None
    key_size: Optional[int] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    encrypted: bool = False
    kind: str = field(default=KIND_KEY, init=False)


@dataclass
class PasswordEntry:
    """Website or service credential. ``password`` is secret."""

    id: str
    title: str
    password: str
    username: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    encrypted: bool = False
    kind: str = field(default=KIND_PASSWORD, init=False)


Entry = Union[NoteEntry, KeyEntry, PasswordEntry]

ENTRY_TYPES: Dict[str, type] = {
    KIND_NOTE: NoteEntry,
    KIND_KEY: KeyEntry,
    KIND_PASSWORD: PasswordEntry,
}

# Attributes that hold secret material, per kind. Optional secrets that
# are None are skipped by the engine.
SECRET_FIELDS: Dict[str, Tuple[str, ...]] = {
    KIND_NOTE: ("content",),
    KIND_KEY: ("key", "public_key"),
    KIND_PASSWORD: ("password",),
}

# (attribute, json key) pairs
_COMMON_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("id", "id"),
    ("title", "title"),
    ("category", "category"),
    ("tags", "tags"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("encrypted", "encrypted"),
)

_KIND_FIELDS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    KIND_NOTE: (("content", "content"), ("language", "language")),
    KIND_KEY: (
        ("key", "key"),
        ("public_key", "publicKey"),
        ("algorithm", "algorithm"),
        ("key_size", "keySize"),
        ("notes", "notes"),
    ),
    KIND_PASSWORD: (
        ("username", "username"),
        ("password", "password"),
        ("url", "url"),
        ("notes", "notes"),
    ),
}

_REQUIRED: Dict[str, Tuple[str, ...]] = {
    KIND_NOTE: ("id", "title", "content"),
    KIND_KEY: ("id", "title", "key"),
    KIND_PASSWORD: ("id", "title", "password"),
}


def secret_fields(entry: Entry) -> Tuple[str, ...]:
    """Names of the secret-bearing attributes for ``entry``'s kind."""
    try:
        return SECRET_FIELDS[entry.kind]
    except (KeyError, AttributeError):
        raise TypeError(f"Not a vault entry: {entry!r}") from None


def entry_to_dict(entry: Entry) -> Dict[str, Any]:
    """Serialize an entry. Optional fields that are None are omitted."""
    data: Dict[str, Any] = {"type": entry.kind}
    for attr, key in _COMMON_FIELDS + _KIND_FIELDS[entry.kind]:
        value = getattr(entry, attr)
        if value is None:
            continue
        data[key] = list(value) if attr == "tags" else value
    return data


def entry_from_dict(data: Dict[str, Any]) -> Entry:
    """Deserialize an entry. Raises ValueError on bad data."""
    if not isinstance(data, dict):
        raise ValueError(f"Entry must be an object, got {type(data).__name__}")

    kind = data.get("type")
    entry_cls = ENTRY_TYPES.get(kind)
    if entry_cls is None:
        raise ValueError(f"Unknown entry type: {kind!r}")

    kwargs: Dict[str, Any] = {}
    for attr, key in _COMMON_FIELDS + _KIND_FIELDS[kind]:
        if key in data and data[key] is not None:
            kwargs[attr] = data[key]

    missing = [attr for attr in _REQUIRED[kind] if attr not in kwargs]
    if missing:
        raise ValueError(f"Missing required fields for {kind} entry: {missing}")

    kwargs["tags"] = [str(t) for t in kwargs.get("tags", [])]
    kwargs["encrypted"] = bool(kwargs.get("encrypted", False))
    if "key_size" in kwargs:
        kwargs["key_size"] = int(kwargs["key_size"])
    return entry_cls(**kwargs)


# ── Vault envelope ───────────────────────────────────────────────────


@dataclass
class VaultEnvelope:
    """Everything that gets serialized and encrypted as one vault blob."""

    password_hash: str
    entries: List[Entry] = field(default_factory=list)
    version: int = SCHEMA_VERSION
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def new(cls, password_hash: str) -> "VaultEnvelope":
        return cls(password_hash=password_hash)

    def find(self, entry_id: str) -> Optional[int]:
        """Index of the entry with ``entry_id``, or None."""
        for index, entry in enumerate(self.entries):
            if entry.id == entry_id:
                return index
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passwordHash": self.password_hash,
            "entries": [entry_to_dict(e) for e in self.entries],
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultEnvelope":
        if not isinstance(data, dict):
            raise ValueError("Vault envelope must be an object")
        if "passwordHash" not in data:
            raise ValueError("Vault envelope is missing passwordHash")

        entries = [entry_from_dict(e) for e in data.get("entries") or []]
        seen = set()
        for entry in entries:
            if entry.id in seen:
                raise ValueError(f"Duplicate entry id in vault: {entry.id}")
            seen.add(entry.id)

        now = utc_now_iso()
        return cls(
            password_hash=str(data["passwordHash"]),
            entries=entries,
            version=int(data.get("version", SCHEMA_VERSION)),
            created_at=str(data.get("createdAt") or now),
            updated_at=str(data.get("updatedAt") or now),
        )

    @classmethod
    def from_json(cls, raw: str) -> "VaultEnvelope":
        """Parse an envelope. Raises ValueError on bad JSON or structure."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid vault JSON: {exc}") from exc
        return cls.from_dict(data)


# ── App settings ─────────────────────────────────────────────────────


@dataclass
class AppSettings:
    """User preferences stored next to (not inside) the vault."""

    auto_lock: bool = True
    lock_timeout: int = 15  # minutes
    sync_enabled: bool = False
    connected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autoLock": self.auto_lock,
            "lockTimeout": self.lock_timeout,
            "syncEnabled": self.sync_enabled,
            "connected": self.connected,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSettings":
        defaults = cls()
        timeout = data.get("lockTimeout", defaults.lock_timeout)
        try:
            timeout = int(timeout)
        except (TypeError, ValueError):
            timeout = defaults.lock_timeout
        return cls(
            auto_lock=bool(data.get("autoLock", defaults.auto_lock)),
            lock_timeout=timeout if timeout > 0 else defaults.lock_timeout,
            sync_enabled=bool(data.get("syncEnabled", defaults.sync_enabled)),
            connected=bool(data.get("connected", defaults.connected)),
        )
