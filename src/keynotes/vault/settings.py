# Settings Store
# Plain-JSON AppSettings persisted next to the vault (never encrypted).
# Follows the UserPreferences pattern: thin wrapper over the key/value store,
# defaults when missing, upsert on save.

import json
import logging
from dataclasses import fields
from typing import Any

from ..core.store import KEY_SETTINGS, KeyValueStore
from .models import AppSettings

logger = logging.getLogger(__name__)

_SETTING_NAMES = {f.name for f in fields(AppSettings)}


class SettingsStore:
    """Load and save AppSettings.

    Args:
        store: Key/value store shared with the vault engine.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    def get(self) -> AppSettings:
        """Return stored settings, or defaults if missing or unreadable."""
        raw = self._store.get(KEY_SETTINGS)
        if not raw:
            return AppSettings()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored settings are not valid JSON, using defaults")
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()
        return AppSettings.from_dict(data)

    def save(self, settings: AppSettings) -> None:
        self._store.set(KEY_SETTINGS, json.dumps(settings.to_dict()))

    def update(self, **changes: Any) -> AppSettings:
        """Merge ``changes`` into the stored settings and persist.

        Raises:
            ValueError: Unknown setting name.
        """
        merged = self.get()
        for name, value in changes.items():
            if name not in _SETTING_NAMES:
                raise ValueError(f"Unknown setting: {name}")
            setattr(merged, name, value)
        # Round-trip through from_dict so bad values fall back to defaults
        merged = AppSettings.from_dict(merged.to_dict())
        self.save(merged)
        return merged
