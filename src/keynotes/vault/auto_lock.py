"""Auto-lock monitor -- locks the vault after a period of inactivity.

Evaluated once a minute while the vault is unlocked. Uses
threading.Event.wait(interval) for interruptible sleep, the same pattern
as the heartbeat sender.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .models import AppSettings
from .vault_engine import VaultEngine

logger = logging.getLogger(__name__)

TICK_INTERVAL = 60  # seconds
GRACE_PERIOD_MS = 1000  # ignore ticks right after unlock (clock skew)


def should_lock(now_ms: int, last_activity_ms: Optional[int], settings: AppSettings) -> bool:
    """Pure auto-lock policy.

    Locks only when auto-lock is enabled, a last unlock/write time is
    known, at least the grace period has passed, and the elapsed time
    exceeds the configured timeout.
    """
    if not settings.auto_lock or last_activity_ms is None:
        return False
    elapsed = now_ms - last_activity_ms
    if elapsed < GRACE_PERIOD_MS:
        return False
    return elapsed > settings.lock_timeout * 60 * 1000


class AutoLockMonitor:
    """Background daemon thread that applies ``should_lock`` on a fixed tick."""

    def __init__(
        self,
        engine: VaultEngine,
        tick_interval: float = TICK_INTERVAL,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._engine = engine
        self._interval = tick_interval
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="vault-auto-lock", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.check()
            except Exception:
                logger.exception("Auto-lock tick failed")

    def check(self) -> bool:
        """Evaluate the policy once. Returns True if the vault was locked."""
        with self._engine.session.guard:
            if not self._engine.is_unlocked():
                return False
            settings = self._engine.get_settings()
            last_activity = self._engine.last_activity_ms()
            if not should_lock(self._clock(), last_activity, settings):
                return False
            logger.info(
                "Auto-locking vault after %d minute(s) of inactivity",
                settings.lock_timeout,
            )
            self._engine.lock(reason="auto")
        return True
