# Sync Module - Durable Offline Queue
#
# Outbox for remote writes that could not be delivered. Every change is
# persisted immediately so queued uploads survive restarts. Replays are
# FIFO by enqueue time; an operation that fails MAX_RETRIES times is
# dropped and logged, never retried again.

import json
import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core import EventSeverity, EventType, get_audit_logger
from ..core.store import KEY_OFFLINE_QUEUE, KeyValueStore
from .exceptions import QueueExhausted

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

_ID_ALPHABET = string.ascii_lowercase + string.digits


class OperationKind(str, Enum):
    """What a queued operation writes to the remote service."""
    SETTINGS = "settings"
    DATA = "data"


@dataclass
class QueuedOperation:
    """One undelivered remote write."""

    id: str
    kind: OperationKind
    payload: Any
    data_type: Optional[str] = None
    timestamp: int = 0  # epoch ms
    retries: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "dataType": self.data_type,
            "data": self.payload,
            "timestamp": self.timestamp,
            "retries": self.retries,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "QueuedOperation":
        """Raises ValueError on bad data."""
        missing = {"id", "type"} - set(obj)
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        return cls(
            id=str(obj["id"]),
            kind=OperationKind(obj["type"]),
            payload=obj.get("data"),
            data_type=obj.get("dataType"),
            timestamp=int(obj.get("timestamp", 0)),
            retries=int(obj.get("retries", 0)),
        )


@dataclass
class QueueReport:
    """Outcome of one process_queue() pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: List[str] = field(default_factory=list)
    skipped: bool = False  # another pass was already running


Replay = Callable[[QueuedOperation], Any]


class OfflineQueue:
    """Persistent bounded-retry outbox.

    Args:
        store: Key/value store the queue is persisted to.
        max_retries: Failed attempts after which an operation is dropped.
        clock: Callable returning epoch milliseconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_retries: int = MAX_RETRIES,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store
        self._max_retries = max_retries
        self._clock = clock or (lambda: int(time.time() * 1000))

        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._items: List[QueuedOperation] = self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[QueuedOperation]:
        raw = self._store.get(KEY_OFFLINE_QUEUE)
        if not raw:
            return []
        try:
            return [QueuedOperation.from_dict(obj) for obj in json.loads(raw)]
        except (ValueError, TypeError) as exc:
            logger.error("Error loading offline queue, starting empty: %s", exc)
            return []

    def _save(self) -> None:
        data = json.dumps([op.to_dict() for op in self._items])
        self._store.set(KEY_OFFLINE_QUEUE, data)

    # ------------------------------------------------------------------
    # Enqueue / remove
    # ------------------------------------------------------------------

    def enqueue(
        self,
        kind: OperationKind,
        payload: Any,
        data_type: Optional[str] = None,
    ) -> str:
        """Append an operation with a zero retry counter and persist.

        Returns:
            The new operation id.
        """
        kind = OperationKind(kind)
        now = self._clock()
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        op = QueuedOperation(
            id=f"{kind.value}_{now}_{suffix}",
            kind=kind,
            payload=payload,
            data_type=data_type,
            timestamp=now,
        )
        with self._lock:
            self._items.append(op)
            self._save()
        logger.info("Queued %s operation %s for later delivery", kind.value, op.id)
        return op.id

    def remove(self, op_id: str) -> bool:
        """Remove an operation. Returns True if it was queued."""
        with self._lock:
            before = len(self._items)
            self._items = [op for op in self._items if op.id != op_id]
            if len(self._items) == before:
                return False
            self._save()
            return True

    def clear(self) -> int:
        """Clear all operations. Returns count removed."""
        with self._lock:
            count = len(self._items)
            self._items = []
            self._save()
            return count

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def process_queue(self, replay: Replay) -> QueueReport:
        """Replay every operation queued at call time, oldest first.

        ``replay`` signals failure by raising or by returning False.
        Successful operations are removed. Failed ones have their retry
        counter incremented and are dropped once it reaches the ceiling.
        Operations enqueued during the pass wait for the next call.
        """
        report = QueueReport()
        if not self._drain_lock.acquire(blocking=False):
            report.skipped = True
            return report

        try:
            with self._lock:
                snapshot = [op.id for op in self._items]

            for op_id in snapshot:
                op = self._find(op_id)
                if op is None:
                    continue  # removed while we were replaying earlier items

                report.processed += 1
                try:
                    ok = replay(replace(op)) is not False
                except Exception as exc:
                    logger.warning("Error processing queued operation %s: %s", op.id, exc)
                    ok = False

                if ok:
                    self.remove(op.id)
                    report.succeeded += 1
                    continue

                report.failed += 1
                if self._record_failure(op.id):
                    report.dropped.append(op.id)
        finally:
            self._drain_lock.release()

        return report

    def _find(self, op_id: str) -> Optional[QueuedOperation]:
        with self._lock:
            for op in self._items:
                if op.id == op_id:
                    return op
        return None

    def _record_failure(self, op_id: str) -> bool:
        """Bump the retry counter. Returns True if the operation was dropped."""
        with self._lock:
            op = self._find(op_id)
            if op is None:
                return False
            op.retries += 1
            if op.retries < self._max_retries:
                self._save()
                return False
            self._items = [o for o in self._items if o.id != op_id]
            self._save()

        exhausted = QueueExhausted(op.id, op.retries)
        logger.warning(str(exhausted))
        get_audit_logger().log_event(
            event_type=EventType.SYNC_DROPPED,
            severity=EventSeverity.ALERT,
            message=str(exhausted),
            details={"operation_id": op.id, "kind": op.kind.value, "data_type": op.data_type},
        )
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_queue(self) -> List[QueuedOperation]:
        """Copy of the queued operations, oldest first."""
        with self._lock:
            return [replace(op) for op in self._items]

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._items),
                "max_retries": self._max_retries,
                "oldest_timestamp": self._items[0].timestamp if self._items else None,
            }
