"""
Shared pytest fixtures for the Keynotes test suite.

The autouse fixture points the audit logger at a temp directory so tests
never write into ./audit_logs/. Vault fixtures use a low PBKDF2 iteration
count to keep the suite fast.
"""

import pytest

from keynotes.core import AuditLogger, KeyValueStore, set_audit_logger
from keynotes.sync import RealtimeChannel, SyncUnavailable
from keynotes.vault import AesGcmCodec, VaultEngine


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Redirect the global AuditLogger to a temp directory for every test."""
    audit = AuditLogger(log_dir=tmp_path / "audit_logs")
    set_audit_logger(audit)
    yield audit
    audit.close()
    set_audit_logger(None)


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(db_path=tmp_path / "keynotes.db")


@pytest.fixture
def codec():
    return AesGcmCodec(iterations=1000)


@pytest.fixture
def engine(store, codec, clock):
    return VaultEngine(store, codec=codec, clock=clock)


@pytest.fixture
def unlocked_engine(engine):
    assert engine.unlock("correct-horse")
    return engine


class StubChannel(RealtimeChannel):
    """In-memory realtime channel; records sent messages."""

    def __init__(self, connected: bool = True, fail_connect: bool = False):
        super().__init__()
        self.connected = connected
        self.fail_connect = fail_connect
        self.sent = []
        self.connect_calls = 0

    def connect(self):
        self.connect_calls += 1
        if self.fail_connect:
            raise SyncUnavailable("no route to host")
        self.connected = True

    def close(self):
        self.connected = False

    def is_connected(self):
        return self.connected

    def send(self, message):
        if not self.connected:
            return False
        self.sent.append(message)
        return True


@pytest.fixture
def channel():
    return StubChannel()
