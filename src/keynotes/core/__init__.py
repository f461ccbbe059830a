# Core Module - Shared Utilities
#
# Core module provides shared functionality across all Keynotes modules:
# - Audit logging
# - Key/value persistence

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    set_audit_logger,
)
from .store import KeyValueStore

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "set_audit_logger",
    # Persistence
    "KeyValueStore",
]
