"""
Sync Exception Classes
"""


class SyncError(Exception):
    """Base exception for remote sync operations"""
    pass


class SyncUnavailable(SyncError):
    """Raised when the remote service is unreachable, unconfigured or disabled"""
    pass


class SyncAuthError(SyncError):
    """Raised when the remote service rejects our credentials after a refresh"""
    pass


class QueueExhausted(SyncError):
    """Describes an offline operation dropped after max retries.

    Logged by the offline queue, never raised to callers.
    """

    def __init__(self, operation_id: str, retries: int):
        super().__init__(
            f"Operation {operation_id} exceeded max retries ({retries}), dropped"
        )
        self.operation_id = operation_id
        self.retries = retries


class SyncRequestError(SyncError):
    """Raised when the remote service rejects a request (4xx other than 401)"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
