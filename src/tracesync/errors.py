"""Error taxonomy for trace synchronization.

These exceptions are raised inside a component and converted to a status
field at its boundary; callers inspect ``state``/``status``/``error``
attributes instead of catching them.
"""

from enum import Enum


class ConnectionState(str, Enum):
    """Push stream connection states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    CLOSED = "closed"


class TraceSyncError(Exception):
    """Base class for all trace synchronization errors."""


class EngineError(TraceSyncError):
    """Raised when a call to the remote execution engine fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(TraceSyncError):
    """Push connection lost or failed to establish."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class PollError(TraceSyncError):
    """A run snapshot fetch failed."""

    def __init__(self, message: str, run_id: str | None = None):
        super().__init__(message)
        self.run_id = run_id
