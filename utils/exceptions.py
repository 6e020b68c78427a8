"""Exception types raised by the inspection core."""

from __future__ import annotations


class QCError(Exception):
    """Base class for quality-control errors."""


class ConfigurationError(QCError):
    """Raised when an environment option cannot be parsed."""


class ValidationError(QCError):
    """Raised for malformed codes or quality data."""


class SessionError(QCError):
    """Base class for session lifecycle errors."""


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionInactiveError(SessionError):
    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} is not active")
        self.session_id = session_id


class DuplicateSessionError(SessionError):
    """The worker already owns an active session."""

    def __init__(self, worker_id: str, session_id: int | None = None) -> None:
        super().__init__(f"Worker {worker_id} already has an active session")
        self.worker_id = worker_id
        self.session_id = session_id


class StoreError(QCError):
    """Wraps a failure of the underlying SQLite store."""


class BulkAbortError(StoreError):
    """Bulk abort rolled back; the session may still have active items."""

    def __init__(self, session_id: int, cause: Exception) -> None:
        super().__init__(
            f"Aborting active items for session {session_id} failed; "
            f"the session may still have active items ({cause})"
        )
        self.session_id = session_id


class ItemNotFoundError(QCError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"Inspection item {item_id} not found")
        self.item_id = item_id
