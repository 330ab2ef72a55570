"""Exception types raised across the proctoring core."""
from __future__ import annotations


class ProctoringError(Exception):
    """Base class for errors surfaced by the proctoring core."""


class SessionNotFoundError(ProctoringError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Proctoring session {session_id} not found")
        self.session_id = session_id


class PersistenceError(ProctoringError):
    """A write could not be made durable after all retry attempts."""


class CaptureError(ProctoringError):
    """Raised by device factories; the capture controller converts it to a result."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason
