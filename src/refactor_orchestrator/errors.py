from __future__ import annotations


class TaskExecutionError(RuntimeError):
    """Raised when a task cannot be carried to a verified completion."""

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = True,
        session_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.recoverable = recoverable
        self.session_id = session_id
        self.detail = detail


class SessionTimeoutError(TaskExecutionError):
    """Raised when an agent session exceeds its time budget."""


class SessionNotFoundError(KeyError):
    """Raised when a bridge is asked about a session it never started."""


class InvalidTransitionError(RuntimeError):
    """Raised when an operation is not allowed in the project's current status."""
