"""Error taxonomy for taskloop."""

from __future__ import annotations


class TaskGraphError(ValueError):
    """Raised when a task-graph document is malformed or fails validation."""


class IssuesFormatError(ValueError):
    """Raised when a review-issue document has an unsupported shape."""


class PlanNotFoundError(FileNotFoundError):
    """Raised when the required markdown plan does not exist."""


class TaskNotFoundError(KeyError):
    """Raised when a store operation targets an unknown task ID."""


class TrackerError(RuntimeError):
    """Raised when the external tracker CLI fails or returns unusable output."""


class LockHeldError(RuntimeError):
    """Raised when another live scheduler owns the run lock."""

    def __init__(self, message: str, *, pid: int | None) -> None:
        super().__init__(message)
        self.pid = pid
