"""Type definitions for task graphs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from taskloop.errors import TaskGraphError


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskSource(str, Enum):
    """Where a task came from."""

    PLAN = "plan"
    ORACLE = "oracle"
    TRACKER = "tracker"


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    raise TaskGraphError(f"expected string or list, got {type(value).__name__}")


@dataclass
class Task:
    """A unit of work with dependencies, verification and a lifecycle status."""

    id: str
    subject: str
    description: str = ""
    tags: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)  # Task IDs
    status: TaskStatus = TaskStatus.PENDING
    verification: list[str] = field(default_factory=list)  # Shell commands
    llm_verification: list[str] = field(default_factory=list)  # Judge criteria
    allowed_paths: list[str] = field(default_factory=list)
    source: TaskSource = TaskSource.PLAN
    heal_attempt: int = 0
    attempts: int = 0
    active_form: str | None = None
    deliverable: str | None = None
    setup: str | None = None
    sprint: int | None = None
    sprint_goal: str | None = None
    sprint_demo: str | None = None
    severity: str | None = None
    files: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        """Build a task from a document entry, rejecting unknown statuses."""
        if not isinstance(payload, dict):
            raise TaskGraphError(f"task entry must be an object, got {type(payload).__name__}")
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            raise TaskGraphError("task entry is missing `id`")
        try:
            status = TaskStatus(str(payload.get("status", TaskStatus.PENDING.value)))
        except ValueError as exc:
            raise TaskGraphError(f"task `{task_id}` has unknown status `{payload.get('status')}`") from exc
        try:
            source = TaskSource(str(payload.get("source", TaskSource.PLAN.value)))
        except ValueError as exc:
            raise TaskGraphError(f"task `{task_id}` has unknown source `{payload.get('source')}`") from exc

        sprint = payload.get("sprint")
        return cls(
            id=task_id,
            subject=str(payload.get("subject", "")),
            description=str(payload.get("description") or ""),
            tags=_dedupe(_as_list(payload.get("tags"))),
            blocked_by=_as_list(payload.get("blockedBy")),
            status=status,
            verification=_as_list(payload.get("verification")),
            llm_verification=_as_list(payload.get("llmVerification")),
            allowed_paths=_as_list(payload.get("allowedPaths")),
            source=source,
            heal_attempt=int(payload.get("healAttempt") or 0),
            attempts=int(payload.get("attempts") or 0),
            active_form=payload.get("activeForm"),
            deliverable=payload.get("deliverable"),
            setup=payload.get("setup"),
            sprint=int(sprint) if sprint is not None else None,
            sprint_goal=payload.get("sprintGoal"),
            sprint_demo=payload.get("sprintDemo"),
            severity=payload.get("severity"),
            files=_as_list(payload.get("files")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the document shape, omitting empty optional fields."""
        data: dict[str, Any] = {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "tags": list(self.tags),
            "blockedBy": list(self.blocked_by),
            "status": self.status.value,
            "source": self.source.value,
        }
        optional: dict[str, Any] = {
            "activeForm": self.active_form,
            "verification": list(self.verification),
            "llmVerification": list(self.llm_verification),
            "allowedPaths": list(self.allowed_paths),
            "deliverable": self.deliverable,
            "setup": self.setup,
            "sprint": self.sprint,
            "sprintGoal": self.sprint_goal,
            "sprintDemo": self.sprint_demo,
            "severity": self.severity,
            "files": list(self.files),
            "healAttempt": self.heal_attempt,
            "attempts": self.attempts,
        }
        for key, value in optional.items():
            if value:
                data[key] = value
        return data


@dataclass
class GraphReport:
    """Outcome of graph validation."""

    cycles: list[list[str]] = field(default_factory=list)
    dangling: list[tuple[str, str]] = field(default_factory=list)  # (task id, blocker)
    missing_verification: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
