"""Type definitions for the execution loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from taskloop.pipeline.task_compiler.types import TaskStatus

RunStatus = Literal["completed", "blocked", "failed", "halted", "max_iterations", "max_tasks"]

# Why a task attempt ended the way it did.
OutcomeKind = Literal[
    "completed",
    "no_signal",
    "agent_blocked",
    "agent_failed",
    "tool_failed",
    "missing_verification",
    "verification_failed",
    "tests_missing",
    "build_failed",
    "review_regression",
    "judge_failed",
    "flaky",
]

VERIFICATION_KINDS = frozenset(
    {"verification_failed", "tests_missing", "build_failed", "review_regression", "judge_failed"}
)


@dataclass
class TaskOutcome:
    """Result of one attempt at one task."""

    task_id: str
    status: TaskStatus
    kind: OutcomeKind
    detail: str = ""
    retry: bool = False
    commit: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.BLOCKED) and not self.retry


@dataclass
class RunOutcome:
    """Result of a whole scheduler run."""

    status: RunStatus
    exit_code: int
    iterations: int
    message: str = ""
    outcomes: list[TaskOutcome] = field(default_factory=list)
