"""Task store interface shared by the JSON document and the external tracker."""

from __future__ import annotations

from typing import Protocol

from taskloop.pipeline.task_compiler.types import Task, TaskStatus


class TaskStore(Protocol):
    """Persistent source of truth for tasks and their statuses."""

    name: str

    def list_tasks(self) -> list[Task]:
        """All tasks in store order."""
        ...

    def get_next(self) -> Task | None:
        """First pending task whose blockers are all completed."""
        ...

    def get_by_id(self, task_id: str) -> Task | None:
        ...

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        heal_attempt: int | None = None,
        attempts: int | None = None,
    ) -> None:
        ...

    def count_by_status(self, status: TaskStatus) -> int:
        ...


def select_next(tasks: list[Task]) -> Task | None:
    """Selection policy: first pending task, in order, with every blocker completed."""
    status = {task.id: task.status for task in tasks}
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if all(status.get(dep) == TaskStatus.COMPLETED for dep in task.blocked_by):
            return task
    return None
