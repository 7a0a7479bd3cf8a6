from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from taskloop.pipeline.task_compiler.types import TaskStatus

if TYPE_CHECKING:
    from taskloop.pipeline.loop.types import RunOutcome
    from taskloop.pipeline.task_compiler.types import Task

console = Console()

STATUS_STYLES: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "white",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "yellow",
}


def status_table(tasks: list[Task], *, title: str = "Tasks") -> Table:
    """Per-status counts followed by the non-completed tasks."""
    table = Table(title=title)
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status in TaskStatus:
        count = sum(1 for task in tasks if task.status == status)
        style = STATUS_STYLES[status]
        table.add_row(f"[{style}]{status.value}[/{style}]", str(count))
    return table


def task_table(tasks: list[Task]) -> Table:
    table = Table(title="Open tasks")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Subject")
    table.add_column("Blocked by")
    for task in tasks:
        if task.status == TaskStatus.COMPLETED:
            continue
        style = STATUS_STYLES[task.status]
        table.add_row(
            task.id,
            f"[{style}]{task.status.value}[/{style}]",
            task.subject,
            ", ".join(task.blocked_by) or "-",
        )
    return table


def outcome_table(outcome: RunOutcome) -> Table:
    table = Table(title=f"Run {outcome.status} after {outcome.iterations} iteration(s)")
    table.add_column("Task", style="dim")
    table.add_column("Result")
    table.add_column("Kind")
    table.add_column("Detail")
    for item in outcome.outcomes:
        style = STATUS_STYLES[item.status]
        table.add_row(
            item.task_id,
            f"[{style}]{item.status.value}[/{style}]",
            item.kind,
            item.detail or "-",
        )
    return table
