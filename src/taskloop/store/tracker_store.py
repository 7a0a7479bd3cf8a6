"""Task store backed by an external CLI issue tracker (``br``-style)."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskloop.errors import TrackerError
from taskloop.pipeline.task_compiler.types import Task, TaskSource, TaskStatus
from taskloop.utils.exec import ExecError, ExecResult, run_command

STATUS_TO_TRACKER: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "open",
    TaskStatus.COMPLETED: "closed",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.FAILED: "blocked",
    TaskStatus.BLOCKED: "blocked",
}
TRACKER_TO_STATUS: dict[str, TaskStatus] = {
    "open": TaskStatus.PENDING,
    "closed": TaskStatus.COMPLETED,
    "in_progress": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.FAILED,
}

SECTION_HEADER_RE = re.compile(r"^\s*\**\s*([A-Za-z][A-Za-z ]*?)\s*:\s*\**\s*$")

CommandRunner = Callable[[list[str], Path], ExecResult]


def _default_runner(argv: list[str], cwd: Path) -> ExecResult:
    return run_command(argv, cwd=cwd, check=True)


class TrackerTaskStore:
    """Routes store operations through the tracker CLI.

    Heal and attempt counters are not persisted by the tracker; tasks read back
    from it always report zero.
    """

    name = "tracker"

    def __init__(
        self,
        *,
        executable: str = "br",
        cwd: Path | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.executable = executable
        self.cwd = cwd or Path.cwd()
        self._runner = runner or _default_runner

    def _run_json(self, *args: str) -> Any:
        result = self._run(*args)
        text = result.stdout.strip()
        if not text:
            return []
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"{self.executable} {' '.join(args)} returned invalid JSON: {exc}") from exc

    def _run(self, *args: str) -> ExecResult:
        try:
            return self._runner([self.executable, *args], self.cwd)
        except ExecError as exc:
            raise TrackerError(str(exc)) from exc

    def list_tasks(self) -> list[Task]:
        return [task_from_tracker_item(item) for item in _items(self._run_json("list", "--json"))]

    def get_next(self) -> Task | None:
        items = _items(self._run_json("ready", "--json"))
        return task_from_tracker_item(items[0]) if items else None

    def get_by_id(self, task_id: str) -> Task | None:
        try:
            items = _items(self._run_json("show", task_id, "--json"))
        except TrackerError:
            return None
        return task_from_tracker_item(items[0]) if items else None

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        heal_attempt: int | None = None,
        attempts: int | None = None,
    ) -> None:
        status = TaskStatus(status)
        if status == TaskStatus.COMPLETED:
            self._run("close", task_id, "--reason", "completed")
        else:
            self._run("update", task_id, "--status", STATUS_TO_TRACKER[status])

    def count_by_status(self, status: TaskStatus) -> int:
        tracker_status = STATUS_TO_TRACKER[TaskStatus(status)]
        return len(_items(self._run_json("list", "--status", tracker_status, "--json")))


def _items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("issues", [payload])
    if not isinstance(payload, list):
        raise TrackerError(f"unexpected tracker payload: {type(payload).__name__}")
    return [item for item in payload if isinstance(item, dict)]


def task_from_tracker_item(item: dict[str, Any]) -> Task:
    """Map a tracker item onto a Task, pulling structured sections from its description."""
    description = str(item.get("description") or "")
    raw_status = str(item.get("status") or "open").lower()
    dependencies = []
    for dep in item.get("dependencies") or []:
        dep_id = dep.get("id") if isinstance(dep, dict) else dep
        if dep_id:
            dependencies.append(str(dep_id))

    return Task(
        id=str(item.get("id")),
        subject=str(item.get("title") or item.get("subject") or ""),
        description=description,
        tags=list(dict.fromkeys(str(label).lower() for label in item.get("labels") or [])),
        blocked_by=dependencies,
        status=TRACKER_TO_STATUS.get(raw_status, TaskStatus.PENDING),
        verification=extract_section(description, "Verification"),
        llm_verification=extract_section(description, "LLM Verification"),
        allowed_paths=extract_section(description, "Allowed Paths"),
        source=TaskSource.TRACKER,
    )


def extract_section(description: str, header: str) -> list[str]:
    """Collect the bullet/plain lines under ``Header:`` up to the next header or blank line."""
    lines = description.splitlines()
    collected: list[str] = []
    inside = False
    for line in lines:
        header_match = SECTION_HEADER_RE.match(line)
        if header_match:
            if inside:
                break
            inside = header_match.group(1).strip().lower() == header.lower()
            continue
        if not inside:
            continue
        if not line.strip():
            if collected:
                break
            continue
        collected.append(re.sub(r"^\s*[-*]\s+", "", line).strip().strip("`"))
    return collected
