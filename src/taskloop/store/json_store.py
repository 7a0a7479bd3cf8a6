"""Task store backed by a single JSON task-graph document."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from taskloop.artifacts.canonical_json import write_json_atomic
from taskloop.errors import TaskGraphError, TaskNotFoundError
from taskloop.pipeline.task_compiler.types import Task, TaskStatus
from taskloop.schemas.validator import validate_data
from taskloop.store.base import select_next

if TYPE_CHECKING:
    from pathlib import Path


class JsonTaskStore:
    """Read-modify-write store over ``{meta, tasks}``.

    The document is re-read for every operation so edits made while a run is in
    progress (for example to verification commands) are picked up. Writes go
    through a temp file and an atomic rename.
    """

    name = "json"

    def __init__(self, path: Path) -> None:
        self.path = path

    def load_document(self) -> dict[str, Any]:
        """Load and validate the raw document.

        Raises:
            TaskGraphError: If the file is missing, not JSON, or fails the schema
        """
        if not self.path.is_file():
            raise TaskGraphError(f"Task graph not found: {self.path}")
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TaskGraphError(f"Task graph {self.path} is not valid JSON: {exc}") from exc

        ok, errors = validate_data(document, "task_graph", strict=False)
        if not ok:
            raise TaskGraphError(
                f"Task graph {self.path} failed validation:\n"
                + "\n".join(f"  - {msg}" for msg in errors[:10])
            )
        return document

    def list_tasks(self) -> list[Task]:
        return [Task.from_dict(entry) for entry in self.load_document()["tasks"]]

    def get_next(self) -> Task | None:
        return select_next(self.list_tasks())

    def get_by_id(self, task_id: str) -> Task | None:
        for task in self.list_tasks():
            if task.id == task_id:
                return task
        return None

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        heal_attempt: int | None = None,
        attempts: int | None = None,
    ) -> None:
        """Update one task in place; other keys of the entry are preserved.

        Raises:
            TaskNotFoundError: If no task has this ID
        """
        document = self.load_document()
        for entry in document["tasks"]:
            if entry.get("id") == task_id:
                entry["status"] = TaskStatus(status).value
                if heal_attempt is not None:
                    entry["healAttempt"] = heal_attempt
                if attempts is not None:
                    entry["attempts"] = attempts
                break
        else:
            raise TaskNotFoundError(task_id)

        write_json_atomic(self.path, document)

    def count_by_status(self, status: TaskStatus) -> int:
        return sum(1 for task in self.list_tasks() if task.status == status)

    def warnings(self) -> list[str]:
        """Validation warnings recorded at compile time."""
        meta = self.load_document().get("meta") or {}
        return [str(item) for item in meta.get("warnings") or []]
