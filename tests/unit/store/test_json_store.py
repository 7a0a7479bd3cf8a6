"""Tests for the JSON task-graph store."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import pytest

from taskloop.errors import TaskGraphError, TaskNotFoundError
from taskloop.pipeline.task_compiler.types import TaskStatus
from taskloop.store.json_store import JsonTaskStore

if TYPE_CHECKING:
    from pathlib import Path


def _write_graph(path: Path, tasks: list[dict], warnings: list[str] | None = None) -> Path:
    meta: dict = {"generatedAt": "1970-01-01T00:00:00Z"}
    if warnings:
        meta["warnings"] = warnings
    path.write_text(json.dumps({"meta": meta, "tasks": tasks}, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def graph_path(tmp_path: Path) -> Path:
    return _write_graph(
        tmp_path / "task_graph.json",
        [
            {"id": "a", "subject": "First", "status": "completed", "blockedBy": []},
            {"id": "b", "subject": "Second", "status": "pending", "blockedBy": ["a"], "owner": "me"},
            {"id": "c", "subject": "Third", "status": "pending", "blockedBy": ["b"]},
            {"id": "d", "subject": "Fourth", "status": "pending", "blockedBy": []},
        ],
        warnings=['Task "Fourth" has no verification commands'],
    )


def test_get_next_is_first_eligible_in_order(graph_path: Path) -> None:
    store = JsonTaskStore(graph_path)
    assert store.get_next().id == "b"


def test_blocked_until_blocker_completed(graph_path: Path) -> None:
    store = JsonTaskStore(graph_path)
    store.set_status("b", TaskStatus.FAILED)

    # c stays ineligible while its blocker is failed, not completed
    assert store.get_next().id == "d"


def test_set_status_preserves_unknown_keys(graph_path: Path) -> None:
    store = JsonTaskStore(graph_path)
    store.set_status("b", TaskStatus.IN_PROGRESS, attempts=2, heal_attempt=1)

    entry = json.loads(graph_path.read_text(encoding="utf-8"))["tasks"][1]
    assert entry["status"] == "in_progress"
    assert entry["attempts"] == 2
    assert entry["healAttempt"] == 1
    assert entry["owner"] == "me"
    assert store.get_by_id("b").attempts == 2


def test_set_status_unknown_task(graph_path: Path) -> None:
    with pytest.raises(TaskNotFoundError):
        JsonTaskStore(graph_path).set_status("zzz", TaskStatus.COMPLETED)


def test_count_by_status_and_warnings(graph_path: Path) -> None:
    store = JsonTaskStore(graph_path)

    assert store.count_by_status(TaskStatus.PENDING) == 3
    assert store.count_by_status(TaskStatus.COMPLETED) == 1
    assert store.warnings() == ['Task "Fourth" has no verification commands']


def test_reads_reflect_external_edits(graph_path: Path) -> None:
    store = JsonTaskStore(graph_path)
    document = json.loads(graph_path.read_text(encoding="utf-8"))
    document["tasks"][1]["verification"] = "pytest -q"
    graph_path.write_text(json.dumps(document), encoding="utf-8")

    assert store.get_by_id("b").verification == ["pytest -q"]


def test_get_by_id_missing(graph_path: Path) -> None:
    assert JsonTaskStore(graph_path).get_by_id("nope") is None


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(TaskGraphError, match="not found"):
        JsonTaskStore(tmp_path / "missing.json").list_tasks()


def test_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "task_graph.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(TaskGraphError, match="not valid JSON"):
        JsonTaskStore(path).list_tasks()


def test_unknown_status_fails_validation(tmp_path: Path) -> None:
    path = _write_graph(tmp_path / "task_graph.json", [{"id": "a", "subject": "A", "status": "done"}])
    with pytest.raises(TaskGraphError, match="failed validation"):
        JsonTaskStore(path).list_tasks()


def test_interrupted_write_keeps_previous_document(graph_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    before = graph_path.read_text(encoding="utf-8")

    def explode(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", explode)
    with pytest.raises(OSError, match="disk full"):
        JsonTaskStore(graph_path).set_status("b", TaskStatus.COMPLETED)

    assert graph_path.read_text(encoding="utf-8") == before
    assert list(graph_path.parent.glob("*.tmp")) == []
