"""Tests for dependency inference and graph validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from taskloop.pipeline.task_compiler.graph import (
    count_ready,
    disambiguate_ids,
    find_cycles,
    infer_dependencies,
    load_dependency_policy,
    validate_graph,
)
from taskloop.pipeline.task_compiler.types import Task, TaskSource, TaskStatus

if TYPE_CHECKING:
    from pathlib import Path


def _task(task_id: str, *, blocked_by: list[str] | None = None, tags: list[str] | None = None, **kwargs) -> Task:
    return Task(
        id=task_id,
        subject=kwargs.pop("subject", task_id.title()),
        blocked_by=blocked_by or [],
        tags=tags or [],
        verification=kwargs.pop("verification", ["true"]),
        **kwargs,
    )


def test_find_cycles_two_node() -> None:
    tasks = [_task("a", blocked_by=["b"]), _task("b", blocked_by=["a"])]
    assert find_cycles(tasks) == [["a", "b"]]


def test_find_cycles_three_node() -> None:
    tasks = [
        _task("A", subject="Alpha", blocked_by=["B"]),
        _task("B", subject="Beta", blocked_by=["C"]),
        _task("C", subject="Gamma", blocked_by=["A"]),
    ]
    assert find_cycles(tasks) == [["A", "B", "C"]]

    report = validate_graph(tasks)
    assert report.cycles == [["A", "B", "C"]]
    assert report.warnings == ["Dependency cycle detected: Alpha → Beta → Gamma → Alpha"]


def test_find_cycles_ignores_dangling_and_acyclic() -> None:
    tasks = [_task("a"), _task("b", blocked_by=["a", "ghost"]), _task("c", blocked_by=["b"])]
    assert find_cycles(tasks) == []


def test_find_cycles_self_loop() -> None:
    assert find_cycles([_task("a", blocked_by=["a"])]) == [["a"]]


def test_validate_graph_reports_cycle_with_closing_node() -> None:
    tasks = [
        _task("a", subject="Alpha", blocked_by=["b"]),
        _task("b", subject="Beta", blocked_by=["a"]),
    ]
    report = validate_graph(tasks)

    assert report.cycles == [["a", "b"]]
    assert report.warnings == ["Dependency cycle detected: Alpha → Beta → Alpha"]


def test_validate_graph_truncates_long_labels() -> None:
    subject = "x" * 50
    report = validate_graph([_task("a", subject=subject, blocked_by=["a"])])

    label = "x" * 37 + "..."
    assert report.warnings == [f"Dependency cycle detected: {label} → {label}"]


def test_validate_graph_reports_dangling_blockers() -> None:
    report = validate_graph([_task("a", subject="Alpha", blocked_by=["ghost"])])

    assert report.dangling == [("a", "ghost")]
    assert report.warnings == ['Task "Alpha" has invalid blocker: ghost']


def test_missing_verification_only_for_plan_tasks() -> None:
    tasks = [
        _task("a", subject="Alpha", verification=[]),
        _task("b", subject="Beta", verification=[], source=TaskSource.ORACLE),
    ]
    report = validate_graph(tasks)

    assert report.missing_verification == ["a"]
    assert report.warnings == ['Task "Alpha" has no verification commands']


def test_infer_dependencies_default_policy() -> None:
    tasks = [_task("core", tags=["core"]), _task("ui", tags=["UI"]), _task("e2e", tags=["e2e"])]
    infer_dependencies(tasks)

    assert tasks[0].blocked_by == []
    assert tasks[1].blocked_by == ["core"]
    assert tasks[2].blocked_by == ["ui"]


def test_infer_dependencies_keeps_explicit_and_dedupes() -> None:
    tasks = [
        _task("types", tags=["types"]),
        _task("widget", tags=["components", "ui"], blocked_by=["types"]),
    ]
    infer_dependencies(tasks)

    assert tasks[1].blocked_by == ["types"]


def test_infer_dependencies_custom_policy() -> None:
    tasks = [_task("schema", tags=["db"]), _task("api", tags=["api"])]
    infer_dependencies(tasks, {"api": ["db"]})

    assert tasks[1].blocked_by == ["schema"]
    assert tasks[0].blocked_by == []


def test_load_dependency_policy(tmp_path: Path) -> None:
    path = tmp_path / "policy.yaml"
    path.write_text("docs: core\napi: [Core, data]\n", encoding="utf-8")

    assert load_dependency_policy(path) == {"docs": ("core",), "api": ("core", "data")}


def test_load_dependency_policy_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "policy.yaml"
    path.write_text("- core\n- ui\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_dependency_policy(path)


def test_disambiguate_ids() -> None:
    tasks = [_task("x", subject="One"), _task("x", subject="Two"), _task("x", subject="Three")]
    warnings = disambiguate_ids(tasks)

    assert [task.id for task in tasks] == ["x", "x-2", "x-3"]
    assert warnings[0] == 'Task "Two" reused ID x; renamed to x-2'
    assert len(warnings) == 2


def test_count_ready() -> None:
    tasks = [
        _task("a", status=TaskStatus.COMPLETED),
        _task("b", blocked_by=["a"]),
        _task("c", blocked_by=["b"]),
        _task("d", blocked_by=["ghost"]),
    ]
    assert count_ready(tasks) == 1
