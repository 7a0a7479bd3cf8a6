"""Compile a markdown plan and optional review issues into a task-graph document."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskloop.artifacts.canonical_json import write_json_atomic
from taskloop.pipeline.task_compiler.graph import (
    count_ready,
    disambiguate_ids,
    infer_dependencies,
    validate_graph,
)
from taskloop.pipeline.task_compiler.issues import issues_to_tasks, load_issues_file
from taskloop.pipeline.task_compiler.plan_parser import parse_plan_file
from taskloop.schemas.validator import validate_data

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.task_compiler.graph import DependencyPolicy
    from taskloop.pipeline.task_compiler.types import Task

DETERMINISTIC_TIMESTAMP = "1970-01-01T00:00:00Z"


def build_task_graph(
    *,
    plan_path: Path,
    issues_path: Path | None = None,
    infer_deps: bool = False,
    include_nits: bool = False,
    dependency_policy: DependencyPolicy | None = None,
    timestamp_mode: str = "wallclock",
) -> dict[str, Any]:
    """Parse, merge and validate inputs into a task-graph document (not written).

    Raises:
        PlanNotFoundError: If the plan is missing
        IssuesFormatError: If the issues file is malformed
    """
    seed_tasks = parse_plan_file(plan_path)
    issue_tasks = issues_to_tasks(load_issues_file(issues_path), include_nits=include_nits)

    tasks: list[Task] = [*seed_tasks, *issue_tasks]
    warnings = disambiguate_ids(tasks)

    if infer_deps:
        infer_dependencies(tasks, dependency_policy)

    report = validate_graph(tasks)
    warnings.extend(report.warnings)

    meta: dict[str, Any] = {
        "generatedAt": _timestamp(timestamp_mode),
        "inputs": {
            "planPath": str(plan_path),
            "issuesPath": str(issues_path) if issues_path else None,
        },
        "options": {
            "inferDeps": infer_deps,
            "includeNits": include_nits,
        },
        "counts": {
            "seedTasks": len(seed_tasks),
            "issueTasks": len(issue_tasks),
            "total": len(tasks),
            "readyToStart": count_ready(tasks),
        },
    }
    if warnings:
        meta["warnings"] = warnings

    return {"meta": meta, "tasks": [task.to_dict() for task in tasks]}


def compile_task_graph(
    *,
    plan_path: Path,
    output_path: Path,
    issues_path: Path | None = None,
    infer_deps: bool = False,
    include_nits: bool = False,
    dependency_policy: DependencyPolicy | None = None,
    timestamp_mode: str = "wallclock",
) -> dict[str, Any]:
    """Compile inputs and atomically write the task-graph document.

    Nothing is written when an input error is raised.

    Returns:
        Dict with the output path, counts and warnings
    """
    document = build_task_graph(
        plan_path=plan_path,
        issues_path=issues_path,
        infer_deps=infer_deps,
        include_nits=include_nits,
        dependency_policy=dependency_policy,
        timestamp_mode=timestamp_mode,
    )
    validate_data(document, "task_graph", strict=True)
    write_json_atomic(output_path, document)

    return {
        "task_graph": str(output_path),
        "counts": document["meta"]["counts"],
        "warnings": document["meta"].get("warnings", []),
    }


def _timestamp(timestamp_mode: str) -> str:
    if timestamp_mode == "deterministic":
        return DETERMINISTIC_TIMESTAMP
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
