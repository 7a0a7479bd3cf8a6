"""Dependency graph finalization and validation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

import yaml  # type: ignore[import-untyped]

from taskloop.pipeline.task_compiler.types import GraphReport, Task, TaskSource, TaskStatus

if TYPE_CHECKING:
    from pathlib import Path

DependencyPolicy = Mapping[str, Sequence[str]]

# tag -> prerequisite tags. Used only when inference is requested.
DEFAULT_DEPENDENCY_POLICY: dict[str, tuple[str, ...]] = {
    "ui": ("engine", "core", "types", "data"),
    "components": ("types", "core"),
    "tests": ("engine", "ui", "core"),
    "e2e": ("ui", "components", "tests"),
    "worker": ("types", "core"),
    "io": ("engine", "worker"),
    "integration": ("engine", "ui", "io"),
}

SUBJECT_LABEL_WIDTH = 40


def load_dependency_policy(policy_path: Path) -> dict[str, tuple[str, ...]]:
    """Load a tag -> prerequisite-tags mapping from YAML.

    Raises:
        ValueError: If the file is not a mapping of tag to tag list
    """
    try:
        raw = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"dependency policy parse error: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("dependency policy must be a mapping of tag to prerequisite tags")

    policy: dict[str, tuple[str, ...]] = {}
    for tag, prerequisites in raw.items():
        if isinstance(prerequisites, str):
            prerequisites = [prerequisites]
        if not isinstance(prerequisites, list):
            raise ValueError(f"dependency policy entry `{tag}` must be a list of tags")
        policy[str(tag).lower()] = tuple(str(item).lower() for item in prerequisites)
    return policy


def infer_dependencies(tasks: list[Task], policy: DependencyPolicy | None = None) -> None:
    """Add tag-implied blockers (mutates tasks in place).

    Each task gains every other task carrying one of its tags' prerequisite tags.
    """
    policy = DEFAULT_DEPENDENCY_POLICY if policy is None else policy
    lowered_tags = {task.id: {tag.lower() for tag in task.tags} for task in tasks}

    for task in tasks:
        prerequisites: set[str] = set()
        for tag in lowered_tags[task.id]:
            prerequisites.update(item.lower() for item in policy.get(tag, ()))
        if not prerequisites:
            continue
        inferred = [
            other.id
            for other in tasks
            if other.id != task.id and lowered_tags[other.id] & prerequisites
        ]
        task.blocked_by = list(dict.fromkeys([*task.blocked_by, *inferred]))


def find_cycles(tasks: list[Task]) -> list[list[str]]:
    """Find dependency cycles with an iterative depth-first search.

    Each cycle is the stack slice from the re-entered node to the current node.
    Only edges to existing tasks are followed.
    """
    edges = {task.id: task.blocked_by for task in tasks}
    visited: set[str] = set()
    cycles: list[list[str]] = []

    for root in edges:
        if root in visited:
            continue
        path: list[str] = [root]
        on_stack: dict[str, int] = {root: 0}
        iterators = [iter(edges[root])]
        visited.add(root)

        while iterators:
            advanced = False
            for dep in iterators[-1]:
                if dep not in edges:
                    continue
                if dep in on_stack:
                    cycles.append(path[on_stack[dep] :])
                    continue
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack[dep] = len(path)
                path.append(dep)
                iterators.append(iter(edges[dep]))
                advanced = True
                break
            if not advanced:
                iterators.pop()
                on_stack.pop(path.pop())

    return cycles


def validate_graph(tasks: list[Task]) -> GraphReport:
    """Report cycles, dangling blockers and plan tasks without verification."""
    report = GraphReport()
    subjects = {task.id: task.subject for task in tasks}

    report.cycles = find_cycles(tasks)
    for cycle in report.cycles:
        labels = [_label(subjects[task_id]) for task_id in [*cycle, cycle[0]]]
        report.warnings.append(f"Dependency cycle detected: {' → '.join(labels)}")

    for task in tasks:
        for blocker in task.blocked_by:
            if blocker not in subjects:
                report.dangling.append((task.id, blocker))
                report.warnings.append(f'Task "{task.subject}" has invalid blocker: {blocker}')

    for task in tasks:
        if task.source == TaskSource.PLAN and not task.verification:
            report.missing_verification.append(task.id)
            report.warnings.append(f'Task "{task.subject}" has no verification commands')

    return report


def disambiguate_ids(tasks: list[Task]) -> list[str]:
    """Give duplicate task IDs a numeric suffix (mutates tasks in place).

    Returns:
        Warnings describing each rename.
    """
    seen: set[str] = set()
    warnings = []
    for task in tasks:
        if task.id not in seen:
            seen.add(task.id)
            continue
        n = 2
        while f"{task.id}-{n}" in seen:
            n += 1
        renamed = f"{task.id}-{n}"
        warnings.append(f'Task "{task.subject}" reused ID {task.id}; renamed to {renamed}')
        task.id = renamed
        seen.add(renamed)
    return warnings


def count_ready(tasks: list[Task]) -> int:
    """Pending tasks whose blockers are all completed."""
    status = {task.id: task.status for task in tasks}
    return sum(
        1
        for task in tasks
        if task.status == TaskStatus.PENDING
        and all(status.get(dep) == TaskStatus.COMPLETED for dep in task.blocked_by)
    )


def _label(subject: str) -> str:
    if len(subject) <= SUBJECT_LABEL_WIDTH:
        return subject
    return subject[: SUBJECT_LABEL_WIDTH - 3] + "..."
