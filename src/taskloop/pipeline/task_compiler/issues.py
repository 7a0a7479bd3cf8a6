"""Convert normalized review issues into tasks."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from taskloop.artifacts.canonical_json import short_id
from taskloop.errors import IssuesFormatError
from taskloop.pipeline.task_compiler.types import Task, TaskSource, TaskStatus
from taskloop.schemas.validator import validate_data

if TYPE_CHECKING:
    from pathlib import Path

NIT_SEVERITY = "nit"
DEFAULT_CATEGORY = "arch"
DEFAULT_SEVERITY = "major"
DEFAULT_TITLE = "Untitled issue"


def load_issues_file(issues_path: Path | None) -> Any | None:
    """Load an optional issues document.

    A missing, empty or whitespace-only file means "no issues" and returns None.

    Raises:
        IssuesFormatError: If the file is not valid JSON or has the wrong shape
    """
    if issues_path is None or not issues_path.is_file():
        return None
    text = issues_path.read_text(encoding="utf-8")
    if not text.strip():
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IssuesFormatError(f"Issues file {issues_path} is not valid JSON: {exc}") from exc

    ok, errors = validate_data(payload, "issues", strict=False)
    if not ok:
        raise IssuesFormatError(
            f"Issues file {issues_path} has an unsupported shape:\n"
            + "\n".join(f"  - {msg}" for msg in errors[:10])
        )
    return payload


def issues_to_tasks(payload: Any, *, include_nits: bool = False) -> list[Task]:
    """Turn an issues document (``{"issues": [...]}`` or a bare list) into tasks."""
    if payload is None:
        return []
    issues = payload.get("issues", []) if isinstance(payload, dict) else payload
    if not isinstance(issues, list):
        raise IssuesFormatError("issues document must be a list or an object with `issues`")

    tasks = []
    for issue in issues:
        if not isinstance(issue, dict):
            raise IssuesFormatError(f"issue entries must be objects, got {type(issue).__name__}")
        severity = str(issue.get("severity") or DEFAULT_SEVERITY).strip().lower()
        if severity == NIT_SEVERITY and not include_nits:
            continue
        tasks.append(_issue_to_task(issue, severity))
    return tasks


def _issue_to_task(issue: dict[str, Any], severity: str) -> Task:
    category = str(issue.get("category") or DEFAULT_CATEGORY).strip()
    title = str(issue.get("title") or DEFAULT_TITLE).strip()
    lens = str(issue.get("lens") or "").strip()
    evidence = str(issue.get("evidence") or "")
    recommendation = str(issue.get("recommendation") or "")
    acceptance = str(issue.get("acceptanceTest") or "")

    subject = f"[{category}/{severity}] {title}"
    task_id = str(issue.get("id") or "").strip() or short_id(f"issue:{subject}:{evidence}")

    description = "\n\n".join(
        [
            f"**Oracle Issue** ({category}, {severity})",
            f"**Evidence:**\n{evidence}",
            f"**Recommendation:**\n{recommendation}",
            f"**Acceptance Test:**\n{acceptance}",
        ]
    )

    return Task(
        id=task_id,
        subject=subject,
        description=description,
        tags=[tag for tag in dict.fromkeys([category, lens]) if tag],
        status=TaskStatus.PENDING,
        source=TaskSource.ORACLE,
        severity=severity,
        files=[str(path) for path in issue.get("files") or []],
    )
