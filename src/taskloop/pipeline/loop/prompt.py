"""Render tasks into self-contained instruction blocks for tools."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskloop.pipeline.loop.markers import (
    BLOCKED_MARKER,
    COMPLETE_MARKER,
    FAILED_MARKER,
    JUDGE_FAIL_TOKEN,
    JUDGE_PASS_TOKEN,
    REVIEW_CLEAN_TOKEN,
)

if TYPE_CHECKING:
    from taskloop.pipeline.task_compiler.types import Task

MAX_DIFF_LINES = 500

COUNCIL_ROLES = {
    "analyst": "correctness, edge cases and whether the change does what the task asks",
    "sentinel": "security problems, error handling and data loss risks",
    "designer": "UI consistency, accessibility and layout regressions",
}


def truncate_diff(diff: str, max_lines: int = MAX_DIFF_LINES) -> str:
    lines = diff.splitlines()
    if len(lines) <= max_lines:
        return diff
    return "\n".join(lines[:max_lines]) + f"\n... (diff truncated, {len(lines) - max_lines} more lines)"


def render_task_prompt(
    task: Task,
    *,
    verification: tuple[str, ...] | list[str] = (),
    learnings: str = "",
    progress_tail: str = "",
) -> str:
    """Instruction block for the implementing tool."""
    lines = [
        f"# Task {task.id}: {task.subject}",
        "",
    ]
    if task.tags:
        lines += [f"Tags: {', '.join(task.tags)}", ""]
    if task.sprint is not None:
        lines.append(f"Sprint {task.sprint}: {task.sprint_goal or ''}".rstrip())
        if task.sprint_demo:
            lines.append(f"Sprint demo: {task.sprint_demo}")
        lines.append("")
    if task.description:
        lines += ["## Details", "", task.description, ""]
    if task.allowed_paths:
        lines += [
            "## Allowed paths",
            "",
            "Only create or edit files matching:",
            *[f"- `{path}`" for path in task.allowed_paths],
            "",
        ]
    if verification:
        lines += [
            "## Verification",
            "",
            "These commands must exit 0 before the task counts as done:",
            "",
            "```bash",
            *verification,
            "```",
            "",
        ]
    if task.llm_verification:
        lines += [
            "## Acceptance criteria (reviewed separately)",
            "",
            *[f"- {item}" for item in task.llm_verification],
            "",
        ]
    if learnings.strip():
        lines += ["## Learnings from this session", "", learnings.strip(), ""]
    if progress_tail.strip():
        lines += ["## Recent progress", "", progress_tail.strip(), ""]
    lines += [
        "## Rules",
        "",
        "- Work on this task only.",
        "- Run the verification commands yourself before finishing.",
        "- Record anything the next task should know on lines starting with `LEARNING:`.",
        "",
        "## Finish",
        "",
        "End your output with exactly one of:",
        f"- `{COMPLETE_MARKER}` when the task is done and verified",
        f"- `{BLOCKED_MARKER}` when you need external input",
        f"- `{FAILED_MARKER}` when you cannot complete the task",
        "",
    ]
    return "\n".join(lines)


def render_judge_prompt(task: Task, *, diff: str, changed_files: list[str]) -> str:
    """Ask a reviewer to judge the diff against subjective criteria."""
    lines = [
        f"# Acceptance review for task {task.id}: {task.subject}",
        "",
        "## Criteria",
        "",
        *[f"- {item}" for item in task.llm_verification],
        "",
        "## Changed files",
        "",
        *([f"- {path}" for path in changed_files] or ["(none)"]),
        "",
        "## Diff",
        "",
        "```diff",
        truncate_diff(diff),
        "```",
        "",
        "Decide whether the change meets every criterion.",
        f"Answer with a line containing only `{JUDGE_PASS_TOKEN}` or only `{JUDGE_FAIL_TOKEN}`,",
        "followed by a short reason.",
        "",
    ]
    return "\n".join(lines)


def render_review_prompt(task: Task, *, diff: str, focus: str | None = None) -> str:
    """Fresh-eyes or council reviewer prompt."""
    focus_line = f"Focus on {focus}." if focus else "Look for bugs, regressions and missing tests."
    lines = [
        f"# Code review for task {task.id}: {task.subject}",
        "",
        focus_line,
        "Do not edit files.",
        "",
        "## Diff",
        "",
        "```diff",
        truncate_diff(diff),
        "```",
        "",
        "Report each problem on its own line as `[P1] ...`, `[P2] ...` or `[P3] ...`",
        "(P1 = must fix). If there is nothing to fix, output a line containing only",
        f"`{REVIEW_CLEAN_TOKEN}`.",
        "",
    ]
    return "\n".join(lines)


def render_fix_prompt(task: Task, issues: list[str]) -> str:
    """Ask the implementing tool to address review findings."""
    lines = [
        f"# Review fixes for task {task.id}: {task.subject}",
        "",
        "A reviewer reported these problems in your change:",
        "",
        *[f"- {issue}" for issue in issues],
        "",
        "Fix them, keep the verification commands passing, and end with",
        f"`{COMPLETE_MARKER}` when done.",
        "",
    ]
    return "\n".join(lines)
