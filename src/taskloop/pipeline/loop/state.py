"""Run-state side files: progress log, learnings, loop-state snapshot and summary.

These files are for operators only. Scheduling decisions never read them back
except to give the next prompt some context.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskloop.artifacts.canonical_json import write_json_atomic

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.loop.config import LoopPaths

PROGRESS_TAIL_LINES = 15
LEARNINGS_CONTEXT_LINES = 200
SUMMARY_HEADER = (
    "| Task ID | Subject | Status | Commit | Notes |\n"
    "|---------|---------|--------|--------|-------|\n"
)


def utc_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _append(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def _tail(path: Path, lines: int) -> str:
    if not path.exists():
        return ""
    return "\n".join(path.read_text(encoding="utf-8").splitlines()[-lines:])


class ProgressLog:
    """Append-only progress log with ``### Heading - timestamp`` entries."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def start(self, run_id: str, store: str) -> None:
        if not self.path.exists():
            _append(self.path, "# Progress Log\n")
        _append(self.path, f"\n## Run {run_id} - {utc_now()}\n- Store: {store}\n")

    def record(self, heading: str, fields: dict[str, Any] | None = None, body: str | None = None) -> None:
        lines = [f"\n### {heading} - {utc_now()}"]
        for key, value in (fields or {}).items():
            lines.append(f"- {key}: {value}")
        if body:
            lines.extend(["", body.rstrip()])
        _append(self.path, "\n".join(lines) + "\n")

    def tail(self, lines: int = PROGRESS_TAIL_LINES) -> str:
        return _tail(self.path, lines)


class LearningsLog:
    """Append-only learnings file, read back only from the current session onward."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.session_start_line = 0

    def start_session(self) -> None:
        if not self.path.exists():
            _append(self.path, "# Learnings\n")
        self.session_start_line = len(self.path.read_text(encoding="utf-8").splitlines())

    def capture(self, task_id: str, subject: str, tool: str, learnings: list[str]) -> None:
        if not learnings:
            return
        lines = [f"\n## {task_id}: {subject} ({tool}) - {utc_now()}"]
        lines.extend(f"- {item}" for item in learnings)
        _append(self.path, "\n".join(lines) + "\n")

    def session_text(self, max_lines: int = LEARNINGS_CONTEXT_LINES) -> str:
        if not self.path.exists():
            return ""
        session = self.path.read_text(encoding="utf-8").splitlines()[self.session_start_line :]
        return "\n".join(session[-max_lines:])


class LoopStateFile:
    """Machine-readable snapshot, overwritten on every transition."""

    def __init__(self, path: Path, *, run_id: str, mode: str) -> None:
        self.path = path
        self.run_id = run_id
        self.mode = mode

    def update(
        self,
        *,
        task_id: str | None,
        subject: str | None,
        status: str,
        phase: str,
        attempt: int = 0,
        implement_tool: str | None = None,
        review_tool: str | None = None,
        note: str = "",
    ) -> None:
        snapshot = {
            "runId": self.run_id,
            "updatedAt": utc_now(),
            "mode": self.mode,
            "task": {
                "id": task_id,
                "subject": subject,
                "status": status,
                "phase": phase,
                "attempt": attempt,
            },
            "tools": {"implement": implement_tool, "review": review_tool},
            "note": note,
        }
        write_json_atomic(self.path, snapshot)


class ExecutionSummary:
    """Markdown table with one row per finished task attempt."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def start(self, run_id: str) -> None:
        _append(self.path, f"\n## Run {run_id} - {utc_now()}\n\n{SUMMARY_HEADER}")

    def add_row(self, task_id: str, subject: str, status: str, commit: str | None = None, notes: str = "") -> None:
        cells = [task_id, subject, status, commit or "-", notes or "-"]
        escaped = [cell.replace("|", "\\|").replace("\n", " ") for cell in cells]
        _append(self.path, "| " + " | ".join(escaped) + " |\n")


@dataclass
class RunState:
    """All side files of one run, passed through the scheduler context."""

    progress: ProgressLog
    learnings: LearningsLog
    loop_state: LoopStateFile
    summary: ExecutionSummary

    @classmethod
    def for_paths(cls, paths: LoopPaths, *, run_id: str, mode: str) -> RunState:
        return cls(
            progress=ProgressLog(paths.progress),
            learnings=LearningsLog(paths.learnings),
            loop_state=LoopStateFile(paths.loop_state, run_id=run_id, mode=mode),
            summary=ExecutionSummary(paths.summary),
        )
