"""LLM judge for subjective acceptance criteria."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskloop.pipeline.loop.markers import judge_passed
from taskloop.pipeline.loop.prompt import render_judge_prompt

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.task_compiler.types import Task
    from taskloop.runners.base import ToolAdapter


@dataclass(frozen=True)
class JudgeResult:
    passed: bool
    output: str
    exit_code: int


def run_llm_judge(
    tool: ToolAdapter,
    task: Task,
    *,
    diff: str,
    changed_files: list[str],
    timeout_s: float,
    log_path: Path | None = None,
) -> JudgeResult:
    """Anything other than an exact pass line fails."""
    prompt = render_judge_prompt(task, diff=diff, changed_files=changed_files)
    result = tool.invoke(prompt, timeout_s, log_path)
    passed = judge_passed(result.output)
    return JudgeResult(passed=passed, output=result.output, exit_code=result.exit_code)
