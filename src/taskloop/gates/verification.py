"""Task-specific verification commands and the default-verification policy."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskloop.utils.exec import run_shell

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.loop.config import LoopConfig
    from taskloop.pipeline.task_compiler.types import Task

DEFAULT_VERIFY_ENV = "TASKLOOP_DEFAULT_VERIFY"
DEFAULT_VERIFY_FILENAME = "verification.txt"
TEST_FILE_RE = re.compile(r"(^|/)(tests?|__tests__|spec)/|(^|/)test_[^/]+\.py$|_test\.(py|go)$|\.(test|spec)\.[jt]sx?$")

PLAN_TASK = "task"
PLAN_DEFAULT = "default"
PLAN_LLM_ONLY = "llm-only"
PLAN_UNVERIFIED = "unverified"


class MissingVerificationError(RuntimeError):
    """Raised when a task has nothing to verify it and the policy forbids that."""


@dataclass(frozen=True)
class VerificationPlan:
    commands: tuple[str, ...]
    origin: str  # PLAN_TASK | PLAN_DEFAULT | PLAN_LLM_ONLY | PLAN_UNVERIFIED


@dataclass
class VerificationResult:
    passed: bool
    failed_command: str | None = None
    exit_code: int = 0
    output: str = ""
    ran: list[str] = field(default_factory=list)


def default_verification(config: LoopConfig, project_root: Path) -> list[str]:
    """Config value, else the env var, else ``verification.txt`` (comments skipped)."""
    if config.default_verification:
        return list(config.default_verification)
    env_value = os.environ.get(DEFAULT_VERIFY_ENV, "").strip()
    if env_value:
        return [env_value]
    verify_file = project_root / DEFAULT_VERIFY_FILENAME
    if verify_file.is_file():
        return [
            line.strip()
            for line in verify_file.read_text(encoding="utf-8").splitlines()
            if line.strip() and not line.strip().startswith("#")
        ]
    return []


def resolve_verification(task: Task, config: LoopConfig, project_root: Path) -> VerificationPlan:
    """Decide what verifies ``task``.

    Raises:
        MissingVerificationError: If nothing applies and unverified work is not allowed
    """
    if task.verification:
        return VerificationPlan(tuple(task.verification), PLAN_TASK)
    fallback = default_verification(config, project_root)
    if fallback:
        return VerificationPlan(tuple(fallback), PLAN_DEFAULT)
    if task.llm_verification:
        return VerificationPlan((), PLAN_LLM_ONLY)
    if config.allow_no_verify:
        return VerificationPlan((), PLAN_UNVERIFIED)
    raise MissingVerificationError(
        f"Task {task.id} has no verification commands. Add a Verification field, "
        f"set default_verification, or enable allow_no_verify."
    )


def run_verification(commands: tuple[str, ...] | list[str], *, cwd: Path) -> VerificationResult:
    """Run commands in order; the first non-zero exit stops the sequence."""
    result = VerificationResult(passed=True)
    outputs = []
    for command in commands:
        executed = run_shell(command, cwd=cwd)
        result.ran.append(command)
        outputs.append(f"$ {command}\n{executed.output}")
        if executed.returncode != 0:
            result.passed = False
            result.failed_command = command
            result.exit_code = executed.returncode
            break
    result.output = "\n".join(outputs)
    return result


def touches_tests(changed_files: list[str]) -> bool:
    """True when any changed path looks like a test file."""
    return any(TEST_FILE_RE.search(path) for path in changed_files)
