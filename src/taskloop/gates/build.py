"""Project-wide build verification: lint, typecheck, build, test."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from taskloop.pipeline.loop.markers import count_errors
from taskloop.utils.exec import run_shell

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.loop.config import LoopConfig

STAGES = ("lint", "typecheck", "build", "test")

StageStatus = Literal["passed", "failed", "skipped"]

PYTHON_MANIFESTS = ("pyproject.toml", "setup.py", "requirements.txt")
PYTHON_COMMANDS = {
    "lint": "ruff check .",
    "typecheck": "mypy .",
    "build": "pip install -e .",
    "test": "pytest -q",
}
CARGO_COMMANDS = {
    "lint": "cargo clippy -- -D warnings",
    "typecheck": "cargo check",
    "build": "cargo build --release",
    "test": "cargo test",
}
GO_COMMANDS = {
    "lint": "go vet ./...",
    "typecheck": "go build ./...",
    "build": "go build -o bin/ ./...",
    "test": "go test ./...",
}
PACKAGE_SCRIPT_FALLBACKS = {
    "typecheck": ("typecheck", "type-check", "types"),
}


@dataclass
class StageOutcome:
    stage: str
    status: StageStatus
    command: str | None = None
    exit_code: int = 0
    error_count: int | None = None
    output: str = ""


@dataclass
class BuildReport:
    stages: list[StageOutcome] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(stage.status != "failed" for stage in self.stages)

    @property
    def failed_stage(self) -> StageOutcome | None:
        for stage in self.stages:
            if stage.status == "failed":
                return stage
        return None

    def summary(self) -> str:
        parts = []
        for stage in self.stages:
            label = f"{stage.stage}={stage.status}"
            if stage.error_count:
                label += f"({stage.error_count} errors)"
            parts.append(label)
        return ", ".join(parts) or "no stages"


def detect_stage_command(stage: str, project_root: Path) -> str | None:
    """Resolve a stage's command: Makefile, package.json, Python, Cargo, then Go."""
    return (
        _makefile_command(stage, project_root)
        or _package_json_command(stage, project_root)
        or _manifest_command(stage, project_root)
    )


def _makefile_command(stage: str, project_root: Path) -> str | None:
    makefile = project_root / "Makefile"
    if not makefile.is_file():
        return None
    content = makefile.read_text(encoding="utf-8", errors="replace")
    if re.search(rf"^{re.escape(stage)}\s*:", content, re.MULTILINE):
        return f"make {stage}"
    return None


def _package_json_command(stage: str, project_root: Path) -> str | None:
    package_json = project_root / "package.json"
    if not package_json.is_file():
        return None
    try:
        scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
    except (json.JSONDecodeError, AttributeError):
        scripts = {}
    for name in PACKAGE_SCRIPT_FALLBACKS.get(stage, (stage,)):
        if name in scripts:
            return f"npm run {name}"
    if stage == "typecheck" and (project_root / "tsconfig.json").is_file():
        return "npx tsc --noEmit"
    return None


def _manifest_command(stage: str, project_root: Path) -> str | None:
    if any((project_root / name).is_file() for name in PYTHON_MANIFESTS):
        if stage == "build" and not any(
            (project_root / name).is_file() for name in ("pyproject.toml", "setup.py")
        ):
            return None
        return PYTHON_COMMANDS[stage]
    if (project_root / "Cargo.toml").is_file():
        return CARGO_COMMANDS[stage]
    if (project_root / "go.mod").is_file():
        return GO_COMMANDS[stage]
    return None


class BuildGate:
    """Runs the enabled stages in order, stopping at the first failing one."""

    def __init__(self, project_root: Path, *, enabled: dict[str, bool], log_dir: Path | None = None) -> None:
        self.project_root = project_root
        self.enabled = enabled
        self.log_dir = log_dir

    @classmethod
    def from_config(cls, config: LoopConfig, project_root: Path, log_dir: Path | None = None) -> BuildGate:
        return cls(
            project_root,
            enabled={
                "lint": config.verify_lint,
                "typecheck": config.verify_typecheck,
                "build": config.verify_build,
                "test": config.verify_tests,
            },
            log_dir=log_dir,
        )

    def run(self, task_id: str) -> BuildReport:
        report = BuildReport()
        failed = False
        for stage in STAGES:
            command = detect_stage_command(stage, self.project_root)
            if failed or not self.enabled.get(stage, True) or command is None:
                report.stages.append(StageOutcome(stage=stage, status="skipped", command=command))
                continue

            result = run_shell(command, cwd=self.project_root)
            outcome = StageOutcome(
                stage=stage,
                status="passed" if result.returncode == 0 else "failed",
                command=command,
                exit_code=result.returncode,
                error_count=count_errors(stage, result.output),
                output=result.output,
            )
            report.stages.append(outcome)
            self._log(task_id, outcome)
            failed = outcome.status == "failed"
        return report

    def _log(self, task_id: str, outcome: StageOutcome) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{task_id}-build.log"
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"=== {outcome.stage}: {outcome.command} (exit {outcome.exit_code}) ===\n")
            handle.write(outcome.output)
            handle.write("\n")
