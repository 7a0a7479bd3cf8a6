"""Load and validate execution-loop configuration."""

from __future__ import annotations

import shlex
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

CONFIG_REASON_PARSE_ERROR = "CONFIG_PARSE_ERROR"
CONFIG_REASON_INVALID = "CONFIG_INVALID"

REVIEW_MODES = ("off", "fresh-eyes", "council")
DEFAULT_STATE_DIR = ".taskloop"
CONFIG_FILENAME = "loop.yaml"


class LoopConfigError(ValueError):
    """Loop configuration validation error."""

    reason_code: str

    def __init__(self, message: str, reason_code: str = CONFIG_REASON_INVALID) -> None:
        super().__init__(message)
        self.reason_code = reason_code


@dataclass(frozen=True)
class LoopConfig:
    """Every knob of the execution loop. Durations are seconds."""

    # Iteration bounds
    max_iterations: int = 20
    max_tasks: int = 0  # 0 = unlimited
    iteration_delay_s: float = 2.0
    continue_on_error: bool = False
    max_task_attempts: int = 3

    # Tools
    tool: str = "smart"
    frontend_tool: str = "claude"
    backend_tool: str = "codex"
    review_tool: str | None = None
    allow_same_review_tool: bool = False
    tool_timeout_s: float = 2700.0
    kill_grace_s: float = 30.0
    tools: dict[str, tuple[str, ...]] = field(default_factory=dict)

    # Review
    review_mode: str = "off"
    min_review_passes: int = 2
    max_review_passes: int = 3

    # Self-healing and flaky detection
    self_heal: bool = True
    stall_threshold_s: float = 1200.0
    heartbeat_timeout_s: float = 600.0
    heartbeat_floor_s: float = 300.0
    max_heal_attempts: int = 3
    flaky_threshold: int = 3

    # Verification
    verify_lint: bool = True
    verify_typecheck: bool = True
    verify_build: bool = True
    verify_tests: bool = True
    default_verification: tuple[str, ...] = ()
    allow_no_verify: bool = False
    require_tests: bool = False

    # Commits
    auto_commit: bool = False
    commit_prefix: str = "feat"

    state_dir: str = DEFAULT_STATE_DIR


@dataclass(frozen=True)
class LoopPaths:
    """Locations of the task graph and run-state side files."""

    project_root: Path
    state_dir: str = DEFAULT_STATE_DIR

    @property
    def root(self) -> Path:
        return self.project_root / self.state_dir

    @property
    def task_graph(self) -> Path:
        return self.root / "task_graph.json"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def progress(self) -> Path:
        return self.root / "progress.txt"

    @property
    def learnings(self) -> Path:
        return self.root / "learnings.md"

    @property
    def loop_state(self) -> Path:
        return self.root / "loop_state.json"

    @property
    def summary(self) -> Path:
        return self.root / "summary.md"

    @property
    def tracking(self) -> Path:
        return self.root / "tracking.json"

    @property
    def lock(self) -> Path:
        return self.root / "loop.lock"


def config_path_for_project(project_root: Path) -> Path:
    """Return canonical loop config path for a project."""
    return project_root.resolve() / DEFAULT_STATE_DIR / CONFIG_FILENAME


def ensure_default_config(project_root: Path, *, force: bool = False) -> Path:
    """Write the default configuration as YAML."""
    output_path = config_path_for_project(project_root)
    if output_path.exists() and not force:
        raise FileExistsError(f"Loop config already exists: {output_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    rendered = yaml.safe_dump(config_to_dict(LoopConfig()), sort_keys=True)
    output_path.write_text(rendered, encoding="utf-8")
    return output_path


def config_to_dict(config: LoopConfig) -> dict[str, Any]:
    """Plain YAML/JSON-friendly representation."""
    data = asdict(config)
    data["default_verification"] = list(config.default_verification)
    data["tools"] = {name: list(argv) for name, argv in config.tools.items()}
    return data


def load_loop_config(path: Path | None) -> LoopConfig:
    """Load config from YAML; a missing file yields the defaults.

    Raises:
        LoopConfigError: On unreadable YAML, unknown keys or invalid values
    """
    if path is None or not path.exists():
        return LoopConfig()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise LoopConfigError(f"{path.name} parse error: {exc}", CONFIG_REASON_PARSE_ERROR) from exc
    if raw is None:
        return LoopConfig()
    if not isinstance(raw, dict):
        raise LoopConfigError(
            f"{path.name} parse error: expected mapping at top level",
            CONFIG_REASON_PARSE_ERROR,
        )
    return config_from_mapping(raw)


def config_from_mapping(raw: dict[str, Any], base: LoopConfig | None = None) -> LoopConfig:
    """Validate a mapping of overrides on top of ``base`` (defaults when None)."""
    base = base or LoopConfig()
    known = {f.name for f in fields(LoopConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise LoopConfigError(f"unknown loop config keys: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        default = getattr(base, key)
        if key == "tools":
            values[key] = _normalize_tools(value)
        elif key == "default_verification":
            values[key] = tuple(_normalize_string_list(value, key))
        elif key == "review_tool":
            if value is not None and not isinstance(value, str):
                raise LoopConfigError("review_tool must be a tool name or null")
            values[key] = value or None
        elif isinstance(default, bool):
            if not isinstance(value, bool):
                raise LoopConfigError(f"{key} must be true or false, got `{value}`")
            values[key] = value
        elif isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise LoopConfigError(f"{key} must be a non-negative integer, got `{value}`")
            values[key] = value
        elif isinstance(default, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise LoopConfigError(f"{key} must be a non-negative number, got `{value}`")
            values[key] = float(value)
        else:
            if not isinstance(value, str) or not value.strip():
                raise LoopConfigError(f"{key} must be a non-empty string")
            values[key] = value.strip()

    merged = {f.name: getattr(base, f.name) for f in fields(LoopConfig)}
    merged.update(values)
    config = LoopConfig(**merged)
    validate_config(config)
    return config


def validate_config(config: LoopConfig) -> None:
    """Cross-field checks."""
    if config.review_mode not in REVIEW_MODES:
        raise LoopConfigError(f"review_mode must be one of {REVIEW_MODES}, got `{config.review_mode}`")
    if config.max_iterations < 1:
        raise LoopConfigError("max_iterations must be at least 1")
    if config.min_review_passes > config.max_review_passes:
        raise LoopConfigError("min_review_passes cannot exceed max_review_passes")
    if config.max_task_attempts < 1:
        raise LoopConfigError("max_task_attempts must be at least 1")
    if config.flaky_threshold < 1:
        raise LoopConfigError("flaky_threshold must be at least 1")


def _normalize_tools(value: Any) -> dict[str, tuple[str, ...]]:
    if not isinstance(value, dict):
        raise LoopConfigError("tools must map tool names to commands")
    tools: dict[str, tuple[str, ...]] = {}
    for name in sorted(value):
        command = value[name]
        argv = shlex.split(command) if isinstance(command, str) else _normalize_string_list(command, f"tools.{name}")
        if not argv:
            raise LoopConfigError(f"tools.{name} must not be empty")
        tools[str(name)] = tuple(argv)
    return tools


def _normalize_string_list(value: Any, field_name: str) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        raise LoopConfigError(f"{field_name} must be a list of strings")
    items = []
    for item in value:
        if not isinstance(item, str):
            raise LoopConfigError(f"{field_name} entries must be strings")
        if item.strip():
            items.append(item.strip())
    return items
