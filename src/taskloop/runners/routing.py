"""Pick which tool implements a task and which one reviews it."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from taskloop.runners import RUNNER_ADAPTERS
from taskloop.runners.claude_code import ClaudeCodeAdapter
from taskloop.runners.cli_tool import CliToolAdapter
from taskloop.runners.codex_cli import CodexCliAdapter

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.task_compiler.types import Task
    from taskloop.runners.base import ToolAdapter

SMART_ROUTING = "smart"
DEFAULT_TOOL = ClaudeCodeAdapter.runner_id

FRONTEND_TAGS = frozenset({"ui", "components", "frontend", "design", "css", "styles", "layout", "view"})
BACKEND_TAGS = frozenset(
    {"core", "engine", "api", "backend", "data", "worker", "db", "database", "server"}
)

CROSS_REVIEW = {
    ClaudeCodeAdapter.runner_id: CodexCliAdapter.runner_id,
    CodexCliAdapter.runner_id: ClaudeCodeAdapter.runner_id,
}


def select_tool(
    task: Task,
    *,
    tool: str,
    frontend_tool: str = ClaudeCodeAdapter.runner_id,
    backend_tool: str = CodexCliAdapter.runner_id,
) -> str:
    """Resolve the implementing tool name.

    With smart routing, frontend-tagged (or mixed) tasks go to the frontend
    tool, backend-only tasks to the backend tool, anything else to claude.
    """
    if tool != SMART_ROUTING:
        return tool
    tags = {tag.lower() for tag in task.tags}
    if tags & FRONTEND_TAGS:
        return frontend_tool
    if tags & BACKEND_TAGS:
        return backend_tool
    return DEFAULT_TOOL


def select_review_tool(implementer: str, review_tool: str | None = None) -> str:
    """Configured reviewer, else the other built-in tool (cross-model review)."""
    if review_tool:
        return review_tool
    return CROSS_REVIEW.get(implementer, DEFAULT_TOOL)


def build_tools(
    custom_tools: Mapping[str, Sequence[str]],
    *,
    cwd: Path,
    kill_grace_s: float,
) -> dict[str, ToolAdapter]:
    """Instantiate the built-in adapters plus any command-line tools from config."""
    tools: dict[str, ToolAdapter] = {
        name: adapter_cls(cwd=cwd, kill_grace_s=kill_grace_s)
        for name, adapter_cls in RUNNER_ADAPTERS.items()
    }
    for name, command in custom_tools.items():
        tools[name] = CliToolAdapter(name, command, cwd=cwd, kill_grace_s=kill_grace_s)
    return tools
