"""Tool adapters for the execution loop."""

from taskloop.runners.base import TIMEOUT_EXIT_CODE, ToolAdapter, ToolResult
from taskloop.runners.claude_code import ClaudeCodeAdapter
from taskloop.runners.cli_tool import CliToolAdapter
from taskloop.runners.codex_cli import CodexCliAdapter

RUNNER_ADAPTERS: dict[str, type[ClaudeCodeAdapter] | type[CodexCliAdapter]] = {
    ClaudeCodeAdapter.runner_id: ClaudeCodeAdapter,
    CodexCliAdapter.runner_id: CodexCliAdapter,
}

__all__ = [
    "TIMEOUT_EXIT_CODE",
    "ToolAdapter",
    "ToolResult",
    "ClaudeCodeAdapter",
    "CliToolAdapter",
    "CodexCliAdapter",
    "RUNNER_ADAPTERS",
]
