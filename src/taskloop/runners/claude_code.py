"""Claude Code CLI adapter."""

from __future__ import annotations

import os
import shlex
from typing import TYPE_CHECKING

from taskloop.runners.cli_tool import DEFAULT_KILL_GRACE_S, CliToolAdapter

if TYPE_CHECKING:
    from pathlib import Path

CLAUDE_COMMAND = ("claude", "-p", "--dangerously-skip-permissions")
CLAUDE_COMMAND_ENV = "CLAUDE_CMD"


class ClaudeCodeAdapter(CliToolAdapter):
    """Non-interactive ``claude -p``; ``CLAUDE_CMD`` replaces the command line."""

    runner_id = "claude"

    def __init__(self, *, cwd: Path | None = None, kill_grace_s: float = DEFAULT_KILL_GRACE_S) -> None:
        override = os.environ.get(CLAUDE_COMMAND_ENV, "").strip()
        command = shlex.split(override) if override else list(CLAUDE_COMMAND)
        super().__init__(self.runner_id, command, cwd=cwd, kill_grace_s=kill_grace_s)
