"""Codex CLI adapter."""

from __future__ import annotations

import os
import shlex
from typing import TYPE_CHECKING

from taskloop.runners.cli_tool import DEFAULT_KILL_GRACE_S, CliToolAdapter

if TYPE_CHECKING:
    from pathlib import Path

CODEX_COMMAND = ("codex", "exec", "--yolo")
CODEX_COMMAND_ENV = "CODEX_CMD"


class CodexCliAdapter(CliToolAdapter):
    """Non-interactive ``codex exec``; ``CODEX_CMD`` replaces the command line."""

    runner_id = "codex"

    def __init__(self, *, cwd: Path | None = None, kill_grace_s: float = DEFAULT_KILL_GRACE_S) -> None:
        override = os.environ.get(CODEX_COMMAND_ENV, "").strip()
        command = shlex.split(override) if override else list(CODEX_COMMAND)
        super().__init__(self.runner_id, command, cwd=cwd, kill_grace_s=kill_grace_s)
