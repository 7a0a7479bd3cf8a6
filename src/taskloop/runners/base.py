"""Tool-invocation interface used by the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class ToolResult:
    """Exit code and captured transcript of one tool invocation."""

    exit_code: int
    output: str
    timed_out: bool = False
    duration_s: float = 0.0


class ToolAdapter(Protocol):
    """An external agent that takes one natural-language prompt."""

    name: str

    def invoke(self, prompt: str, timeout_s: float, log_path: Path | None = None) -> ToolResult:
        ...
