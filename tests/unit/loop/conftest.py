"""Fixtures for execution-loop tests: scripted tools and a wired scheduler."""

from __future__ import annotations

import io
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console

from taskloop.pipeline.loop.config import LoopPaths, config_from_mapping
from taskloop.pipeline.loop.markers import BLOCKED_MARKER, COMPLETE_MARKER
from taskloop.pipeline.loop.scheduler import LoopContext, Scheduler, build_context
from taskloop.runners.base import ToolResult
from taskloop.store.json_store import JsonTaskStore


class FakeTool:
    """Replays scripted responses; the last one repeats forever."""

    def __init__(self, name: str, *responses: Any) -> None:
        self.name = name
        self.responses = list(responses) or [COMPLETE_MARKER]
        self.prompts: list[str] = []

    def invoke(self, prompt: str, timeout_s: float, log_path: Path | None = None) -> ToolResult:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(response):
            response = response(prompt)
        if isinstance(response, str):
            response = ToolResult(exit_code=0, output=response)
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(response.output)
        return response


class Clock:
    def __init__(self, start: float = 1_000_000.0, step: float = 0.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def complete() -> str:
    return f"Implemented it.\nLEARNING: fixtures live in tests/conftest.py\n{COMPLETE_MARKER}\n"


@pytest.fixture
def blocked() -> str:
    return f"Need credentials.\n{BLOCKED_MARKER}\n"


@pytest.fixture
def write_graph(tmp_path: Path) -> Callable[[list[dict[str, Any]]], JsonTaskStore]:
    def _write(tasks: list[dict[str, Any]]) -> JsonTaskStore:
        paths = LoopPaths(tmp_path)
        paths.task_graph.parent.mkdir(parents=True, exist_ok=True)
        entries = [{"status": "pending", "subject": entry["id"].title(), **entry} for entry in tasks]
        paths.task_graph.write_text(json.dumps({"meta": {}, "tasks": entries}, indent=2), encoding="utf-8")
        return JsonTaskStore(paths.task_graph)

    return _write


@pytest.fixture
def make_scheduler(tmp_path: Path) -> Callable[..., tuple[Scheduler, LoopContext]]:
    """Build a scheduler over ``store`` with fake tools and no real sleeping or git."""

    def _make(
        store: JsonTaskStore,
        tools: dict[str, FakeTool],
        *,
        clock: Clock | None = None,
        **overrides: Any,
    ) -> tuple[Scheduler, LoopContext]:
        settings: dict[str, Any] = {"tool": "stub", "iteration_delay_s": 0.5}
        settings.update(overrides)
        config = config_from_mapping(settings)
        ctx = build_context(
            config,
            LoopPaths(tmp_path),
            store,
            console=Console(file=io.StringIO(), width=200),
            tools=tools,
            clock=clock or Clock(),
        )
        ctx.sleep = ctx_sleeps.append
        ctx.diff_source = lambda root: ""
        ctx.changed_files_source = lambda root: []
        ctx.committer = lambda root, message: None
        ctx.digest_source = lambda root: ""
        return Scheduler(ctx), ctx

    ctx_sleeps: list[float] = []
    _make.sleeps = ctx_sleeps  # type: ignore[attr-defined]
    return _make


@pytest.fixture
def fake_tool() -> type[FakeTool]:
    return FakeTool


@pytest.fixture
def clock_cls() -> type[Clock]:
    return Clock
