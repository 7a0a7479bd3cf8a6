"""Adapter that drives an agent CLI as a subprocess."""

from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from taskloop.runners.base import TIMEOUT_EXIT_CODE, ToolResult

DEFAULT_KILL_GRACE_S = 30.0
COMMAND_NOT_FOUND_EXIT_CODE = 127
COMMAND_NOT_EXECUTABLE_EXIT_CODE = 126


class CliToolAdapter:
    """Run ``command + [prompt]`` in its own process group.

    Output is streamed line by line into memory and, when a log path is given,
    into the task log (the heartbeat watched by the stall detector). On timeout
    the group gets SIGTERM, then SIGKILL after ``kill_grace_s``.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        kill_grace_s: float = DEFAULT_KILL_GRACE_S,
    ) -> None:
        if not command:
            raise ValueError(f"tool `{name}` has an empty command")
        self.name = name
        self.command = list(command)
        self.cwd = cwd
        self.kill_grace_s = kill_grace_s

    def invoke(self, prompt: str, timeout_s: float, log_path: Path | None = None) -> ToolResult:
        argv = [*self.command, prompt]
        started = time.monotonic()
        log_handle = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = open(log_path, "a", encoding="utf-8", errors="replace")  # noqa: SIM115

        try:
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=self.cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as exc:
                # Launch failures are task-level results, like a shell's 127/126.
                if isinstance(exc, FileNotFoundError):
                    exit_code = COMMAND_NOT_FOUND_EXIT_CODE
                    message = f"{argv[0]}: command not found\n"
                else:
                    exit_code = COMMAND_NOT_EXECUTABLE_EXIT_CODE
                    message = f"{argv[0]}: cannot execute: {exc.strerror or exc}\n"
                if log_handle:
                    log_handle.write(message)
                return ToolResult(
                    exit_code=exit_code,
                    output=message,
                    duration_s=time.monotonic() - started,
                )

            chunks: list[str] = []
            pump = threading.Thread(
                target=_pump_output, args=(proc.stdout, chunks, log_handle), daemon=True
            )
            pump.start()

            timed_out = False
            try:
                exit_code = proc.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._terminate(proc)
                exit_code = TIMEOUT_EXIT_CODE
            pump.join(timeout=5)

            return ToolResult(
                exit_code=exit_code,
                output="".join(chunks),
                timed_out=timed_out,
                duration_s=time.monotonic() - started,
            )
        finally:
            if log_handle:
                log_handle.close()

    def _terminate(self, proc: subprocess.Popen[str]) -> None:
        """Graceful then forceful kill of the whole process group."""
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_s)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            proc.wait()


def _pump_output(stream: IO[str] | None, chunks: list[str], log_handle: IO[str] | None) -> None:
    if stream is None:
        return
    for line in stream:
        chunks.append(line)
        if log_handle:
            log_handle.write(line)
            log_handle.flush()
