"""Tests for the scheduler PID lock."""

from __future__ import annotations

import json
import os
import signal
from typing import TYPE_CHECKING

import pytest

from taskloop.errors import LockHeldError
from taskloop.pipeline.loop.lock import RunLock, pid_is_running, read_lock_pid

if TYPE_CHECKING:
    from pathlib import Path

DEAD_PID = 999_999_999


def _write_lock(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"pid": pid}), encoding="utf-8")


def test_pid_is_running() -> None:
    assert pid_is_running(os.getpid())
    assert not pid_is_running(DEAD_PID)
    assert not pid_is_running(0)


def test_acquire_and_release(tmp_path: Path) -> None:
    path = tmp_path / ".taskloop" / "loop.lock"
    lock = RunLock(path, store_label="graph.json")
    lock.acquire()

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()
    assert payload["store"] == "graph.json"

    lock.release()
    assert not path.exists()


def test_live_holder_refuses(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    _write_lock(path, os.getppid())

    with pytest.raises(LockHeldError) as excinfo:
        RunLock(path).acquire()
    assert excinfo.value.pid == os.getppid()
    assert read_lock_pid(path) == os.getppid()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    _write_lock(path, DEAD_PID)

    lock = RunLock(path)
    lock.acquire()

    assert lock.reclaimed_pid == DEAD_PID
    assert read_lock_pid(path) == os.getpid()
    lock.release()


def test_override_pid_takes_live_lock(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    _write_lock(path, os.getppid())

    lock = RunLock(path, override_pid=os.getppid())
    lock.acquire()

    assert lock.reclaimed_pid == os.getppid()
    assert read_lock_pid(path) == os.getpid()
    lock.release()


def test_wrong_override_pid_still_refuses(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    _write_lock(path, os.getppid())

    with pytest.raises(LockHeldError):
        RunLock(path, override_pid=DEAD_PID).acquire()


def test_release_leaves_foreign_lock(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    lock = RunLock(path)
    lock.acquire()
    _write_lock(path, os.getppid())

    lock.release()
    assert read_lock_pid(path) == os.getppid()


def test_context_manager_releases_on_error_and_restores_handlers(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"
    before = signal.getsignal(signal.SIGTERM)

    with pytest.raises(RuntimeError), RunLock(path):
        assert path.exists()
        assert signal.getsignal(signal.SIGTERM) is not before
        raise RuntimeError("boom")

    assert not path.exists()
    assert signal.getsignal(signal.SIGTERM) == before


def test_sigterm_while_held_becomes_system_exit(tmp_path: Path) -> None:
    path = tmp_path / "loop.lock"

    with pytest.raises(SystemExit) as excinfo, RunLock(path):
        os.kill(os.getpid(), signal.SIGTERM)

    assert excinfo.value.code == 128 + signal.SIGTERM
    assert not path.exists()
