"""Advisory PID lock that keeps two schedulers off the same task store."""

from __future__ import annotations

import json
import os
import signal
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskloop.errors import LockHeldError

if TYPE_CHECKING:
    from pathlib import Path
    from types import FrameType, TracebackType

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def pid_is_running(pid: int) -> bool:
    """Liveness check via signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def read_lock_pid(path: Path) -> int | None:
    """PID recorded in a lock file, or None when absent or unreadable."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    pid = payload.get("pid") if isinstance(payload, dict) else None
    return pid if isinstance(pid, int) else None


class RunLock:
    """Scoped lock lease.

    Usage::

        with RunLock(paths.lock, store_label=str(graph_path)):
            scheduler.run()

    A lock whose PID is no longer alive is reclaimed. A live holder can be
    overridden only by passing its exact PID as ``override_pid``. While held,
    SIGTERM and SIGHUP are turned into ``SystemExit`` so the lease is released on
    the way out; SIGINT already unwinds as ``KeyboardInterrupt``.
    """

    def __init__(self, path: Path, *, store_label: str = "", override_pid: int | None = None) -> None:
        self.path = path
        self.store_label = store_label
        self.override_pid = override_pid
        self.acquired = False
        self.reclaimed_pid: int | None = None
        self._previous_handlers: dict[int, Any] = {}

    def acquire(self) -> None:
        """Take the lease.

        Raises:
            LockHeldError: If a live process other than ``override_pid`` holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            existing_pid = read_lock_pid(self.path)
            if existing_pid and pid_is_running(existing_pid) and existing_pid != self.override_pid:
                raise LockHeldError(
                    f"Another scheduler is already running (pid={existing_pid}, lock={self.path}). "
                    f"Pass --force-unlock {existing_pid} if that process is not a scheduler.",
                    pid=existing_pid,
                )
            self.reclaimed_pid = existing_pid
            self.path.unlink(missing_ok=True)

        payload = {
            "pid": os.getpid(),
            "createdAt": datetime.now(UTC).isoformat(),
            "store": self.store_label,
        }
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise LockHeldError(f"Lock {self.path} was taken concurrently", pid=read_lock_pid(self.path)) from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True))
            handle.write("\n")
        self.acquired = True

    def release(self) -> None:
        """Remove the lock file if this process still owns it."""
        if not self.acquired:
            return
        if read_lock_pid(self.path) == os.getpid():
            self.path.unlink(missing_ok=True)
        self.acquired = False

    def __enter__(self) -> RunLock:
        self.acquire()
        self._install_signal_handlers()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._restore_signal_handlers()
        self.release()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _raise_system_exit)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()


def _raise_system_exit(signum: int, frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)
