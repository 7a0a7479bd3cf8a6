"""Stall detection and self-healing of in-flight tasks."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from taskloop.artifacts.canonical_json import write_json_atomic
from taskloop.pipeline.task_compiler.types import TaskStatus

if TYPE_CHECKING:
    from taskloop.store.base import TaskStore

STALL_WALL_CLOCK = "wall-clock"
STALL_HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class TrackingEntry:
    """When a task entered ``in_progress`` and where its transcript goes."""

    task_id: str
    started_at: float  # epoch seconds
    log_path: str | None = None


class TaskTracker:
    """Small JSON file of in-flight tasks, kept apart from the task store."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, dict[str, object]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            # Unreadable tracking only loses stall timing; start over.
            return {}
        return data if isinstance(data, dict) else {}

    def record_start(self, task_id: str, *, started_at: float, log_path: Path | None = None) -> None:
        data = self._load()
        data[task_id] = {
            "startedAt": started_at,
            "logPath": str(log_path) if log_path else None,
        }
        write_json_atomic(self.path, data)

    def clear(self, task_id: str) -> None:
        data = self._load()
        if data.pop(task_id, None) is not None:
            write_json_atomic(self.path, data)

    def get(self, task_id: str) -> TrackingEntry | None:
        for entry in self.entries():
            if entry.task_id == task_id:
                return entry
        return None

    def entries(self) -> list[TrackingEntry]:
        result = []
        for task_id, raw in self._load().items():
            if not isinstance(raw, dict):
                continue
            started_at = raw.get("startedAt")
            if not isinstance(started_at, (int, float)):
                continue
            log_path = raw.get("logPath")
            result.append(
                TrackingEntry(
                    task_id=task_id,
                    started_at=float(started_at),
                    log_path=str(log_path) if log_path else None,
                )
            )
        return result


class StallDetector:
    """Decides whether a tracked task has stalled.

    Stalled means the wall-clock threshold has passed, or the task has run past
    the floor and its log has had no bytes written for the heartbeat timeout.
    """

    def __init__(self, *, threshold_s: float, heartbeat_timeout_s: float, heartbeat_floor_s: float) -> None:
        self.threshold_s = threshold_s
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.heartbeat_floor_s = heartbeat_floor_s

    def check(self, entry: TrackingEntry, now: float) -> str | None:
        elapsed = now - entry.started_at
        if elapsed >= self.threshold_s:
            return STALL_WALL_CLOCK
        if elapsed < self.heartbeat_floor_s:
            return None

        last_beat = entry.started_at
        if entry.log_path:
            log_path = Path(entry.log_path)
            if log_path.exists():
                last_beat = max(last_beat, log_path.stat().st_mtime)
        if now - last_beat >= self.heartbeat_timeout_s:
            return STALL_HEARTBEAT
        return None


@dataclass(frozen=True)
class HealEvent:
    task_id: str
    reason: str
    heal_attempt: int
    gave_up: bool  # True when the task was marked failed instead of retried


class SelfHealer:
    """Resets stalled tasks to pending, bounded by ``max_heal_attempts``."""

    def __init__(
        self,
        store: TaskStore,
        tracker: TaskTracker,
        detector: StallDetector,
        *,
        max_heal_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.detector = detector
        self.max_heal_attempts = max_heal_attempts
        self.clock = clock

    def adopt_orphans(self) -> list[str]:
        """Track ``in_progress`` tasks left by an interrupted run that have no entry."""
        tracked = {entry.task_id for entry in self.tracker.entries()}
        adopted = []
        now = self.clock()
        for task in self.store.list_tasks():
            if task.status == TaskStatus.IN_PROGRESS and task.id not in tracked:
                self.tracker.record_start(task.id, started_at=now)
                adopted.append(task.id)
        return adopted

    def check(self) -> list[HealEvent]:
        """Heal every stalled tracked task; drop entries for tasks no longer in flight."""
        events = []
        now = self.clock()
        for entry in self.tracker.entries():
            task = self.store.get_by_id(entry.task_id)
            if task is None or task.status != TaskStatus.IN_PROGRESS:
                self.tracker.clear(entry.task_id)
                continue

            reason = self.detector.check(entry, now)
            if reason is None:
                continue

            attempt = task.heal_attempt + 1
            gave_up = attempt > self.max_heal_attempts
            if gave_up:
                self.store.set_status(task.id, TaskStatus.FAILED, heal_attempt=attempt)
            else:
                self.store.set_status(task.id, TaskStatus.PENDING, heal_attempt=attempt)
            self.tracker.clear(task.id)
            events.append(HealEvent(task_id=task.id, reason=reason, heal_attempt=attempt, gave_up=gave_up))
        return events
