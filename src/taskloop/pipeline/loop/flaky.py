"""Detection of repeated identical verification failures."""

from __future__ import annotations

from dataclasses import dataclass

from taskloop.pipeline.loop.markers import failure_fingerprint

SCOPE_TASK = "task"
SCOPE_GLOBAL = "global"


@dataclass(frozen=True)
class FlakyVerdict:
    fingerprint: str
    count: int
    escalate: bool
    scope: str  # SCOPE_TASK when the repeat was on the same task, else SCOPE_GLOBAL


class FlakyDetector:
    """Counts consecutive verification failures sharing a fingerprint.

    The same fingerprint on the same task, or on a different task (a global
    breakage), increments the counter; a new fingerprint resets it. Reaching the
    threshold escalates the current task to ``blocked`` and resets the counter.
    """

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self.last_fingerprint: str | None = None
        self.count = 0
        self.task_ids: set[str] = set()

    def record_failure(self, task_id: str, output: str) -> FlakyVerdict:
        fingerprint = failure_fingerprint(output)
        if fingerprint == self.last_fingerprint:
            self.count += 1
            self.task_ids.add(task_id)
        else:
            self.count = 1
            self.task_ids = {task_id}
        self.last_fingerprint = fingerprint

        scope = SCOPE_TASK if len(self.task_ids) == 1 else SCOPE_GLOBAL
        escalate = self.count >= self.threshold
        verdict = FlakyVerdict(fingerprint=fingerprint, count=self.count, escalate=escalate, scope=scope)
        if escalate:
            self.reset()
        return verdict

    def reset(self) -> None:
        self.last_fingerprint = None
        self.count = 0
        self.task_ids = set()
