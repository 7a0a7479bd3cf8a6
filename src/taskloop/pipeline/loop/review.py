"""Post-completion review passes that may send fixes back to the implementer."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskloop.pipeline.loop.markers import extract_review_issues, review_is_clean
from taskloop.pipeline.loop.prompt import COUNCIL_ROLES, render_fix_prompt, render_review_prompt
from taskloop.runners.routing import FRONTEND_TAGS
from taskloop.utils.git import tree_digest, working_diff

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.pipeline.task_compiler.types import Task
    from taskloop.runners.base import ToolAdapter

REVIEW_OFF = "off"
REVIEW_FRESH_EYES = "fresh-eyes"
REVIEW_COUNCIL = "council"


@dataclass
class ReviewOutcome:
    ran: bool = False
    mutated: bool = False
    passes: int = 0
    clean: bool = False
    issues: list[str] = field(default_factory=list)


class ReviewLoop:
    """Runs review passes for one task.

    ``fresh-eyes`` repeats a single reviewer until it reports no issues after
    at least ``min_passes`` passes, or ``max_passes`` is reached. ``council``
    asks each role once and sends everything found to one fix pass.
    """

    def __init__(
        self,
        *,
        mode: str,
        implementer: ToolAdapter,
        reviewer: ToolAdapter,
        project_root: Path,
        timeout_s: float,
        min_passes: int = 2,
        max_passes: int = 3,
        log_dir: Path | None = None,
        diff_source: Callable[[Path], str] = working_diff,
        digest_source: Callable[[Path], str] = tree_digest,
    ) -> None:
        self.mode = mode
        self.implementer = implementer
        self.reviewer = reviewer
        self.project_root = project_root
        self.timeout_s = timeout_s
        self.min_passes = min_passes
        self.max_passes = max_passes
        self.log_dir = log_dir
        self.diff_source = diff_source
        self.digest_source = digest_source

    def run(self, task: Task) -> ReviewOutcome:
        if self.mode == REVIEW_OFF:
            return ReviewOutcome()

        before = self.digest_source(self.project_root)
        if self.mode == REVIEW_COUNCIL:
            outcome = self._council(task)
        else:
            outcome = self._fresh_eyes(task)
        outcome.ran = True
        outcome.mutated = self.digest_source(self.project_root) != before
        return outcome

    def _fresh_eyes(self, task: Task) -> ReviewOutcome:
        outcome = ReviewOutcome()
        for pass_no in range(1, self.max_passes + 1):
            outcome.passes = pass_no
            prompt = render_review_prompt(task, diff=self.diff_source(self.project_root))
            result = self.reviewer.invoke(prompt, self.timeout_s, self._log(task, f"review-{pass_no}"))
            issues = extract_review_issues(result.output)
            if issues:
                outcome.issues.extend(issues)
                outcome.clean = False
                self._fix(task, issues, f"fix-{pass_no}")
                continue
            outcome.clean = review_is_clean(result.output)
            if outcome.clean and pass_no >= self.min_passes:
                break
        return outcome

    def _council(self, task: Task) -> ReviewOutcome:
        outcome = ReviewOutcome()
        roles = ["analyst", "sentinel"]
        if {tag.lower() for tag in task.tags} & FRONTEND_TAGS:
            roles.append("designer")

        diff = self.diff_source(self.project_root)
        for role in roles:
            outcome.passes += 1
            prompt = render_review_prompt(task, diff=diff, focus=COUNCIL_ROLES[role])
            result = self.reviewer.invoke(prompt, self.timeout_s, self._log(task, f"council-{role}"))
            outcome.issues.extend(f"{issue} ({role})" for issue in extract_review_issues(result.output))

        outcome.clean = not outcome.issues
        if outcome.issues:
            self._fix(task, outcome.issues, "council-fix")
        return outcome

    def _fix(self, task: Task, issues: list[str], label: str) -> None:
        self.implementer.invoke(render_fix_prompt(task, issues), self.timeout_s, self._log(task, label))

    def _log(self, task: Task, label: str) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / f"{task.id}-{label}.log"
