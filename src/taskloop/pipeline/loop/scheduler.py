"""Execution scheduler: a bounded polling loop with one task in flight.

Each iteration heals stalled tasks, selects the first eligible task, dispatches
it to a tool, and accepts the tool's claim of completion only after task
verification, the build gate, optional review and the optional LLM judge pass.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rich.console import Console

from taskloop.gates.antipatterns import scan_diff
from taskloop.gates.build import BuildGate
from taskloop.gates.judge import run_llm_judge
from taskloop.gates.verification import (
    PLAN_LLM_ONLY,
    PLAN_UNVERIFIED,
    MissingVerificationError,
    resolve_verification,
    run_verification,
    touches_tests,
)
from taskloop.pipeline.loop.flaky import SCOPE_GLOBAL, FlakyDetector
from taskloop.pipeline.loop.healing import SelfHealer, StallDetector, TaskTracker
from taskloop.pipeline.loop.markers import Signal, detect_signal, extract_learnings
from taskloop.pipeline.loop.prompt import render_task_prompt
from taskloop.pipeline.loop.review import REVIEW_OFF, ReviewLoop
from taskloop.pipeline.loop.state import RunState
from taskloop.pipeline.loop.types import VERIFICATION_KINDS, OutcomeKind, RunOutcome, RunStatus, TaskOutcome
from taskloop.pipeline.task_compiler.types import TaskStatus
from taskloop.runners.routing import build_tools, select_review_tool, select_tool
from taskloop.utils.exec import ExecError
from taskloop.utils.git import changed_files, commit_all, tree_digest, working_diff

if TYPE_CHECKING:
    from pathlib import Path

    from taskloop.gates.verification import VerificationPlan
    from taskloop.pipeline.loop.config import LoopConfig, LoopPaths
    from taskloop.pipeline.task_compiler.types import Task
    from taskloop.runners.base import ToolAdapter, ToolResult
    from taskloop.store.base import TaskStore


class SchedulerError(RuntimeError):
    """Run-level problem (misconfigured tools) that stops the loop."""


def make_run_id() -> str:
    return "RUN_" + datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")


@dataclass
class LoopContext:
    """Everything the scheduler touches, passed explicitly."""

    config: LoopConfig
    paths: LoopPaths
    store: TaskStore
    tools: Mapping[str, ToolAdapter]
    run_state: RunState
    build_gate: BuildGate
    tracker: TaskTracker
    healer: SelfHealer
    flaky: FlakyDetector
    console: Console = field(default_factory=Console)
    run_id: str = field(default_factory=make_run_id)
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep
    diff_source: Callable[[Path], str] = working_diff
    changed_files_source: Callable[[Path], list[str]] = changed_files
    committer: Callable[[Path, str], str | None] = commit_all
    digest_source: Callable[[Path], str] = tree_digest

    @property
    def project_root(self) -> Path:
        return self.paths.project_root


def build_context(
    config: LoopConfig,
    paths: LoopPaths,
    store: TaskStore,
    *,
    console: Console | None = None,
    tools: Mapping[str, ToolAdapter] | None = None,
    clock: Callable[[], float] = time.time,
) -> LoopContext:
    """Wire the default collaborators for a project."""
    run_id = make_run_id()
    tracker = TaskTracker(paths.tracking)
    detector = StallDetector(
        threshold_s=config.stall_threshold_s,
        heartbeat_timeout_s=config.heartbeat_timeout_s,
        heartbeat_floor_s=config.heartbeat_floor_s,
    )
    if tools is None:
        tools = build_tools(config.tools, cwd=paths.project_root, kill_grace_s=config.kill_grace_s)
    return LoopContext(
        config=config,
        paths=paths,
        store=store,
        tools=tools,
        run_state=RunState.for_paths(paths, run_id=run_id, mode=store.name),
        build_gate=BuildGate.from_config(config, paths.project_root, paths.logs_dir),
        tracker=tracker,
        healer=SelfHealer(store, tracker, detector, max_heal_attempts=config.max_heal_attempts, clock=clock),
        flaky=FlakyDetector(config.flaky_threshold),
        console=console or Console(),
        run_id=run_id,
        clock=clock,
    )


class Scheduler:
    """Drives tasks from the store until done, blocked, halted or out of iterations."""

    def __init__(self, ctx: LoopContext) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.store = ctx.store
        self.console = ctx.console
        self.outcomes: list[TaskOutcome] = []

    # Run level

    def run(self) -> RunOutcome:
        state = self.ctx.run_state
        state.progress.start(self.ctx.run_id, self.store.name)
        state.learnings.start_session()
        state.summary.start(self.ctx.run_id)
        self._report_graph_warnings()

        if self.config.self_heal:
            for task_id in self.ctx.healer.adopt_orphans():
                self.console.print(f"[yellow]Warning: task {task_id} was left in progress; tracking it for stall recovery[/yellow]")

        tasks_run = 0
        iteration = 0
        try:
            for iteration in range(1, self.config.max_iterations + 1):
                if self.config.self_heal:
                    self._heal()

                task = self.store.get_next()
                if task is None:
                    return self._finish_without_next(iteration - 1)

                self.console.print(
                    f"\n[bold cyan]Iteration {iteration}/{self.config.max_iterations}[/bold cyan] "
                    f"{task.active_form or task.subject} [dim]({task.id})[/dim]"
                )
                outcome = self.run_task(task, iteration)
                self.outcomes.append(outcome)
                tasks_run += 1

                if outcome.is_failure and not self.config.continue_on_error:
                    return self._finish(
                        "halted",
                        iteration,
                        f"Stopped after task {task.id} ended {outcome.status.value} ({outcome.kind})",
                    )
                if self.config.max_tasks and tasks_run >= self.config.max_tasks:
                    return self._finish("max_tasks", iteration, f"Reached max tasks ({self.config.max_tasks})")
                if self.config.iteration_delay_s > 0:
                    self.ctx.sleep(self.config.iteration_delay_s)
        except SchedulerError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            return self._finish("halted", iteration, str(exc))

        if self.store.get_next() is None:
            return self._finish_without_next(iteration)
        return self._finish(
            "max_iterations", iteration, f"Reached max iterations ({self.config.max_iterations})"
        )

    def run_one(self, task_id: str) -> RunOutcome:
        """Single attempt at one named task, outside the polling loop."""
        task = self.store.get_by_id(task_id)
        if task is None:
            raise SchedulerError(f"Unknown task ID: {task_id}")
        if task.status == TaskStatus.COMPLETED:
            raise SchedulerError(f"Task {task_id} is already completed")
        status = {other.id: other.status for other in self.store.list_tasks()}
        waiting = [dep for dep in task.blocked_by if status.get(dep) != TaskStatus.COMPLETED]
        if waiting:
            raise SchedulerError(f"Task {task_id} is blocked by unfinished tasks: {', '.join(waiting)}")

        state = self.ctx.run_state
        state.progress.start(self.ctx.run_id, self.store.name)
        state.learnings.start_session()
        state.summary.start(self.ctx.run_id)
        self.console.print(f"\n[bold cyan]Task {task.id}[/bold cyan] {task.active_form or task.subject}")
        try:
            outcome = self.run_task(task, 1)
        except SchedulerError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            return self._finish("halted", 1, str(exc), exit_code=1)
        self.outcomes.append(outcome)
        if outcome.status == TaskStatus.COMPLETED:
            return self._finish("completed", 1, f"Task {task.id} completed", exit_code=0)
        return self._finish(
            "halted", 1, f"Task {task.id} ended {outcome.status.value} ({outcome.kind})", exit_code=1
        )

    def _finish_without_next(self, iteration: int) -> RunOutcome:
        tasks = self.store.list_tasks()
        pending = [task for task in tasks if task.status == TaskStatus.PENDING]
        in_progress = [task for task in tasks if task.status == TaskStatus.IN_PROGRESS]
        if all(task.status == TaskStatus.COMPLETED for task in tasks):
            return self._finish("completed", iteration, "All tasks completed")
        if pending or in_progress:
            waiting = ", ".join(task.id for task in [*pending, *in_progress])
            return self._finish("blocked", iteration, f"No eligible task; waiting on unsatisfiable blockers: {waiting}")
        return self._finish("failed", iteration, "No tasks left to run; some ended failed or blocked")

    def _finish(
        self, status: RunStatus, iteration: int, message: str, *, exit_code: int | None = None
    ) -> RunOutcome:
        tasks = self.store.list_tasks()
        if exit_code is None:
            exit_code = 0 if all(task.status == TaskStatus.COMPLETED for task in tasks) else 1

        style = "green" if exit_code == 0 else "red"
        self.console.print(f"\n[bold {style}]{message}[/bold {style}]")
        self.ctx.run_state.progress.record(
            "Run Finished",
            {
                "Status": status,
                "Exit code": exit_code,
                "Iterations": iteration,
                "Completed": sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
                "Total": len(tasks),
            },
            body=message,
        )
        self.ctx.run_state.loop_state.update(
            task_id=None, subject=None, status=status, phase="finished", note=message
        )
        return RunOutcome(
            status=status,
            exit_code=exit_code,
            iterations=iteration,
            message=message,
            outcomes=list(self.outcomes),
        )

    def _report_graph_warnings(self) -> None:
        warnings_source = getattr(self.store, "warnings", None)
        if warnings_source is None:
            return
        for warning in warnings_source():
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")

    def _heal(self) -> None:
        for event in self.ctx.healer.check():
            verdict = "marked failed" if event.gave_up else f"reset to pending (heal attempt {event.heal_attempt})"
            self.console.print(f"[yellow]Warning: task {event.task_id} stalled ({event.reason}); {verdict}[/yellow]")
            self.ctx.run_state.progress.record(
                "Self-Heal Event",
                {
                    "Task": event.task_id,
                    "Reason": event.reason,
                    "Heal attempt": event.heal_attempt,
                    "Result": "failed" if event.gave_up else "pending",
                },
            )

    # Task level

    def run_task(self, task: Task, iteration: int) -> TaskOutcome:
        """One attempt at ``task``: dispatch, interpret, verify, record."""
        attempt = task.attempts + 1
        tool_name = select_tool(
            task,
            tool=self.config.tool,
            frontend_tool=self.config.frontend_tool,
            backend_tool=self.config.backend_tool,
        )
        implementer = self._tool(tool_name)
        review_name = select_review_tool(tool_name, self.config.review_tool)
        needs_reviewer = self.config.review_mode != REVIEW_OFF or bool(task.llm_verification)
        if needs_reviewer and review_name == tool_name and not self.config.allow_same_review_tool:
            raise SchedulerError(
                f"Review tool `{review_name}` is also implementing task {task.id}; "
                "set a different review_tool or allow_same_review_tool"
            )
        if needs_reviewer:
            self._tool(review_name)

        try:
            plan = resolve_verification(task, self.config, self.ctx.project_root)
        except MissingVerificationError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            return self._fail(task, attempt, "missing_verification", str(exc), retryable=False)
        if plan.origin == PLAN_LLM_ONLY:
            self.console.print(f"[yellow]Warning: task {task.id} has only LLM acceptance criteria[/yellow]")
        elif plan.origin == PLAN_UNVERIFIED:
            self.console.print(f"[yellow]Warning: task {task.id} runs without verification[/yellow]")

        state = self.ctx.run_state
        state.progress.record(
            f"Iteration {iteration}",
            {"Task": f"{task.id} {task.subject}", "Tool": tool_name, "Attempt": attempt},
        )
        log_path = self.ctx.paths.logs_dir / f"{task.id}.log"
        self.store.set_status(task.id, TaskStatus.IN_PROGRESS, attempts=attempt)
        self.ctx.tracker.record_start(task.id, started_at=self.ctx.clock(), log_path=log_path)
        self._snapshot(task, "in_progress", "implement", attempt, tool_name, review_name)

        prompt = render_task_prompt(
            task,
            verification=plan.commands,
            learnings=state.learnings.session_text(),
            progress_tail=state.progress.tail(),
        )
        result = implementer.invoke(prompt, self.config.tool_timeout_s, log_path)
        state.learnings.capture(task.id, task.subject, tool_name, extract_learnings(result.output))

        outcome = self._interpret(task, attempt, result, plan, implementer, review_name)
        self.ctx.tracker.clear(task.id)
        state.summary.add_row(task.id, task.subject, outcome.status.value, outcome.commit, outcome.detail)
        self._snapshot(task, outcome.status.value, "done", attempt, tool_name, review_name, outcome.detail)
        return outcome

    def _interpret(
        self,
        task: Task,
        attempt: int,
        result: ToolResult,
        plan: VerificationPlan,
        implementer: ToolAdapter,
        review_name: str,
    ) -> TaskOutcome:
        signal = detect_signal(result.output)
        if signal == Signal.COMPLETE:
            if result.exit_code != 0:
                self.console.print(
                    f"[yellow]Warning: tool exited {result.exit_code} after signalling completion; verifying anyway[/yellow]"
                )
            return self._verify(task, attempt, plan, implementer, review_name)
        if signal == Signal.BLOCKED:
            return self._fail(task, attempt, "agent_blocked", "needs external input", retryable=False)
        if signal == Signal.FAILED:
            return self._fail(task, attempt, "agent_failed", "tool reported failure", retryable=False)
        if result.exit_code != 0:
            detail = (
                f"timed out after {self.config.tool_timeout_s:.0f}s"
                if result.timed_out
                else f"tool exited {result.exit_code}"
            )
            return self._fail(task, attempt, "tool_failed", detail, heading="TOOL FAILURE")

        self.console.print(f"[yellow]Warning: no completion signal from tool; task {task.id} will be retried[/yellow]")
        self.store.set_status(task.id, TaskStatus.PENDING)
        return TaskOutcome(task.id, TaskStatus.PENDING, "no_signal", "no completion signal", retry=True)

    def _verify(
        self,
        task: Task,
        attempt: int,
        plan: VerificationPlan,
        implementer: ToolAdapter,
        review_name: str,
    ) -> TaskOutcome:
        root = self.ctx.project_root
        fresh = self.store.get_by_id(task.id) or task
        commands = fresh.verification or list(plan.commands)

        self._snapshot(fresh, "in_progress", "verify", attempt, implementer.name, review_name)
        if commands:
            verification = run_verification(commands, cwd=root)
            if not verification.passed:
                return self._verification_failed(
                    fresh,
                    attempt,
                    "verification_failed",
                    f"`{verification.failed_command}` exited {verification.exit_code}",
                    verification.output,
                    heading="VERIFICATION FAILURE",
                )

        self._scan_antipatterns(fresh)

        if self.config.require_tests and not touches_tests(self.ctx.changed_files_source(root)):
            return self._verification_failed(
                fresh, attempt, "tests_missing", "no test files changed", "no test files changed",
                heading="VERIFICATION FAILURE",
            )

        build = self.ctx.build_gate.run(fresh.id)
        failed = build.failed_stage
        if failed is not None:
            return self._verification_failed(
                fresh,
                attempt,
                "build_failed",
                f"{failed.stage} failed: {failed.command} exited {failed.exit_code}",
                failed.output,
                heading="BUILD FAILURE",
            )
        self.console.print(f"[green]✓ Build verification: {build.summary()}[/green]")

        if self.config.review_mode != REVIEW_OFF:
            review = ReviewLoop(
                mode=self.config.review_mode,
                implementer=implementer,
                reviewer=self._tool(review_name),
                project_root=root,
                timeout_s=self.config.tool_timeout_s,
                min_passes=self.config.min_review_passes,
                max_passes=self.config.max_review_passes,
                log_dir=self.ctx.paths.logs_dir,
                diff_source=self.ctx.diff_source,
                digest_source=self.ctx.digest_source,
            ).run(fresh)
            if review.issues:
                self.console.print(f"[cyan]Review found {len(review.issues)} issue(s) over {review.passes} pass(es)[/cyan]")
            if review.mutated:
                rebuild = self.ctx.build_gate.run(fresh.id)
                failed = rebuild.failed_stage
                if failed is not None:
                    return self._verification_failed(
                        fresh,
                        attempt,
                        "review_regression",
                        f"{failed.stage} failed after review fixes",
                        failed.output,
                        heading="BUILD FAILURE",
                    )

        if fresh.llm_verification:
            self._snapshot(fresh, "in_progress", "judge", attempt, implementer.name, review_name)
            judge = run_llm_judge(
                self._tool(review_name),
                fresh,
                diff=self.ctx.diff_source(root),
                changed_files=self.ctx.changed_files_source(root),
                timeout_s=self.config.tool_timeout_s,
                log_path=self.ctx.paths.logs_dir / f"{fresh.id}-judge.log",
            )
            if not judge.passed:
                return self._verification_failed(
                    fresh, attempt, "judge_failed", "LLM judge did not pass", judge.output,
                    heading="VERIFICATION FAILURE",
                )

        self.store.set_status(fresh.id, TaskStatus.COMPLETED, attempts=attempt)
        self.ctx.flaky.reset()
        commit = self._commit(fresh)
        self.console.print(f"[green]✓ Task {fresh.id} completed[/green]")
        return TaskOutcome(fresh.id, TaskStatus.COMPLETED, "completed", commit=commit)

    def _verification_failed(
        self,
        task: Task,
        attempt: int,
        kind: OutcomeKind,
        detail: str,
        output: str,
        *,
        heading: str,
    ) -> TaskOutcome:
        verdict = self.ctx.flaky.record_failure(task.id, output)
        if not verdict.escalate:
            return self._fail(task, attempt, kind, detail, heading=heading, output=output)

        self.store.set_status(task.id, TaskStatus.BLOCKED, attempts=attempt)
        message = f"same failure seen {verdict.count} times in a row (fingerprint {verdict.fingerprint})"
        if verdict.scope == SCOPE_GLOBAL:
            message += "; it spans several tasks, so the project itself is probably broken"
        self.console.print(f"[bold red]Task {task.id} blocked:[/bold red] {message}")
        self.ctx.run_state.progress.record(
            "FLAKY FAILURE",
            {"Task": f"{task.id} {task.subject}", "Scope": verdict.scope, "Detail": detail},
            body=message,
        )
        return TaskOutcome(task.id, TaskStatus.BLOCKED, "flaky", message)

    def _fail(
        self,
        task: Task,
        attempt: int,
        kind: OutcomeKind,
        detail: str,
        *,
        retryable: bool = True,
        heading: str = "TASK FAILURE",
        output: str | None = None,
    ) -> TaskOutcome:
        self.store.set_status(task.id, TaskStatus.FAILED, attempts=attempt)
        retry = retryable and self.config.continue_on_error and attempt < self.config.max_task_attempts
        if retry:
            self.store.set_status(task.id, TaskStatus.PENDING)

        label = "verification" if kind in VERIFICATION_KINDS else "tool"
        self.console.print(f"[bold red]✗ Task {task.id} failed ({label}):[/bold red] {detail}")
        body = _tail_lines(output, 40) if output else None
        self.ctx.run_state.progress.record(
            heading,
            {
                "Task": f"{task.id} {task.subject}",
                "Kind": kind,
                "Attempt": attempt,
                "Detail": detail,
                "Retry": "yes" if retry else "no",
            },
            body=body,
        )
        status = TaskStatus.PENDING if retry else TaskStatus.FAILED
        return TaskOutcome(task.id, status, kind, detail, retry=retry)

    def _scan_antipatterns(self, task: Task) -> None:
        findings = scan_diff(self.ctx.diff_source(self.ctx.project_root))
        if not findings:
            return
        self.console.print(f"[bold yellow]Warning: {len(findings)} suspicious change(s) in task {task.id}[/bold yellow]")
        for finding in findings:
            self.console.print(f"  [yellow]{finding.path}: {finding.rule}[/yellow] {finding.line}")
        self.ctx.run_state.progress.record(
            "SUSPICIOUS CHANGES",
            {"Task": f"{task.id} {task.subject}"},
            body="\n".join(f"- {f.path}: {f.rule}: {f.line}" for f in findings),
        )

    def _commit(self, task: Task) -> str | None:
        if not self.config.auto_commit:
            return None
        message = f"{self.config.commit_prefix}({task.id}): {task.subject}"
        try:
            return self.ctx.committer(self.ctx.project_root, message)
        except ExecError as exc:
            self.console.print(f"[yellow]Warning: auto-commit failed: {exc}[/yellow]")
            return None

    def _tool(self, name: str) -> ToolAdapter:
        try:
            return self.ctx.tools[name]
        except KeyError as exc:
            available = ", ".join(sorted(self.ctx.tools)) or "(none)"
            raise SchedulerError(f"Unknown tool `{name}`. Available: {available}") from exc

    def _snapshot(
        self,
        task: Task,
        status: str,
        phase: str,
        attempt: int,
        implement_tool: str,
        review_tool: str,
        note: str = "",
    ) -> None:
        self.ctx.run_state.loop_state.update(
            task_id=task.id,
            subject=task.subject,
            status=status,
            phase=phase,
            attempt=attempt,
            implement_tool=implement_tool,
            review_tool=review_tool,
            note=note,
        )


def _tail_lines(text: str, count: int) -> str:
    return "\n".join(text.strip().splitlines()[-count:])
