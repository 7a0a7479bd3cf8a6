"""Scheduler behavior against scripted tools and real verification commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from taskloop.pipeline.loop.markers import COMPLETE_MARKER, FAILED_MARKER
from taskloop.pipeline.loop.scheduler import SchedulerError
from taskloop.pipeline.task_compiler.types import TaskStatus
from taskloop.runners.base import ToolResult
from taskloop.runners.cli_tool import CliToolAdapter

if TYPE_CHECKING:
    from pathlib import Path

REPEATED_FAILURE = "echo 'FAILED tests/test_api.py::test_login'; exit 1"


def _statuses(store) -> dict[str, TaskStatus]:
    return {task.id: task.status for task in store.list_tasks()}


def _progress(ctx) -> str:
    return ctx.paths.progress.read_text(encoding="utf-8")


def test_runs_tasks_in_dependency_order(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph(
        [
            {"id": "b", "blockedBy": ["a"], "verification": ["true"]},
            {"id": "a", "verification": ["true"]},
        ]
    )
    tool = fake_tool("stub", complete)
    scheduler, ctx = make_scheduler(store, {"stub": tool})

    outcome = scheduler.run()

    assert outcome.status == "completed"
    assert outcome.exit_code == 0
    assert outcome.iterations == 2
    assert [item.task_id for item in outcome.outcomes] == ["a", "b"]
    assert _statuses(store) == {"a": TaskStatus.COMPLETED, "b": TaskStatus.COMPLETED}
    assert tool.prompts[0].startswith("# Task a: A")
    # learnings from the first task reach the second prompt
    assert "LEARNING: fixtures live in tests/conftest.py" in tool.prompts[1]
    assert make_scheduler.sleeps == [0.5, 0.5]

    state = json.loads(ctx.paths.loop_state.read_text(encoding="utf-8"))
    assert state["task"]["phase"] == "finished"
    assert "| a | A | completed |" in ctx.paths.summary.read_text(encoding="utf-8")
    assert (ctx.paths.logs_dir / "a.log").exists()


def test_claimed_completion_is_not_trusted(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["exit 1"]}, {"id": "b", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", complete)})

    outcome = scheduler.run()

    assert outcome.status == "halted"
    assert outcome.exit_code == 1
    assert outcome.outcomes[0].kind == "verification_failed"
    assert _statuses(store) == {"a": TaskStatus.FAILED, "b": TaskStatus.PENDING}
    assert "### VERIFICATION FAILURE" in _progress(ctx)


def test_verification_is_reread_after_the_tool_runs(write_graph, make_scheduler, fake_tool) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])

    def edit_then_complete(prompt: str) -> str:
        document = json.loads(store.path.read_text(encoding="utf-8"))
        document["tasks"][0]["verification"] = ["exit 4"]
        store.path.write_text(json.dumps(document), encoding="utf-8")
        return COMPLETE_MARKER

    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", edit_then_complete)})

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "verification_failed"
    assert "exit 4" in outcome.outcomes[0].detail


def test_repeated_identical_failure_blocks_task(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": [REPEATED_FAILURE]}])
    scheduler, ctx = make_scheduler(
        store,
        {"stub": fake_tool("stub", complete)},
        continue_on_error=True,
        max_task_attempts=5,
        flaky_threshold=3,
    )

    outcome = scheduler.run()

    assert [item.kind for item in outcome.outcomes] == ["verification_failed", "verification_failed", "flaky"]
    assert [item.retry for item in outcome.outcomes] == [True, True, False]
    assert _statuses(store) == {"a": TaskStatus.BLOCKED}
    assert outcome.status == "failed"
    assert outcome.exit_code == 1
    assert "### FLAKY FAILURE" in _progress(ctx)


def test_retries_stop_at_max_attempts(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["exit 1"]}])
    scheduler, _ = make_scheduler(
        store,
        {"stub": fake_tool("stub", complete)},
        continue_on_error=True,
        max_task_attempts=2,
        flaky_threshold=10,
    )

    outcome = scheduler.run()

    assert len(outcome.outcomes) == 2
    task = store.get_by_id("a")
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2


def test_without_continue_on_error_failures_are_not_retried(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["exit 1"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)})

    outcome = scheduler.run()

    assert len(outcome.outcomes) == 1
    assert outcome.outcomes[0].retry is False
    assert store.get_by_id("a").status == TaskStatus.FAILED


def test_agent_blocked_signal(write_graph, make_scheduler, fake_tool, blocked) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", blocked)}, continue_on_error=True)

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "agent_blocked"
    assert outcome.outcomes[0].detail == "needs external input"
    assert store.get_by_id("a").status == TaskStatus.FAILED
    assert len(outcome.outcomes) == 1


def test_agent_failed_signal_halts(write_graph, make_scheduler, fake_tool) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}, {"id": "b", "verification": ["true"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", FAILED_MARKER)})

    outcome = scheduler.run()

    assert outcome.status == "halted"
    assert outcome.outcomes[0].kind == "agent_failed"
    assert store.get_by_id("b").status == TaskStatus.PENDING


def test_tool_crash_is_a_tool_failure(write_graph, make_scheduler, fake_tool) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    crash = ToolResult(exit_code=124, output="partial", timed_out=True)
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", crash)})

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "tool_failed"
    assert "timed out" in outcome.outcomes[0].detail
    assert "### TOOL FAILURE" in _progress(ctx)


def test_no_signal_leaves_task_pending(write_graph, make_scheduler, fake_tool) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", "I did some things")}, max_iterations=2)

    outcome = scheduler.run()

    assert outcome.status == "max_iterations"
    assert outcome.exit_code == 1
    assert [item.kind for item in outcome.outcomes] == ["no_signal", "no_signal"]
    assert store.get_by_id("a").status == TaskStatus.PENDING


def test_missing_verification_fails_before_dispatch(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a"}])
    tool = fake_tool("stub", complete)
    scheduler, _ = make_scheduler(store, {"stub": tool})

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "missing_verification"
    assert tool.prompts == []
    assert store.get_by_id("a").status == TaskStatus.FAILED


def test_default_verification_applies(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a"}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)}, default_verification=["exit 2"])

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "verification_failed"


def test_allow_no_verify(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a"}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)}, allow_no_verify=True)

    assert scheduler.run().exit_code == 0


def test_unsatisfiable_blockers_end_blocked(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph(
        [
            {"id": "a", "verification": ["true"], "status": "failed"},
            {"id": "b", "verification": ["true"], "blockedBy": ["a"]},
        ]
    )
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)})

    outcome = scheduler.run()

    assert outcome.status == "blocked"
    assert outcome.exit_code == 1
    assert outcome.outcomes == []


def test_max_tasks(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": name, "verification": ["true"]} for name in ("a", "b", "c")])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)}, max_tasks=2)

    outcome = scheduler.run()

    assert outcome.status == "max_tasks"
    assert _statuses(store)["c"] == TaskStatus.PENDING


def test_llm_judge_gates_completion(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph(
        [
            {"id": "a", "verification": ["true"], "llmVerification": ["copy is friendly"]},
            {"id": "b", "verification": ["true"], "llmVerification": "matches the mockup"},
        ]
    )
    judge = fake_tool("judge", "LLM_PASS", "Close, but no.\nLLM_FAIL")
    scheduler, _ = make_scheduler(
        store, {"stub": fake_tool("stub", complete), "judge": judge}, review_tool="judge", continue_on_error=True
    )

    outcome = scheduler.run()

    assert [item.kind for item in outcome.outcomes][:2] == ["completed", "judge_failed"]
    assert "copy is friendly" in judge.prompts[0]
    assert store.get_by_id("a").status == TaskStatus.COMPLETED


def test_reviewer_must_differ_from_implementer(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"], "llmVerification": ["reads well"]}])
    tool = fake_tool("stub", complete)
    scheduler, _ = make_scheduler(store, {"stub": tool}, review_tool="stub")

    outcome = scheduler.run()

    assert outcome.status == "halted"
    assert outcome.exit_code == 1
    assert tool.prompts == []
    assert store.get_by_id("a").status == TaskStatus.PENDING


def test_unknown_tool_halts(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)}, tool="nope")

    outcome = scheduler.run()

    assert outcome.status == "halted"
    assert "Unknown tool `nope`" in outcome.message


def test_stalled_orphan_is_healed_then_run(write_graph, make_scheduler, fake_tool, complete, clock_cls) -> None:
    store = write_graph([{"id": "a", "verification": ["true"], "status": "in_progress"}])
    scheduler, ctx = make_scheduler(
        store,
        {"stub": fake_tool("stub", complete)},
        clock=clock_cls(step=2000.0),
        stall_threshold_s=1200.0,
    )

    outcome = scheduler.run()

    assert outcome.status == "completed"
    task = store.get_by_id("a")
    assert task.heal_attempt == 1
    assert "### Self-Heal Event" in _progress(ctx)
    assert ctx.tracker.entries() == []


def test_orphan_without_self_heal_leaves_run_blocked(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"], "status": "in_progress"}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)}, self_heal=False)

    outcome = scheduler.run()

    assert outcome.status == "blocked"
    assert store.get_by_id("a").status == TaskStatus.IN_PROGRESS


def test_auto_commit_message(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "subject": "Add model", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", complete)}, auto_commit=True)
    messages: list[str] = []

    def commit(root: Path, message: str) -> str:
        messages.append(message)
        return "abc1234"

    ctx.committer = commit
    outcome = scheduler.run()

    assert messages == ["feat(a): Add model"]
    assert outcome.outcomes[0].commit == "abc1234"
    assert "| a | Add model | completed | abc1234 |" in ctx.paths.summary.read_text(encoding="utf-8")


def test_require_tests_rejects_untested_change(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", complete)}, require_tests=True)
    ctx.changed_files_source = lambda root: ["src/app.py"]

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "tests_missing"


def test_suspicious_changes_are_advisory(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", complete)})
    ctx.diff_source = lambda root: "+++ b/src/app.py\n+x = y  # type: ignore\n"

    outcome = scheduler.run()

    assert outcome.exit_code == 0
    assert "### SUSPICIOUS CHANGES" in _progress(ctx)
    assert "type: ignore added" in _progress(ctx)


def test_build_gate_failure(write_graph, make_scheduler, fake_tool, complete, tmp_path: Path) -> None:
    (tmp_path / "Makefile").write_text("test:\n\t@echo '1 failed' && exit 1\n", encoding="utf-8")
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": fake_tool("stub", complete)})

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "build_failed"
    assert outcome.outcomes[0].detail.startswith("test failed: make test")
    assert "### BUILD FAILURE" in _progress(ctx)


def test_review_fix_that_breaks_build_fails_task(write_graph, make_scheduler, fake_tool, complete, tmp_path: Path) -> None:
    marker = tmp_path / "broken"
    (tmp_path / "Makefile").write_text("test:\n\t@test ! -e broken\n", encoding="utf-8")
    store = write_graph([{"id": "a", "verification": ["true"]}])

    def fix_that_breaks(prompt: str) -> str:
        if prompt.startswith("# Review fixes"):
            marker.write_text("oops", encoding="utf-8")
        return COMPLETE_MARKER

    reviewer = fake_tool("reviewer", "[P1] missing null check", "NO_ISSUES_FOUND")
    scheduler, ctx = make_scheduler(
        store,
        {"stub": fake_tool("stub", fix_that_breaks), "reviewer": reviewer},
        review_tool="reviewer",
        review_mode="fresh-eyes",
    )
    ctx.digest_source = lambda root: "broken" if marker.exists() else ""

    outcome = scheduler.run()

    assert outcome.outcomes[0].kind == "review_regression"
    assert store.get_by_id("a").status == TaskStatus.FAILED


def test_unlaunchable_tool_fails_the_task(write_graph, make_scheduler, tmp_path: Path) -> None:
    script = tmp_path / "agent.sh"
    script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    script.chmod(0o400)
    store = write_graph([{"id": "a", "verification": ["true"]}])
    scheduler, ctx = make_scheduler(store, {"stub": CliToolAdapter("stub", [str(script)], cwd=tmp_path)})

    outcome = scheduler.run()

    assert outcome.status == "halted"
    assert outcome.outcomes[0].kind == "tool_failed"
    assert outcome.outcomes[0].detail == "tool exited 126"
    assert store.get_by_id("a").status == TaskStatus.FAILED
    assert "### TOOL FAILURE" in _progress(ctx)


def test_run_one_attempts_only_the_named_task(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["true"]}, {"id": "b", "verification": ["true"]}])
    tool = fake_tool("stub", complete)
    scheduler, _ = make_scheduler(store, {"stub": tool})

    outcome = scheduler.run_one("b")

    assert outcome.status == "completed"
    assert outcome.exit_code == 0
    assert [item.task_id for item in outcome.outcomes] == ["b"]
    assert _statuses(store) == {"a": TaskStatus.PENDING, "b": TaskStatus.COMPLETED}
    assert len(tool.prompts) == 1


def test_run_one_failure_exits_nonzero(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph([{"id": "a", "verification": ["exit 1"]}])
    scheduler, _ = make_scheduler(store, {"stub": fake_tool("stub", complete)})

    outcome = scheduler.run_one("a")

    assert outcome.status == "halted"
    assert outcome.exit_code == 1
    assert outcome.outcomes[0].kind == "verification_failed"


def test_run_one_refuses_unknown_or_blocked_tasks(write_graph, make_scheduler, fake_tool, complete) -> None:
    store = write_graph(
        [{"id": "a", "verification": ["true"]}, {"id": "b", "blockedBy": ["a"], "verification": ["true"]}]
    )
    tool = fake_tool("stub", complete)
    scheduler, _ = make_scheduler(store, {"stub": tool})

    with pytest.raises(SchedulerError, match="Unknown task ID: zz"):
        scheduler.run_one("zz")
    with pytest.raises(SchedulerError, match="blocked by unfinished tasks: a"):
        scheduler.run_one("b")
    assert tool.prompts == []
    assert _statuses(store) == {"a": TaskStatus.PENDING, "b": TaskStatus.PENDING}
