"""taskloop CLI - compile plans into task graphs and drive them to completion."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer

from taskloop import __version__
from taskloop.errors import (
    IssuesFormatError,
    LockHeldError,
    PlanNotFoundError,
    TaskGraphError,
    TrackerError,
)
from taskloop.pipeline.loop.config import (
    DEFAULT_STATE_DIR,
    LoopConfigError,
    LoopPaths,
    config_from_mapping,
    config_path_for_project,
    ensure_default_config,
    load_loop_config,
)
from taskloop.pipeline.loop.lock import RunLock
from taskloop.pipeline.loop.scheduler import Scheduler, SchedulerError, build_context
from taskloop.pipeline.task_compiler.compiler import compile_task_graph
from taskloop.pipeline.task_compiler.graph import load_dependency_policy, validate_graph
from taskloop.store.json_store import JsonTaskStore
from taskloop.store.tracker_store import TrackerTaskStore
from taskloop.ui import console, outcome_table, status_table, task_table

cli = typer.Typer(
    name="taskloop",
    help="taskloop - compile plans into task graphs and run them through coding tools",
    no_args_is_help=True,
)

DEFAULT_GRAPH = Path(DEFAULT_STATE_DIR) / "task_graph.json"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@cli.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """taskloop command group."""


def _open_store(graph: Path | None, tracker: bool, project_root: Path) -> JsonTaskStore | TrackerTaskStore:
    if tracker:
        return TrackerTaskStore(cwd=project_root)
    path = graph if graph is not None else project_root / DEFAULT_GRAPH
    return JsonTaskStore(path)


@cli.command(name="init")
def init_cmd(
    project_root: Path = typer.Option(
        Path("."),
        "--project-root",
        help="Project root directory",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing loop config",
    ),
) -> None:
    """Write the default loop config to .taskloop/loop.yaml."""
    try:
        path = ensure_default_config(project_root, force=force)
    except FileExistsError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("Use --force to overwrite it.")
        raise typer.Exit(1) from e
    console.print(f"[green]✓ Wrote {path}[/green]")


@cli.command(name="compile")
def compile_cmd(
    plan: Path = typer.Option(
        ...,
        "--plan",
        help="Markdown plan with task seeds",
    ),
    issues: Path | None = typer.Option(
        None,
        "--issues",
        help="Review issues JSON to merge as tasks",
    ),
    out: Path = typer.Option(
        DEFAULT_GRAPH,
        "--out",
        help="Output task-graph path",
    ),
    infer_deps: bool = typer.Option(
        False,
        "--infer-deps",
        help="Add blockers inferred from tags",
    ),
    include_nits: bool = typer.Option(
        False,
        "--include-nits",
        help="Keep nit-severity issues",
    ),
    policy: Path | None = typer.Option(
        None,
        "--policy",
        help="YAML tag dependency policy (with --infer-deps)",
    ),
    timestamp_mode: str = typer.Option(
        "wallclock",
        "--timestamp-mode",
        help="Timestamp mode: deterministic or wallclock",
    ),
) -> None:
    """Compile a plan (and optional issues) into a task graph."""
    if timestamp_mode not in ("deterministic", "wallclock"):
        console.print(f"[bold red]Error:[/bold red] Unknown timestamp mode: {timestamp_mode}")
        raise typer.Exit(1)

    try:
        dependency_policy = load_dependency_policy(policy) if policy else None
        result = compile_task_graph(
            plan_path=plan,
            output_path=out,
            issues_path=issues,
            infer_deps=infer_deps,
            include_nits=include_nits,
            dependency_policy=dependency_policy,
            timestamp_mode=timestamp_mode,
        )
    except (PlanNotFoundError, IssuesFormatError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e

    counts = result["counts"]
    for warning in result["warnings"]:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    console.print(f"[green]✓ Task graph written:[/green] {result['task_graph']}")
    console.print(
        f"  {counts['total']} tasks ({counts['seedTasks']} from plan, {counts['issueTasks']} from issues), "
        f"{counts['readyToStart']} ready to start"
    )


@cli.command(name="validate")
def validate_cmd(
    graph: Path = typer.Option(
        DEFAULT_GRAPH,
        "--graph",
        help="Task-graph path",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit non-zero on any warning",
    ),
) -> None:
    """Check a task graph for cycles, dangling blockers and missing verification."""
    try:
        tasks = JsonTaskStore(graph).list_tasks()
    except TaskGraphError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e

    report = validate_graph(tasks)
    for warning in report.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    if report.cycles:
        console.print(f"[bold red]Error:[/bold red] {len(report.cycles)} dependency cycle(s)")
        raise typer.Exit(1)
    if strict and report.warnings:
        raise typer.Exit(1)
    console.print(f"[green]✓ {len(tasks)} tasks, {len(report.warnings)} warning(s)[/green]")


@cli.command(name="next")
def next_cmd(
    graph: Path | None = typer.Option(None, "--graph", help="Task-graph path"),
    tracker: bool = typer.Option(False, "--tracker", help="Use the external issue tracker"),
    project_root: Path = typer.Option(Path("."), "--project-root", help="Project root directory"),
) -> None:
    """Show the task the scheduler would pick next."""
    store = _open_store(graph, tracker, project_root)
    try:
        task = store.get_next()
    except (TaskGraphError, TrackerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e

    if task is None:
        console.print("[yellow]No eligible task[/yellow]")
        raise typer.Exit(1)
    console.print(f"[bold]{task.id}[/bold] {task.subject}")
    if task.tags:
        console.print(f"  tags: {', '.join(task.tags)}")
    for command in task.verification:
        console.print(f"  [cyan]verify:[/cyan] {command}")


@cli.command(name="status")
def status_cmd(
    graph: Path | None = typer.Option(None, "--graph", help="Task-graph path"),
    tracker: bool = typer.Option(False, "--tracker", help="Use the external issue tracker"),
    project_root: Path = typer.Option(Path("."), "--project-root", help="Project root directory"),
) -> None:
    """Show task counts by status and the open tasks."""
    store = _open_store(graph, tracker, project_root)
    try:
        tasks = store.list_tasks()
    except (TaskGraphError, TrackerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e

    console.print(status_table(tasks))
    if any(task.status.value != "completed" for task in tasks):
        console.print(task_table(tasks))


@cli.command(name="run")
def run_cmd(
    graph: Path | None = typer.Option(
        None,
        "--graph",
        help="Task-graph path (default .taskloop/task_graph.json)",
    ),
    tracker: bool = typer.Option(
        False,
        "--tracker",
        help="Use the external issue tracker instead of a graph file",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Loop config YAML (default .taskloop/loop.yaml)",
    ),
    max_iterations: int | None = typer.Option(None, "--max-iterations", help="Iteration limit"),
    max_tasks: int | None = typer.Option(None, "--max-tasks", help="Stop after this many tasks (0 = no limit)"),
    tool: str | None = typer.Option(None, "--tool", help="Tool name, or `smart` for tag routing"),
    review: str | None = typer.Option(None, "--review", help="Review mode: off, fresh-eyes or council"),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Keep going after a failed task",
    ),
    no_self_heal: bool = typer.Option(False, "--no-self-heal", help="Disable stall recovery"),
    default_verify: list[str] | None = typer.Option(
        None,
        "--default-verify",
        help="Verification command for tasks without one (repeatable)",
    ),
    allow_no_verify: bool = typer.Option(
        False,
        "--allow-no-verify",
        help="Run tasks that have no verification at all",
    ),
    force_unlock: int | None = typer.Option(
        None,
        "--force-unlock",
        help="PID of a live lock holder to override",
    ),
    iteration_delay: float | None = typer.Option(None, "--iteration-delay", help="Seconds between iterations"),
    task_id: str | None = typer.Option(None, "--task-id", help="Run one attempt of this task only"),
    project_root: Path = typer.Option(Path("."), "--project-root", help="Project root directory"),
) -> None:
    """Run eligible tasks through coding tools until done, blocked or out of iterations."""
    project_root = project_root.resolve()
    config_path = config if config is not None else config_path_for_project(project_root)

    overrides: dict[str, Any] = {}
    if max_iterations is not None:
        overrides["max_iterations"] = max_iterations
    if max_tasks is not None:
        overrides["max_tasks"] = max_tasks
    if tool is not None:
        overrides["tool"] = tool
    if review is not None:
        overrides["review_mode"] = review
    if continue_on_error:
        overrides["continue_on_error"] = True
    if no_self_heal:
        overrides["self_heal"] = False
    if default_verify:
        overrides["default_verification"] = list(default_verify)
    if allow_no_verify:
        overrides["allow_no_verify"] = True
    if iteration_delay is not None:
        overrides["iteration_delay_s"] = iteration_delay

    try:
        loop_config = config_from_mapping(overrides, base=load_loop_config(config_path))
    except LoopConfigError as e:
        console.print(f"[bold red]Error:[/bold red] [{e.reason_code}] {e}")
        raise typer.Exit(1) from e

    paths = LoopPaths(project_root, loop_config.state_dir)
    store = _open_store(graph if graph is not None else paths.task_graph, tracker, project_root)
    store_label = "tracker" if tracker else str(getattr(store, "path", ""))

    lock = RunLock(paths.lock, store_label=store_label, override_pid=force_unlock)
    try:
        with lock:
            if lock.reclaimed_pid is not None:
                console.print(f"[yellow]Warning: reclaimed lock from pid {lock.reclaimed_pid}[/yellow]")
            console.print(f"[cyan]Starting task loop ({store.name} store)...[/cyan]")
            scheduler = Scheduler(build_context(loop_config, paths, store, console=console))
            outcome = scheduler.run_one(task_id) if task_id is not None else scheduler.run()
    except LockHeldError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e
    except (TaskGraphError, TrackerError, SchedulerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1) from e

    if outcome.outcomes:
        console.print(outcome_table(outcome))
    raise typer.Exit(outcome.exit_code)


if __name__ == "__main__":
    cli()
