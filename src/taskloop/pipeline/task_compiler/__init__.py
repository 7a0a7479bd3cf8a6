"""Task graph compiler: plan parsing, issue conversion and graph validation."""

from taskloop.pipeline.task_compiler.compiler import build_task_graph, compile_task_graph
from taskloop.pipeline.task_compiler.graph import (
    DEFAULT_DEPENDENCY_POLICY,
    find_cycles,
    infer_dependencies,
    validate_graph,
)
from taskloop.pipeline.task_compiler.issues import issues_to_tasks
from taskloop.pipeline.task_compiler.plan_parser import parse_plan, parse_plan_file
from taskloop.pipeline.task_compiler.types import GraphReport, Task, TaskSource, TaskStatus

__all__ = [
    "build_task_graph",
    "compile_task_graph",
    "DEFAULT_DEPENDENCY_POLICY",
    "find_cycles",
    "infer_dependencies",
    "validate_graph",
    "issues_to_tasks",
    "parse_plan",
    "parse_plan_file",
    "GraphReport",
    "Task",
    "TaskSource",
    "TaskStatus",
]
