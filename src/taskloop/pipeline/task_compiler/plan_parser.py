"""Markdown plan parser.

A plan is a markdown document whose checklist lines seed tasks::

    ## Sprint 1: Foundation
    **Demo:** CLI lists stored items

    - [ ] core, data :: Add data model
      - **ID:** T1
      - **Verification:** pytest -q tests/test_model.py
      - **Allowed paths:** src/model.py, tests/test_model.py
    - [x] <ui> :: Build list view
      - Blocked by: Add data model
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from taskloop.artifacts.canonical_json import short_id
from taskloop.errors import PlanNotFoundError
from taskloop.pipeline.task_compiler.types import Task, TaskSource, TaskStatus

if TYPE_CHECKING:
    from pathlib import Path

SEED_RE = re.compile(
    r"^\s*-\s*\[\s*([xX ]?)\s*\]\s*"
    r"(?:<(.+?)>|\[(.+?)\]|([A-Za-z0-9_.,/\-\s]+?))"
    r"\s*::\s*(.+?)\s*$"
)
SPRINT_RE = re.compile(r"^##\s*Sprint\s*(\d+)\s*:\s*(.+?)\s*$", re.IGNORECASE)
SECTION_RE = re.compile(r"^##\s")
HEADER_RE = re.compile(r"^#+\s")
DEMO_RE = re.compile(r"^\*\*Demo:\*\*\s*(.+)")
DEMO_LOOKAHEAD = 5

_FIELDS = r"(ID|Blocked by|Deliverable|Allowed paths|Verification|Setup)"
FIELD_RES = (
    re.compile(rf"^\s*-\s*\*\*{_FIELDS}\s*:\*\*\s*(.*?)\s*$", re.IGNORECASE),
    re.compile(rf"^\s*-\s*\*\*{_FIELDS}\*\*\s*:\s*(.*?)\s*$", re.IGNORECASE),
    re.compile(rf"^\s*-\s*{_FIELDS}\s*:\s*(.*?)\s*$", re.IGNORECASE),
)
CONTINUATION_RE = re.compile(r"^\s{4,}-\s+(.+?)\s*$")

NO_BLOCKER_VALUES = {"none", "n/a", "-"}

ACTIVE_FORMS = {
    "fix": "Fixing",
    "add": "Adding",
    "implement": "Implementing",
    "write": "Writing",
    "create": "Creating",
    "refactor": "Refactoring",
    "build": "Building",
    "run": "Running",
    "update": "Updating",
    "document": "Documenting",
    "configure": "Configuring",
}


def parse_plan_file(plan_path: Path) -> list[Task]:
    """Parse a plan file.

    Raises:
        PlanNotFoundError: If the plan does not exist
    """
    if not plan_path.is_file():
        raise PlanNotFoundError(f"Plan not found: {plan_path}")
    return parse_plan(plan_path.read_text(encoding="utf-8"))


def parse_plan(text: str) -> list[Task]:
    """Parse plan markdown into tasks with resolved blocker references."""
    lines = text.splitlines()
    tasks: list[Task] = []

    sprint: int | None = None
    sprint_goal: str | None = None
    sprint_demo: str | None = None

    i = 0
    while i < len(lines):
        line = lines[i]

        sprint_match = SPRINT_RE.match(line)
        if sprint_match:
            sprint = int(sprint_match.group(1))
            sprint_goal = sprint_match.group(2)
            sprint_demo = None
            for ahead in lines[i + 1 : i + 1 + DEMO_LOOKAHEAD]:
                demo_match = DEMO_RE.match(ahead.strip())
                if demo_match:
                    sprint_demo = demo_match.group(1).strip()
                    break
            i += 1
            continue
        if SECTION_RE.match(line):
            sprint, sprint_goal, sprint_demo = None, None, None
            i += 1
            continue

        seed = SEED_RE.match(line)
        if not seed:
            i += 1
            continue

        done = seed.group(1).lower() == "x"
        raw_tags = seed.group(2) or seed.group(3) or seed.group(4) or ""
        tags = _dedupe([tag.strip() for tag in raw_tags.split(",") if tag.strip()])
        subject = seed.group(5).strip()

        fields, i = _consume_details(lines, i + 1)

        verification = fields["verification"]
        allowed_paths = fields["allowed paths"]
        deliverable = " ".join(fields["deliverable"]) or None
        setup = " ".join(fields["setup"]) or None
        explicit_id = fields["id"][0] if fields["id"] else ""

        tasks.append(
            Task(
                id=explicit_id or short_id(f"seed:{','.join(tags)}:{subject}"),
                subject=subject,
                description=_render_description(deliverable, setup, allowed_paths, verification),
                tags=tags,
                blocked_by=fields["blocked by"],
                status=TaskStatus.COMPLETED if done else TaskStatus.PENDING,
                verification=verification,
                allowed_paths=allowed_paths,
                source=TaskSource.PLAN,
                active_form=active_form(subject),
                deliverable=deliverable,
                setup=setup,
                sprint=sprint,
                sprint_goal=sprint_goal,
                sprint_demo=sprint_demo,
            )
        )

    resolve_blocker_references(tasks)
    return tasks


def _consume_details(lines: list[str], start: int) -> tuple[dict[str, list[str]], int]:
    """Read the indented detail block under a checklist line.

    Returns:
        (fields, index of the first line after the block)
    """
    fields: dict[str, list[str]] = {
        "id": [],
        "blocked by": [],
        "deliverable": [],
        "allowed paths": [],
        "verification": [],
        "setup": [],
    }
    current: str | None = None

    j = start
    while j < len(lines):
        line = lines[j]
        if SEED_RE.match(line) or HEADER_RE.match(line):
            break
        if line.strip() and not line[0].isspace():
            break

        field_match = _match_field(line)
        if field_match:
            current, value = field_match
            _append_field(fields, current, value)
        elif current:
            continuation = CONTINUATION_RE.match(line)
            if continuation:
                _append_field(fields, current, continuation.group(1))
        j += 1

    return fields, j


def _match_field(line: str) -> tuple[str, str] | None:
    for pattern in FIELD_RES:
        match = pattern.match(line)
        if match:
            return match.group(1).lower(), match.group(2)
    return None


def _append_field(fields: dict[str, list[str]], name: str, value: str) -> None:
    value = value.strip()
    if not value:
        return
    if name in ("blocked by", "allowed paths"):
        for part in value.split(","):
            item = _strip_code(part.strip())
            if item and item.lower() not in NO_BLOCKER_VALUES:
                fields[name].append(item)
    elif name == "id":
        # Only the first ID line counts.
        if not fields["id"]:
            fields["id"].append(_strip_code(value))
    else:
        fields[name].append(_strip_code(value) if name == "verification" else value)


def _strip_code(value: str) -> str:
    if len(value) >= 2 and value.startswith("`") and value.endswith("`"):
        return value[1:-1].strip()
    return value


def _render_description(
    deliverable: str | None,
    setup: str | None,
    allowed_paths: list[str],
    verification: list[str],
) -> str:
    parts = []
    if deliverable:
        parts.append(f"**Deliverable:** {deliverable}")
    if setup:
        parts.append(f"**Setup:** {setup}")
    if allowed_paths:
        parts.append(f"**Allowed paths:** {', '.join(allowed_paths)}")
    if verification:
        parts.append("**Verification:**\n" + "\n".join(f"- {cmd}" for cmd in verification))
    return "\n\n".join(parts)


def active_form(subject: str) -> str:
    """Present-participle label for progress output ("Add x" -> "Adding x")."""
    lowered = subject.lower()
    if lowered.startswith("set up "):
        return "Setting up " + subject[len("set up ") :]
    verb, _, rest = subject.partition(" ")
    participle = ACTIVE_FORMS.get(verb.lower())
    if participle and rest:
        return f"{participle} {rest}"
    return f"Working on {subject}"


def normalize_blocker_reference(ref: str) -> str:
    """Strip markdown emphasis and wrapping quotes from a blocker reference."""
    cleaned = re.sub(r"[`*_]", "", ref).strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1]
    return cleaned.strip()


def resolve_blocker_references(tasks: list[Task]) -> None:
    """Rewrite blockers written as subjects into task IDs (mutates tasks in place).

    Unresolvable references are kept as written so validation can report them.
    """
    by_id = {task.id for task in tasks}
    by_subject: dict[str, str] = {}
    for task in tasks:
        by_subject.setdefault(task.subject.strip().lower(), task.id)

    for task in tasks:
        resolved = []
        for ref in task.blocked_by:
            normalized = normalize_blocker_reference(ref)
            if not normalized:
                continue
            if normalized in by_id:
                resolved.append(normalized)
            else:
                resolved.append(by_subject.get(normalized.lower(), normalized))
        task.blocked_by = _dedupe(resolved)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))
