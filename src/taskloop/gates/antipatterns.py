"""Advisory scan of a diff for changes that weaken quality gates."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Finding:
    path: str
    rule: str
    line: str


ESLINT_FILE_RE = re.compile(r"(^|/)(\.eslintrc(\.\w+)?|eslint\.config\.\w+)$")
TSCONFIG_FILE_RE = re.compile(r"(^|/)tsconfig(\.[\w-]+)?\.json$")
PYTHON_CONFIG_FILE_RE = re.compile(r"(^|/)(pyproject\.toml|setup\.cfg|mypy\.ini|\.?ruff\.toml)$")

ESLINT_OFF_RE = re.compile(r"""["']off["']|:\s*0\b""")
MAX_WARNINGS_RE = re.compile(r"--max-warnings[= ]+([1-9]\d*)")
TSCONFIG_RULES = (
    (re.compile(r'"skipLibCheck"\s*:\s*true'), "skipLibCheck enabled"),
    (re.compile(r'"noImplicitAny"\s*:\s*false'), "noImplicitAny disabled"),
    (re.compile(r'"strict"\s*:\s*false'), "strict mode disabled"),
)
PYTHON_CONFIG_RULES = (
    (re.compile(r"ignore_errors\s*=\s*true", re.IGNORECASE), "mypy ignore_errors enabled"),
    (re.compile(r"^\s*strict\s*=\s*false", re.IGNORECASE), "mypy strict disabled"),
)
SOURCE_SUPPRESSIONS = (
    (re.compile(r"#\s*type:\s*ignore"), "type: ignore added"),
    (re.compile(r"#\s*noqa\b"), "noqa added"),
    (re.compile(r"eslint-disable"), "eslint-disable added"),
    (re.compile(r"@ts-(ignore|nocheck)"), "ts-ignore added"),
)


def added_lines_by_file(diff_text: str) -> dict[str, list[str]]:
    """Map each file in a unified diff to its added lines."""
    files: dict[str, list[str]] = {}
    current: str | None = None
    for line in diff_text.splitlines():
        if line.startswith("+++ "):
            target = line[4:].strip()
            current = target[2:] if target.startswith("b/") else target
            if current == "/dev/null":
                current = None
            else:
                files.setdefault(current, [])
            continue
        if line.startswith("+") and current is not None:
            files[current].append(line[1:])
    return files


def scan_diff(diff_text: str) -> list[Finding]:
    """Return suspicious additions. Heuristic, so findings never fail a task."""
    findings = []
    for path, lines in added_lines_by_file(diff_text).items():
        for line in lines:
            findings.extend(Finding(path, rule, line.strip()) for rule in _rules_for(path, line))
    return findings


def _rules_for(path: str, line: str) -> list[str]:
    hits = []
    if ESLINT_FILE_RE.search(path) and ESLINT_OFF_RE.search(line):
        hits.append("lint rule disabled")
    if path.endswith("package.json") and MAX_WARNINGS_RE.search(line):
        hits.append("lint warning threshold raised")
    if TSCONFIG_FILE_RE.search(path):
        hits.extend(label for pattern, label in TSCONFIG_RULES if pattern.search(line))
    if PYTHON_CONFIG_FILE_RE.search(path):
        hits.extend(label for pattern, label in PYTHON_CONFIG_RULES if pattern.search(line))
    hits.extend(label for pattern, label in SOURCE_SUPPRESSIONS if pattern.search(line))
    return hits
