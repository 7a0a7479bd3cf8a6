"""Parsing of tool transcripts and build output.

Everything format-sensitive about external tool output lives here: completion
markers, learning annotations, judge and review tokens, failure fingerprints and
the advisory error counters used in build logs.
"""

from __future__ import annotations

import hashlib
import re
from enum import Enum

COMPLETE_MARKER = "<promise>TASK_COMPLETE</promise>"
BLOCKED_MARKER = "<promise>TASK_BLOCKED</promise>"
FAILED_MARKER = "<promise>TASK_FAILED</promise>"

JUDGE_PASS_TOKEN = "LLM_PASS"
JUDGE_FAIL_TOKEN = "LLM_FAIL"
REVIEW_CLEAN_TOKEN = "NO_ISSUES_FOUND"

LEARNING_RE = re.compile(r"^\s*(LEARNING|NOTE|INSIGHT|TIP):\s*(.+?)\s*$")
MAX_LEARNINGS = 10

REVIEW_ISSUE_RE = re.compile(r"^\s*[-*]?\s*\[(P[123])\]\s*(.+?)\s*$")

FAILURE_LINE_RE = re.compile(r"fail|error|timeout|timed out|✗|panic|exception", re.IGNORECASE)
FINGERPRINT_FALLBACK_LINES = 20
FINGERPRINT_LENGTH = 12


class Signal(str, Enum):
    """Completion signal found in a tool transcript."""

    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    NONE = "none"


def detect_signal(output: str) -> Signal:
    """First match wins, in the order complete, blocked, failed."""
    if COMPLETE_MARKER in output:
        return Signal.COMPLETE
    if BLOCKED_MARKER in output:
        return Signal.BLOCKED
    if FAILED_MARKER in output:
        return Signal.FAILED
    return Signal.NONE


def extract_learnings(output: str, limit: int = MAX_LEARNINGS) -> list[str]:
    """Return ``PREFIX: text`` annotation lines, first ``limit`` only."""
    learnings = []
    for line in output.splitlines():
        match = LEARNING_RE.match(line)
        if match:
            learnings.append(f"{match.group(1)}: {match.group(2)}")
            if len(learnings) >= limit:
                break
    return learnings


def judge_passed(output: str) -> bool:
    """True only when some line is exactly the pass token."""
    return any(line.strip() == JUDGE_PASS_TOKEN for line in output.splitlines())


def review_is_clean(output: str) -> bool:
    return any(line.strip() == REVIEW_CLEAN_TOKEN for line in output.splitlines())


def extract_review_issues(output: str) -> list[str]:
    """Lines such as ``[P1] Missing null check in parser``."""
    issues = []
    for line in output.splitlines():
        match = REVIEW_ISSUE_RE.match(line)
        if match:
            issues.append(f"[{match.group(1)}] {match.group(2)}")
    return issues


def failure_lines(output: str) -> list[str]:
    """Lines that mention a failure, error or timeout, whitespace-trimmed."""
    return [line.strip() for line in output.splitlines() if FAILURE_LINE_RE.search(line)]


def failure_fingerprint(output: str) -> str:
    """Short hash of the failure-bearing lines (tail of output if there are none)."""
    lines = failure_lines(output)
    if not lines:
        lines = [line.strip() for line in output.strip().splitlines()[-FINGERPRINT_FALLBACK_LINES:]]
    digest = hashlib.sha1("\n".join(lines).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def count_errors(stage: str, output: str) -> int | None:
    """Best-effort error count for a build stage; None when nothing recognizable.

    Counts are for logs only. The exit code decides pass or fail.
    """
    if stage == "lint":
        match = re.search(r"(\d+)\s+problems?\s*\((\d+)\s+errors?", output)
        if match:
            return int(match.group(2))
        match = re.search(r"Found\s+(\d+)\s+errors?", output)
        if match:
            return int(match.group(1))
        return None
    if stage == "typecheck":
        ts_errors = len(re.findall(r"error TS\d+", output))
        if ts_errors:
            return ts_errors
        match = re.search(r"Found\s+(\d+)\s+errors?", output)
        return int(match.group(1)) if match else None
    if stage == "test":
        match = re.search(r"(\d+)\s+failed", output)
        return int(match.group(1)) if match else None
    if stage == "build":
        errors = len(re.findall(r"^error(\[E\d+\])?:", output, re.MULTILINE))
        return errors or None
    return None
