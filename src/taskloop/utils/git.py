"""Working-tree inspection and commits for the execution loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskloop.artifacts.canonical_json import sha256_text
from taskloop.utils.exec import run_git

if TYPE_CHECKING:
    from pathlib import Path


def is_git_repo(repo_root: Path) -> bool:
    """Return True when repo_root is inside a git work tree."""
    result = run_git(["rev-parse", "--is-inside-work-tree"], repo_root=repo_root, check=False)
    return result.returncode == 0 and result.stdout.strip() == "true"


def working_diff(repo_root: Path) -> str:
    """Diff of the working tree (staged and unstaged) against HEAD.

    Returns an empty string outside a repository or before the first commit.
    """
    if not is_git_repo(repo_root):
        return ""
    result = run_git(["diff", "HEAD"], repo_root=repo_root, check=False)
    if result.returncode != 0:
        return ""
    return result.stdout


def changed_files(repo_root: Path) -> list[str]:
    """Paths changed in the working tree, untracked files included."""
    if not is_git_repo(repo_root):
        return []
    result = run_git(["status", "--porcelain"], repo_root=repo_root, check=False)
    files: list[str] = []
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip().strip('"'))
    return files


def tree_digest(repo_root: Path) -> str:
    """Fingerprint of the current uncommitted state, used to detect mutations."""
    return sha256_text(working_diff(repo_root) + "\n" + "\n".join(sorted(changed_files(repo_root))))


def commit_all(repo_root: Path, message: str) -> str | None:
    """Stage everything and commit.

    Returns:
        Short commit hash, or None when there was nothing to commit.
    """
    if not changed_files(repo_root):
        return None
    run_git(["add", "-A"], repo_root=repo_root)
    run_git(["commit", "-m", message], repo_root=repo_root)
    head = run_git(["rev-parse", "--short", "HEAD"], repo_root=repo_root)
    return head.stdout.strip()
