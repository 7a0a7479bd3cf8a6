"""Pytest configuration for taskloop tests."""
from pathlib import Path

import pytest


def pytest_sessionfinish(session, exitstatus):
    """Fail the run when --cov was requested but no coverage data was written.

    Catches tests that import from a filesystem path instead of the installed
    package, which silently reports 0% coverage.
    """
    cov_enabled = any("--cov" in str(arg) for arg in session.config.args)
    if not cov_enabled:
        return

    coverage_files = list(Path.cwd().glob(".coverage*"))
    if not coverage_files:
        pytest.exit(
            "Coverage was enabled but no data was collected. "
            "Check that tests import from 'taskloop' (the package) not 'src/taskloop' (filesystem path).",
            returncode=1,
        )
