"""Subprocess test runner and affected-test selection."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path, PurePosixPath

from wavegate.collaborators.protocols import Workspace
from wavegate.models.verification import TestRunResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ["python", "-m", "pytest", "-q", "--no-header", "-rf"]

_FAILED_LINE = re.compile(r"^(?:FAILED|ERROR)\s+(\S+)", re.MULTILINE)
_TOTAL_COVERAGE = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)


def _candidate_tests(path: str) -> list[str]:
    p = PurePosixPath(path)
    stem, parent = p.stem, p.parent
    base = stem.split(".")[0]
    if p.name.startswith("test_") or stem.endswith(("_test", ".test", ".spec")):
        return [path]
    return [
        f"tests/test_{base}.py",
        str(parent / f"test_{base}.py"),
        str(parent / "tests" / f"test_{base}.py"),
        str(parent / f"{base}_test.py"),
        str(parent / f"{base}_test.go"),
        str(parent / f"{base}.test.ts"),
        str(parent / f"{base}.spec.ts"),
        str(parent / f"{base}.test.js"),
        str(parent / "__tests__" / f"{base}.test.ts"),
    ]


def select_affected_tests(paths: list[str], workspace: Workspace) -> list[str]:
    """Map changed source files to the conventional test files that exist."""
    selected: list[str] = []
    for path in paths:
        for candidate in _candidate_tests(path):
            candidate = candidate.removeprefix("./")
            if candidate not in selected and workspace.exists(candidate):
                selected.append(candidate)
    return selected


class SubprocessTestRunner:
    """Runs a test command in the workspace root.

    With ``full_suite=False`` the affected test files are appended to the
    command; when none can be found the full suite runs instead.

    Parameters
    ----------
    workspace:
        Used for affected-test lookup.
    root:
        Working directory of the test process.
    command:
        Argument vector; defaults to ``python -m pytest -q``.
    """

    __test__ = False

    def __init__(
        self,
        workspace: Workspace,
        root: Path | str,
        command: list[str] | None = None,
    ) -> None:
        self._workspace = workspace
        self._root = Path(root)
        self._command = list(command or DEFAULT_COMMAND)

    def run_tests(
        self, affected_paths: list[str], full_suite: bool, timeout: float
    ) -> TestRunResult:
        argv = list(self._command)
        if not full_suite:
            argv += select_affected_tests(affected_paths, self._workspace)

        logger.info("Running tests: %s (timeout %ss)", " ".join(argv), timeout)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(self._root),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning("Test run timed out after %ss", timeout)
            output = exc.stdout if isinstance(exc.stdout, str) else ""
            return TestRunResult(
                passed=False, failures=["<timeout>"], timed_out=True, output=output
            )
        except OSError as exc:
            logger.error("Could not start test command %s: %s", argv[0], exc)
            return TestRunResult(passed=False, failures=[f"<launch error: {exc}>"])

        output = proc.stdout + proc.stderr
        failures = _FAILED_LINE.findall(output)
        coverage_match = _TOTAL_COVERAGE.search(output)
        # pytest exits 5 when no tests were collected
        passed = proc.returncode in (0, 5)
        if not passed and not failures:
            failures = [f"<exit code {proc.returncode}>"]
        return TestRunResult(
            passed=passed,
            failures=failures,
            coverage=float(coverage_match.group(1)) if coverage_match else None,
            output=output,
        )
