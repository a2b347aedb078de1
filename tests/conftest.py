"""Shared test fixtures for wavegate."""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from wavegate.collaborators.feature_flags import InMemoryFeatureFlags
from wavegate.collaborators.parsers import PythonAstParser
from wavegate.collaborators.vcs import LocalVersionControl
from wavegate.collaborators.workspace import LocalWorkspace
from wavegate.core.codebase_lock import CodebaseLockRegistry
from wavegate.core.orchestrator import Orchestrator
from wavegate.core.run_ledger import RunLedger
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.models.changes import FileChange, TransformationKind, TransformationRequest
from wavegate.models.config import EngineConfig
from wavegate.models.notifications import Notification
from wavegate.models.verification import TestRunResult
from wavegate.routing.dispatcher import NotificationDispatcher


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeTestRunner:
    """Scriptable stand-in for the external test runner.

    Fails for any batch touching a path in ``fail_paths`` (or every batch
    when ``passed=False``).  ``on_run`` is called before the result is
    produced, e.g. to cancel a plan mid-run.
    """

    __test__ = False

    def __init__(
        self,
        *,
        passed: bool = True,
        fail_paths: set[str] | None = None,
        raises: BaseException | None = None,
        delay: float = 0.0,
        on_run: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.passed = passed
        self.fail_paths = set(fail_paths or ())
        self.raises = raises
        self.delay = delay
        self.on_run = on_run
        self.calls: list[tuple[list[str], bool]] = []

    def run_tests(
        self, affected_paths: list[str], full_suite: bool, timeout: float
    ) -> TestRunResult:
        self.calls.append((list(affected_paths), full_suite))
        if self.on_run is not None:
            self.on_run(list(affected_paths))
        if self.delay:
            time.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        failing = sorted(p for p in affected_paths if p in self.fail_paths)
        if failing or not self.passed:
            return TestRunResult(
                passed=False,
                failures=[f"tests/test_{p.replace('/', '_')}::test_behaviour" for p in failing]
                or ["tests/test_all.py::test_suite"],
                output="1 failed",
            )
        return TestRunResult(passed=True, coverage=91.0, output="all passed")


class FakeClock:
    """Mutable UTC clock for approval deadlines."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class RecordingSink:
    """Notification sink that keeps everything it is given."""

    def __init__(self) -> None:
        self.received: list[Notification] = []

    @property
    def sink_name(self) -> str:
        return "recording"

    def accept(self, notification: Notification) -> None:
        self.received.append(notification)


class SabotagedVersionControl(LocalVersionControl):
    """A VCS whose restore silently does nothing."""

    def restore(self, ref: str, paths: list[str] | None = None) -> None:
        return None


class FailingCommitVersionControl(LocalVersionControl):
    """A VCS that cannot write commits whose message mentions *needle*."""

    def __init__(self, *args: Any, needle: str = "", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.needle = needle

    def commit(self, branch: str, files: list[str], message: str) -> str:
        if self.needle in message:
            raise OSError("disk full writing refs")
        return super().commit(branch, files, message)


# ---------------------------------------------------------------------------
# Storage and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """EngineConfig with all storage under a temp directory."""
    state = tmp_path / "state"
    return EngineConfig(
        ledger_db_path=state / "ledger.db",
        snapshot_store_path=state / "snapshots",
        notifications_path=state / "notifications",
        test_timeout_seconds=10.0,
        lock_timeout_seconds=2.0,
        approval_timeout_seconds=3600.0,
    )


@pytest.fixture
def ledger(tmp_path: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_path / "test_ledger.db")


@pytest.fixture
def store(engine_config: EngineConfig) -> ContentAddressedStore:
    """The snapshot store the orchestrator under test also uses."""
    return ContentAddressedStore(engine_config.snapshot_store_path)


@pytest.fixture
def workspace(tmp_path: Path) -> LocalWorkspace:
    return LocalWorkspace(tmp_path / "repo")


@pytest.fixture
def vcs(
    workspace: LocalWorkspace, store: ContentAddressedStore, engine_config: EngineConfig
) -> LocalVersionControl:
    return LocalVersionControl(
        workspace, store, engine_config.snapshot_store_path.parent / "refs.json"
    )


@pytest.fixture
def test_runner() -> FakeTestRunner:
    return FakeTestRunner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(sink: RecordingSink) -> NotificationDispatcher:
    return NotificationDispatcher([sink])


@pytest.fixture
def lock_registry() -> CodebaseLockRegistry:
    """A registry private to the test, so leases never leak between tests."""
    return CodebaseLockRegistry()


@pytest.fixture
def feature_flags() -> InMemoryFeatureFlags:
    return InMemoryFeatureFlags()


@pytest.fixture
def make_orchestrator(
    engine_config: EngineConfig,
    workspace: LocalWorkspace,
    vcs: LocalVersionControl,
    test_runner: FakeTestRunner,
    clock: FakeClock,
    dispatcher: NotificationDispatcher,
    lock_registry: CodebaseLockRegistry,
    feature_flags: InMemoryFeatureFlags,
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator over the shared temp storage.

    Keyword arguments override config fields; ``test_runner`` and ``vcs``
    replace the collaborators.  Every call builds a new Orchestrator, as
    a restarted process would.
    """

    def _factory(
        *,
        runner: Any = None,
        version_control: Any = None,
        **overrides: Any,
    ) -> Orchestrator:
        config = engine_config.model_copy(update=overrides) if overrides else engine_config
        return Orchestrator(
            config,
            workspace=workspace,
            vcs=version_control or vcs,
            test_runner=runner or test_runner,
            parser=PythonAstParser(),
            feature_flags=feature_flags,
            dispatcher=dispatcher,
            lock_registry=lock_registry,
            clock=clock,
        )

    return _factory


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., Orchestrator]) -> Orchestrator:
    return make_orchestrator()


# ---------------------------------------------------------------------------
# Change and request factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_change() -> Callable[..., FileChange]:
    """Factory fixture: build a FileChange with sensible defaults."""

    def _factory(
        path: str = "src/util.py",
        before: str | None = "def add(a, b):\n    return a+b\n",
        after: str | None = "def add(a, b):\n    return a + b\n",
        kind: TransformationKind = TransformationKind.FORMATTING,
        depends_on: list[str] | None = None,
    ) -> FileChange:
        return FileChange(
            path=path,
            transformation_kind=kind,
            before_content=before,
            after_content=after,
            depends_on=depends_on or [],
        )

    return _factory


@pytest.fixture
def make_request(workspace: LocalWorkspace) -> Callable[..., TransformationRequest]:
    """Factory fixture: a request whose original files are seeded in the workspace.

    Coverage defaults to 90% for every path unless given.
    """

    def _factory(
        changes: list[FileChange],
        *,
        coverage: dict[str, float] | None = None,
        seed: bool = True,
        **overrides: Any,
    ) -> TransformationRequest:
        if seed:
            for change in changes:
                if change.before_content is not None:
                    workspace.write(change.path, change.before_content)
        return TransformationRequest(
            title=overrides.pop("title", "test transformation"),
            changes=changes,
            coverage=coverage if coverage is not None else {c.path: 90.0 for c in changes},
            submitted_by="tester",
            **overrides,
        )

    return _factory


# ---------------------------------------------------------------------------
# The three reference scenarios
# ---------------------------------------------------------------------------

AUTH_BEFORE = (
    "export function login(user, password) {\n"
    "  return check(user,password);\n"
    "}\n"
)
AUTH_AFTER = (
    "export function login(user, password) {\n"
    "  return check(user, password);\n"
    "}\n"
)


@pytest.fixture
def gated_request(
    make_change: Callable[..., FileChange],
    make_request: Callable[..., TransformationRequest],
) -> TransformationRequest:
    """``auth.ts`` at 40% coverage plus two independent formatting-only files."""
    return make_request(
        [
            make_change("src/auth.ts", AUTH_BEFORE, AUTH_AFTER),
            make_change("src/format_a.ts", "export const a=1;\n", "export const a = 1;\n"),
            make_change("src/format_b.ts", "export const b=2;\n", "export const b = 2;\n"),
        ],
        coverage={"src/auth.ts": 40.0, "src/format_a.ts": 90.0, "src/format_b.ts": 90.0},
    )
