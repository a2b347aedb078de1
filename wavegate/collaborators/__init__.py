"""External collaborators: contracts plus the default local implementations
used by the CLI."""

from wavegate.collaborators.feature_flags import InMemoryFeatureFlags
from wavegate.collaborators.parsers import HeuristicParser, PythonAstParser
from wavegate.collaborators.protocols import (
    FeatureFlagService,
    Parser,
    TestRunner,
    VersionControl,
    Workspace,
)
from wavegate.collaborators.test_runner import SubprocessTestRunner, select_affected_tests
from wavegate.collaborators.vcs import LocalVersionControl
from wavegate.collaborators.workspace import (
    LocalWorkspace,
    UndecodableFileError,
    WorkspacePathError,
)

__all__ = [
    "FeatureFlagService",
    "HeuristicParser",
    "InMemoryFeatureFlags",
    "LocalVersionControl",
    "LocalWorkspace",
    "Parser",
    "PythonAstParser",
    "SubprocessTestRunner",
    "TestRunner",
    "UndecodableFileError",
    "VersionControl",
    "Workspace",
    "WorkspacePathError",
    "select_affected_tests",
]
