"""Builds an Orchestrator with the default local collaborators for CLI use."""

from __future__ import annotations

from pathlib import Path

from wavegate.collaborators import (
    InMemoryFeatureFlags,
    LocalVersionControl,
    LocalWorkspace,
    PythonAstParser,
    SubprocessTestRunner,
)
from wavegate.config import settings
from wavegate.core.orchestrator import Orchestrator
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.models.config import EngineConfig, load_engine_config
from wavegate.routing import LocalFileSink, LogSink, NotificationDispatcher

CONFIG_FILE = "wavegate.toml"


def resolve_config(root: Path, config_path: Path | None = None) -> EngineConfig:
    """Load configuration and anchor relative storage paths at *root*.

    Looks for ``--config``, then ``ROOT/wavegate.toml``, then falls back to
    environment settings.
    """
    if config_path is None and (root / CONFIG_FILE).exists():
        config_path = root / CONFIG_FILE
    config = (
        load_engine_config(config_path) if config_path else EngineConfig.from_settings(settings)
    )
    anchored = {
        name: path if path.is_absolute() else root / path
        for name, path in (
            ("ledger_db_path", config.ledger_db_path),
            ("snapshot_store_path", config.snapshot_store_path),
            ("notifications_path", config.notifications_path),
        )
    }
    return config.model_copy(update=anchored)


def build_orchestrator(root: Path, config_path: Path | None = None) -> Orchestrator:
    root = Path(root).resolve()
    config = resolve_config(root, config_path)
    workspace = LocalWorkspace(root)
    store = ContentAddressedStore(config.snapshot_store_path)
    vcs = LocalVersionControl(workspace, store, config.snapshot_store_path.parent / "refs.json")
    dispatcher = NotificationDispatcher([LogSink(), LocalFileSink(config.notifications_path)])
    return Orchestrator(
        config,
        workspace=workspace,
        vcs=vcs,
        test_runner=SubprocessTestRunner(workspace, root),
        parser=PythonAstParser(),
        feature_flags=InMemoryFeatureFlags(),
        dispatcher=dispatcher,
    )
