"""Runtime settings: env-driven via pydantic-settings.

Reads from a .env file and WAVEGATE_* environment variables.

Examples
--------
Override via environment::

    export WAVEGATE_ENVIRONMENT=staging
    export WAVEGATE_LOG_LEVEL=DEBUG
    export WAVEGATE_LEDGER_PATH=/data/ledger.db
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Process-level settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WAVEGATE_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".wavegate/ledger.db")
    snapshot_store_path: Path = Path(".wavegate/snapshots")
    notifications_path: Path = Path(".wavegate/notifications")
    codebase_root: Path = Path(".")

    # Execution
    approval_timeout_seconds: int = 24 * 3600
    test_timeout_seconds: int = 900
    max_concurrent_batches: int = 1
    consecutive_failure_threshold: int = 3

    # Notification audiences
    operator_audience: str = "operators"
    approver_audience: str = "approvers"

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton: import as `from wavegate.config import settings`
settings = EngineSettings()
