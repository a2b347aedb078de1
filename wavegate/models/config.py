"""Engine configuration models.

Loaded from ``wavegate.toml`` or the ``[tool.wavegate]`` table of a
``pyproject.toml``, or derived from ``EngineSettings``.
"""

from __future__ import annotations

import tomllib
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from wavegate.models.approvals import ExpiryPolicy
from wavegate.models.risk import RiskConfig, RiskLevel

if TYPE_CHECKING:
    from wavegate.config import EngineSettings


class PlannerLimits(BaseModel):
    """Hard caps and compatibility rules used when folding changes into batches."""

    model_config = ConfigDict(frozen=True)

    max_files_per_batch: int = Field(default=10, ge=1)
    max_lines_per_batch: int = Field(default=400, ge=1)
    max_level_spread: int = Field(default=1, ge=0)  # tiers a batch may span
    isolate_critical: bool = True
    allow_oversized_changes: bool = True
    max_batches_per_wave: int = Field(default=20, ge=1)


class EngineConfig(BaseModel):
    """Per-engine configuration for the transformation engine."""

    model_config = ConfigDict(frozen=True)

    codebase_id: str = ""  # defaults to the resolved workspace root
    environment: str = "development"
    debug: bool = False
    ledger_db_path: Path = Path(".wavegate/ledger.db")
    snapshot_store_path: Path = Path(".wavegate/snapshots")
    notifications_path: Path = Path(".wavegate/notifications")

    risk: RiskConfig = RiskConfig()
    limits: PlannerLimits = PlannerLimits()

    consecutive_failure_threshold: int = Field(default=3, ge=1)
    max_concurrent_batches: int = Field(default=1, ge=1)
    test_timeout_seconds: float = Field(default=900.0, gt=0)
    approval_timeout_seconds: float = Field(default=24 * 3600.0, gt=0)
    expiry_policy: ExpiryPolicy = ExpiryPolicy.REJECT
    lock_timeout_seconds: float = Field(default=30.0, ge=0)

    generate_compat_shims: bool = False
    regenerate_shims_on_rollback: bool = False

    rollout_percentages: dict[RiskLevel, int] = {
        RiskLevel.LOW: 100,
        RiskLevel.MEDIUM: 50,
        RiskLevel.HIGH: 10,
        RiskLevel.CRITICAL: 5,
    }

    operator_audience: str = "operators"
    approver_audience: str = "approvers"

    @property
    def approval_timeout(self) -> timedelta:
        return timedelta(seconds=self.approval_timeout_seconds)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_settings(cls, settings: EngineSettings, **overrides: Any) -> EngineConfig:
        """Build an EngineConfig from environment-driven settings."""
        values: dict[str, Any] = {
            "environment": settings.environment,
            "debug": settings.debug,
            "ledger_db_path": settings.ledger_path,
            "snapshot_store_path": settings.snapshot_store_path,
            "notifications_path": settings.notifications_path,
            "approval_timeout_seconds": settings.approval_timeout_seconds,
            "test_timeout_seconds": settings.test_timeout_seconds,
            "max_concurrent_batches": settings.max_concurrent_batches,
            "consecutive_failure_threshold": settings.consecutive_failure_threshold,
            "operator_audience": settings.operator_audience,
            "approver_audience": settings.approver_audience,
        }
        values.update(overrides)
        return cls.model_validate(values)


def load_engine_config(path: Path, **overrides: Any) -> EngineConfig:
    """Load an EngineConfig from a TOML file.

    ``pyproject.toml`` files are read from their ``[tool.wavegate]`` table;
    any other file is read from its top level.
    """
    with open(path, "rb") as fh:
        data = tomllib.load(fh)
    if Path(path).name == "pyproject.toml":
        data = data.get("tool", {}).get("wavegate", {})
    data.update(overrides)
    return EngineConfig.model_validate(data)
