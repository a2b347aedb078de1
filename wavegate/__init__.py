"""wavegate: Incremental, Risk-Gated Code Transformation Engine.

v0.3.0: applies large automated code transformations in waves of
small, independently checkpointed batches:
  - Deterministic risk scoring with configurable weights and cutoffs
  - Risk-weighted topological wave planning with per-batch budgets
  - Checkpoint / verify / test / approve / commit per batch, with
    byte-exact rollback
  - Human approval as a persisted suspension that survives restarts
  - Deprecated forwarding shims between waves
  - Hash-chained SQLite Run Ledger as the source of truth
"""

__version__ = "0.3.0"
__description__ = "Incremental, risk-gated code transformation engine"

from wavegate.core.orchestrator import Orchestrator
from wavegate.monitor.projection import ProgressTracker
from wavegate.cli.app import app as cli

__all__ = ["Orchestrator", "ProgressTracker", "cli", "__version__"]
