"""Production configuration guard: hard constraints checked at startup.

The Orchestrator calls ``enforce_production_constraints`` once at
construction.  Other code should not scatter ``if is_production``
checks; the guard puts the engine in a known-good state up front.
"""

from __future__ import annotations

import logging

from wavegate.core.errors import ConfigurationError
from wavegate.models.approvals import ExpiryPolicy
from wavegate.models.config import EngineConfig

logger = logging.getLogger(__name__)


def production_violations(config: EngineConfig) -> list[str]:
    """Return every production constraint *config* violates (empty = ok)."""
    if not config.is_production:
        return []

    violations: list[str] = []
    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set WAVEGATE_DEBUG=false."
        )
    if config.expiry_policy == ExpiryPolicy.APPROVE:
        violations.append(
            "expiry_policy=approve silently accepts risk and is not allowed in production."
        )
    if config.max_concurrent_batches > 1 and not config.limits.isolate_critical:
        violations.append(
            "Concurrent batches require isolate_critical=True in production."
        )
    return violations


def enforce_production_constraints(config: EngineConfig) -> None:
    """Raise ``ConfigurationError`` listing all violations at once.

    Outside production this is a no-op.
    """
    violations = production_violations(config)
    if violations:
        msg = "Production configuration guard failed.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ConfigurationError(msg)
    if config.is_production:
        logger.info("Production configuration guard passed.")
