"""In-process feature-flag service."""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class InMemoryFeatureFlags:
    """Keeps rollout percentages in a dict; stands in for a real flag service."""

    def __init__(self) -> None:
        self._percentages: dict[str, int] = {}
        self._history: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def set_rollout_percentage(self, key: str, percent: int) -> None:
        if not 0 <= percent <= 100:
            raise ValueError(f"Rollout percentage must be 0..100, got {percent}")
        with self._lock:
            self._percentages[key] = percent
            self._history.append((key, percent))
        logger.info("Feature flag %s rolled out to %d%%", key, percent)

    def get_rollout_percentage(self, key: str) -> int | None:
        return self._percentages.get(key)

    @property
    def history(self) -> list[tuple[str, int]]:
        return list(self._history)
