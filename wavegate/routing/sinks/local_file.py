"""Local file sink: writes notifications to JSON files.

Layout: {base_path}/{audience}/{notification_id}.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from wavegate.core.hasher import canonical_json_bytes
from wavegate.models.notifications import Notification

logger = logging.getLogger(__name__)


class LocalFileSink:
    """Writes notifications to local JSON files, one per message.

    Parameters
    ----------
    base_path:
        Root directory.  Defaults to ``.wavegate/notifications``.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base = Path(base_path) if base_path else Path(".wavegate/notifications")
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def sink_name(self) -> str:
        return "local_file"

    def accept(self, notification: Notification) -> None:
        target_dir = self._base / notification.audience
        target_dir.mkdir(parents=True, exist_ok=True)
        target_file = target_dir / f"{notification.notification_id}.json"
        target_file.write_bytes(canonical_json_bytes(notification.model_dump(mode="json")))
        logger.debug("LocalFileSink: wrote %s to %s", notification.notification_id, target_file)

    def list_notifications(self, audience: str | None = None) -> list[Path]:
        """List notification files, optionally for one audience, oldest first."""
        root = self._base / audience if audience else self._base
        if not root.exists():
            return []
        return sorted(root.rglob("*.json"), key=lambda p: p.stat().st_mtime_ns)

    def read_notification(self, path: Path) -> Notification:
        return Notification.model_validate(json.loads(path.read_bytes()))
