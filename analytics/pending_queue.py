from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from .database import Database

logger = logging.getLogger(__name__)


def _decode(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Pending report queue is unreadable; treating it as empty")
        return []
    if not isinstance(value, list):
        logger.warning("Pending report queue holds %s, not a list; treating it as empty", type(value).__name__)
        return []
    return [item for item in value if isinstance(item, dict)]


class PendingQueue:
    """Report payloads that no channel accepted, persisted in one named state slot.

    Every operation is a single read-modify-write on the slot, so appends and drains
    fired from different triggers cannot lose or duplicate entries. Storage failures
    are logged and behave like an empty queue.
    """

    def __init__(self, db: Database, key: str) -> None:
        self.db = db
        self.key = key

    def append(self, payload: dict[str, Any]) -> bool:
        def _push(raw: str | None) -> str:
            entries = _decode(raw)
            entries.append(payload)
            return json.dumps(entries)

        try:
            self.db.update_state(self.key, _push)
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.warning("Could not queue report for retry: %s", exc)
            return False
        return True

    def drain(self) -> list[dict[str, Any]]:
        """Remove and return every queued payload, oldest first."""
        try:
            raw = self.db.update_state(self.key, lambda _: None)
        except sqlite3.Error as exc:
            logger.warning("Could not read pending report queue: %s", exc)
            return []
        return _decode(raw)

    def peek(self) -> list[dict[str, Any]]:
        try:
            raw = self.db.get_state(self.key)
        except sqlite3.Error as exc:
            logger.warning("Could not read pending report queue: %s", exc)
            return []
        return _decode(raw)

    def __len__(self) -> int:
        return len(self.peek())
