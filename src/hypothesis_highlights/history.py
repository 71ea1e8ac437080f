"""Persistence of the sync history between runs."""
from __future__ import annotations

import json
import logging
from pathlib import Path

from .config import HISTORY_FILE, write_json_atomic
from .errors import HighlightSyncError
from .models import SyncHistory

logger = logging.getLogger(__name__)


class HistoryStore:
    """Loads and atomically saves :class:`SyncHistory` as JSON."""

    def __init__(self, path: Path = HISTORY_FILE) -> None:
        self.path = path

    def load(self) -> SyncHistory:
        path = self.path.expanduser()
        if not path.exists():
            return SyncHistory()
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            return SyncHistory.from_mapping(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise HighlightSyncError(f"Sync history at {path} is unreadable: {exc}") from exc

    def save(self, history: SyncHistory) -> None:
        write_json_atomic(self.path, history.to_mapping())
        logger.debug("Saved sync history to %s", self.path)

    def reset(self) -> SyncHistory:
        """Forget tracked documents, the cursor and the totals.

        Documents the user chose to keep deleted stay ignored. An unreadable
        history is replaced outright.
        """

        try:
            ignored = self.load().ignored
        except HighlightSyncError as exc:
            logger.warning("Discarding unreadable sync history: %s", exc)
            ignored = frozenset()
        history = SyncHistory(ignored=ignored)
        self.save(history)
        return history
