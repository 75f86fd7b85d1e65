"""Linear undo/redo history of template snapshots."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from models.schemas import Template

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    """One committed mutation: the template before and after it."""
    label: str
    before: Template
    after: Template


class CommandHistory:
    """Bounded undo stack with a redo tail.

    Pushing a new entry after an undo discards the redo tail. When the stack
    exceeds ``limit`` the oldest entry is dropped.
    """

    def __init__(self, limit: int = 100):
        self.limit = max(1, limit)
        self._entries: List[HistoryEntry] = []
        self._cursor = 0  # number of entries currently applied

    def push(self, entry: HistoryEntry) -> None:
        if self._cursor < len(self._entries):
            logger.debug(f"[HISTORY] Discarding {len(self._entries) - self._cursor} redo entries")
            del self._entries[self._cursor:]
        self._entries.append(entry)
        if len(self._entries) > self.limit:
            self._entries.pop(0)
        self._cursor = len(self._entries)

    def undo(self) -> HistoryEntry | None:
        if not self.can_undo:
            return None
        self._cursor -= 1
        return self._entries[self._cursor]

    def redo(self) -> HistoryEntry | None:
        if not self.can_redo:
            return None
        entry = self._entries[self._cursor]
        self._cursor += 1
        return entry

    def clear(self) -> None:
        self._entries.clear()
        self._cursor = 0

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._entries)

    @property
    def undo_labels(self) -> List[str]:
        return [e.label for e in self._entries[: self._cursor]]

    def __len__(self) -> int:
        return len(self._entries)
