"""Bounded command history."""
from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from .types import HistoryEntry

DEFAULT_HISTORY_LIMIT = 10

# Characters of each entry's output returned by recent()
PREVIEW_LENGTH = 1000


def utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CommandHistory:
    """Append-only record of executions, capped at `max_size` (oldest dropped first)."""

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("History size must be at least 1")
        self._max_size = max_size
        self._entries: Deque[HistoryEntry] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        command: str,
        output: str,
        exit_code: int,
        connection_id: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            command=command,
            output=output,
            timestamp=utc_timestamp(),
            exit_code=exit_code,
            connection_id=connection_id,
        )
        self._entries.append(entry)
        return entry

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = DEFAULT_HISTORY_LIMIT
        return max(1, min(limit, self._max_size))

    def recent(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Return the last `limit` entries, most recent last.

        `limit` is clamped to [1, max_size] and defaults to 10. Each entry's
        output is cut to PREVIEW_LENGTH characters.
        """
        count = self.clamp_limit(limit)
        entries = list(self._entries)[-count:]
        return [
            entry.model_copy(update={"output": entry.output[:PREVIEW_LENGTH]})
            for entry in entries
        ]


__all__ = ["CommandHistory", "DEFAULT_HISTORY_LIMIT", "PREVIEW_LENGTH", "utc_timestamp"]
