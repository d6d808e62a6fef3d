"""Per-loop processed markers.

Each loop owns its own ``ProcessedMarkers`` instance. Markers are a cache
over store state: pruned every tick for records that disappeared, and
expired for terminal records after the tracking TTL.
"""

from __future__ import annotations

from datetime import datetime
from typing import Collection, Iterator


class ProcessedMarkers:
    """Ids this loop has already handled, with the time they were marked."""

    def __init__(self) -> None:
        self._marked: dict[str, datetime] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._marked

    def __len__(self) -> int:
        return len(self._marked)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._marked))

    def mark(self, key: str, now: datetime) -> None:
        self._marked.setdefault(key, now)

    def marked_at(self, key: str) -> datetime | None:
        return self._marked.get(key)

    def discard(self, key: str) -> None:
        self._marked.pop(key, None)

    def prune_missing(self, existing: Collection[str]) -> list[str]:
        """Drop markers whose key is no longer in ``existing``."""
        gone = [key for key in self._marked if key not in existing]
        for key in gone:
            del self._marked[key]
        return gone
