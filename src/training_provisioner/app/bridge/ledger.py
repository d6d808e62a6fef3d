"""Propagation ledger: which (request, handle) pairs were already projected.

The ledger is what makes propagation edge-triggered. Once seeded, whether a
target record still carries the projected values is never consulted: the
bridge does not own that record and cannot tell "not yet propagated" apart
from "propagated, then edited back by someone else".
"""

from __future__ import annotations

from typing import Collection, Iterator

LedgerKey = tuple[str, str]


class PropagationLedger:
    def __init__(self) -> None:
        self._entries: set[LedgerKey] = set()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerKey]:
        return iter(sorted(self._entries))

    def record(self, request_id: str, handle: str) -> None:
        self._entries.add((request_id, handle))

    def prune(self, existing_request_ids: Collection[str]) -> list[LedgerKey]:
        """Drop entries whose request no longer exists."""
        gone = [key for key in self._entries if key[0] not in existing_request_ids]
        for key in gone:
            self._entries.discard(key)
        return sorted(gone)
