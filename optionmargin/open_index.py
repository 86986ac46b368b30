"""
open_index.py - Dense index of an account's open instruments

Risk computation iterates every open instrument of an account, so the set
must stay small and be pruned as soon as a position goes flat. The index is
a dense list plus an id -> slot map:

    add:     append, O(1)
    remove:  swap with the last element and pop, O(1)
    page:    bounded slice for paginated reads

Ordering is not stable across removals.
"""

from __future__ import annotations
from typing import Dict, List, Tuple


class OpenInstrumentIndex:

    __slots__ = ("_ids", "_slots")

    def __init__(self):
        self._ids: List[str] = []
        self._slots: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, instrument_id: str) -> bool:
        return instrument_id in self._slots

    def add(self, instrument_id: str) -> bool:
        """Add an id; returns False if it was already present."""
        if instrument_id in self._slots:
            return False
        self._slots[instrument_id] = len(self._ids)
        self._ids.append(instrument_id)
        return True

    def remove(self, instrument_id: str) -> bool:
        """Remove an id by swapping in the last element; returns False if absent."""
        slot = self._slots.pop(instrument_id, None)
        if slot is None:
            return False
        last = self._ids.pop()
        if last != instrument_id:
            self._ids[slot] = last
            self._slots[last] = slot
        return True

    def page(self, offset: int, limit: int) -> Tuple[str, ...]:
        """Return at most `limit` ids starting at `offset`."""
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")
        return tuple(self._ids[offset:offset + limit])

    def ids(self) -> Tuple[str, ...]:
        return tuple(self._ids)

    def copy(self) -> OpenInstrumentIndex:
        cloned = OpenInstrumentIndex()
        cloned._ids = list(self._ids)
        cloned._slots = dict(self._slots)
        return cloned

    def __repr__(self) -> str:
        return f"OpenInstrumentIndex({self._ids})"
