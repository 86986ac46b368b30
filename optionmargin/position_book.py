"""
position_book.py - Signed option positions per (account, instrument)

Positive quantity = long, negative = short. Flat positions are not stored,
and each account's OpenInstrumentIndex holds exactly the instruments with a
non-zero quantity. The book is owned and mutated by the MarginEngine; the
RiskEngine only reads it.
"""

from __future__ import annotations
from typing import Dict, Optional, Tuple

from .core import PositionKey, TooManyOpenPositions
from .fixed_point import checked_add_signed, abs_int256, require_int
from .open_index import OpenInstrumentIndex


class PositionBook:

    def __init__(self, max_open_instruments: int = 64):
        self.max_open_instruments = max_open_instruments
        self._quantities: Dict[PositionKey, int] = {}
        self._open: Dict[str, OpenInstrumentIndex] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def position(self, account: str, instrument_id: str) -> int:
        return self._quantities.get((account, instrument_id), 0)

    def open_instrument_count(self, account: str) -> int:
        index = self._open.get(account)
        return len(index) if index else 0

    def open_instruments(self, account: str, offset: int = 0, limit: int = 32) -> Tuple[str, ...]:
        index = self._open.get(account)
        return index.page(offset, limit) if index else ()

    def iter_pages(self, account: str, page_size: int):
        """Yield bounded slices of the account's open instruments."""
        offset = 0
        total = self.open_instrument_count(account)
        while offset < total:
            page = self.open_instruments(account, offset, page_size)
            if not page:
                break
            yield page
            offset += len(page)

    def short_contracts(self, account: str) -> int:
        """Total number of short contracts across all open instruments."""
        total = 0
        for instrument_id in self.open_instruments(account, 0, self.open_instrument_count(account)):
            quantity = self.position(account, instrument_id)
            if quantity < 0:
                total += abs_int256(quantity)
        return total

    def holders(self, instrument_id: str) -> Dict[str, int]:
        return {
            account: quantity
            for (account, iid), quantity in self._quantities.items()
            if iid == instrument_id
        }

    def net_open_interest(self, instrument_id: str) -> int:
        """Sum of signed positions; zero whenever every trade had two sides."""
        return sum(self.holders(instrument_id).values())

    # ------------------------------------------------------------------
    # Mutations (engine only)
    # ------------------------------------------------------------------

    def apply_delta(self, account: str, instrument_id: str, delta: int,
                    max_open: Optional[int] = None) -> int:
        """
        Add a signed delta with overflow and sentinel checks.

        max_open overrides the book-wide cap on open instruments.

        Returns:
            The new quantity

        Raises:
            TooManyOpenPositions: If a new instrument would exceed the cap
        """
        require_int(delta, "delta")
        key = (account, instrument_id)
        old = self._quantities.get(key, 0)
        new = checked_add_signed(old, delta)
        index = self._open.get(account)
        if new == 0:
            self._quantities.pop(key, None)
            if index is not None:
                index.remove(instrument_id)
                if not len(index):
                    del self._open[account]
            return 0
        if old == 0:
            limit = self.max_open_instruments if max_open is None else max_open
            count = len(index) if index is not None else 0
            if count >= limit:
                raise TooManyOpenPositions(f"{account} already has {count} open instruments")
            if index is None:
                index = self._open[account] = OpenInstrumentIndex()
            index.add(instrument_id)
        self._quantities[key] = new
        return new

    def close(self, account: str, instrument_id: str) -> int:
        """Zero a position; returns the quantity it held."""
        quantity = self.position(account, instrument_id)
        if quantity:
            self.apply_delta(account, instrument_id, -quantity)
        return quantity

    # ------------------------------------------------------------------
    # Rollback support
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple:
        return (
            dict(self._quantities),
            {account: index.copy() for account, index in self._open.items()},
        )

    def restore(self, snapshot: Tuple) -> None:
        self._quantities, self._open = snapshot

    def __repr__(self) -> str:
        return f"PositionBook({len(self._quantities)} positions, {len(self._open)} accounts)"
