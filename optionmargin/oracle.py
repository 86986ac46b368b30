"""
oracle.py - Price oracle interface, validation and reference sources

Provides:
- PriceOracle: Protocol for the external price feed
- PriceRead: Result value of a validated read (price or error reason)
- OracleReader: Wraps an oracle so that failing, zero, future-dated or stale
  reads become error results instead of exceptions
- StaticPriceOracle / TimeSeriesPriceOracle: In-memory sources
- RedundantPriceOracle: Two sources cross-checked against a deviation bound

All prices are ints scaled by 1e8 and quote the price of one whole `base`
unit in whole `quote` units. Timestamps are unix seconds.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .core import (
    BPS, PRICE_SCALE, LogicalClock,
    OracleUnavailable, OracleDeviation,
)
from .config import ConfigStore


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price feeds.

    get_price() returns (price, updated_at). Implementations may raise;
    callers must go through OracleReader.
    """

    def get_price(self, base: str, quote: str) -> Tuple[int, int]:
        ...


@dataclass(frozen=True, slots=True)
class PriceRead:
    """Outcome of a validated oracle read."""
    base: str
    quote: str
    price: Optional[int] = None
    updated_at: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.price is not None and not self.error


class OracleReader:
    """
    Validating front of a PriceOracle.

    A read is invalid when:
        - the oracle raises
        - price == 0 or updated_at == 0
        - updated_at lies in the future
        - now - updated_at exceeds the effective delay
          (min of the global and per-feed bounds that are configured)

    Invalid reads come back as PriceRead with `error` set; they never raise.
    """

    def __init__(self, oracle: PriceOracle, clock: LogicalClock, config: ConfigStore,
                 verbose: bool = False):
        self.oracle = oracle
        self.clock = clock
        self.config = config
        self.verbose = verbose

    def read(self, base: str, quote: str) -> PriceRead:
        if base == quote:
            return PriceRead(base, quote, PRICE_SCALE, self.clock.now)
        try:
            price, updated_at = self.oracle.get_price(base, quote)
        except Exception as e:
            return self._fail(base, quote, f"oracle call failed: {e!r}")

        if not isinstance(price, int) or isinstance(price, bool) or price <= 0:
            return self._fail(base, quote, f"invalid price {price!r}")
        if not isinstance(updated_at, int) or isinstance(updated_at, bool) or updated_at <= 0:
            return self._fail(base, quote, f"invalid updated_at {updated_at!r}")
        now = self.clock.now
        if updated_at > now:
            return self._fail(base, quote, f"updated_at {updated_at} is in the future (now={now})")
        delay = self.config.effective_oracle_delay(base, quote)
        if delay and now - updated_at > delay:
            return self._fail(base, quote, f"stale by {now - updated_at - delay}s")
        return PriceRead(base, quote, price, updated_at)

    def require(self, base: str, quote: str) -> int:
        """
        Return a valid price or raise.

        Raises:
            OracleUnavailable: If the read is invalid
        """
        result = self.read(base, quote)
        if not result.ok:
            raise OracleUnavailable(f"{base}/{quote}: {result.error}")
        return result.price

    def _fail(self, base: str, quote: str, reason: str) -> PriceRead:
        if self.verbose:
            print(f"⚠️  ORACLE {base}/{quote}: {reason}")
        return PriceRead(base, quote, None, 0, reason)


# ============================================================================
# REFERENCE SOURCES
# ============================================================================

class StaticPriceOracle:
    """
    Oracle with explicitly set (price, updated_at) pairs.

    Missing pairs raise OracleUnavailable, as a reverting feed would.
    """

    def __init__(self, prices: Optional[Dict[Tuple[str, str], Tuple[int, int]]] = None):
        self.prices: Dict[Tuple[str, str], Tuple[int, int]] = dict(prices or {})

    def get_price(self, base: str, quote: str) -> Tuple[int, int]:
        try:
            return self.prices[(base, quote)]
        except KeyError:
            raise OracleUnavailable(f"no feed for {base}/{quote}") from None

    def set_price(self, base: str, quote: str, price: int, updated_at: int) -> None:
        self.prices[(base, quote)] = (price, updated_at)

    def remove_price(self, base: str, quote: str) -> None:
        self.prices.pop((base, quote), None)

    def __repr__(self) -> str:
        return f"StaticPriceOracle({len(self.prices)} feeds)"


class TimeSeriesPriceOracle:
    """
    Oracle with historical observations.

    Returns the most recent observation at or before the clock's current time,
    with updated_at set to that observation's timestamp.
    """

    def __init__(self, clock: LogicalClock,
                 price_paths: Optional[Dict[Tuple[str, str], List[Tuple[int, int]]]] = None):
        self.clock = clock
        self.price_history: Dict[Tuple[str, str], List[Tuple[int, int]]] = {}
        if price_paths:
            for pair, path in price_paths.items():
                if path:
                    self.price_history[pair] = sorted(path, key=lambda x: x[0])

    def add_price(self, base: str, quote: str, timestamp: int, price: int) -> None:
        history = self.price_history.setdefault((base, quote), [])
        history.append((timestamp, price))
        history.sort(key=lambda x: x[0])

    def get_price(self, base: str, quote: str) -> Tuple[int, int]:
        history = self.price_history.get((base, quote))
        if not history:
            raise OracleUnavailable(f"no feed for {base}/{quote}")
        # Binary search: rightmost observation with ts <= now
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, self.clock.now)
        if idx == 0:
            raise OracleUnavailable(f"no observation for {base}/{quote} at {self.clock.now}")
        timestamp, price = history[idx - 1]
        return price, timestamp

    def __repr__(self) -> str:
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} feeds, {total} observations)"


class RedundantPriceOracle:
    """
    Cross-checks two sources.

    Both must answer; if their prices differ by more than max_deviation_bps
    of the smaller one, the read fails with OracleDeviation. The primary price
    is returned with the older of the two timestamps.
    """

    def __init__(self, primary: PriceOracle, secondary: PriceOracle, max_deviation_bps: int):
        if max_deviation_bps < 0:
            raise ValueError("max_deviation_bps must be non-negative")
        self.primary = primary
        self.secondary = secondary
        self.max_deviation_bps = max_deviation_bps

    def get_price(self, base: str, quote: str) -> Tuple[int, int]:
        p1, t1 = self.primary.get_price(base, quote)
        p2, t2 = self.secondary.get_price(base, quote)
        low, high = min(p1, p2), max(p1, p2)
        if (high - low) * BPS > self.max_deviation_bps * low:
            raise OracleDeviation(f"{base}/{quote}: sources disagree ({p1} vs {p2})")
        return p1, min(t1, t2)
