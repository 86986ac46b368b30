"""
instruments.py - Option series interface and pure payoff functions

The series catalog and its settlement-price finalization workflow live outside
the engine. This module defines what the engine reads from them and the pure
integer functions that turn a price into a per-contract value.

Payoff logic (cash-settled, per contract of one whole underlying unit):
    CALL: max(0, price - strike)
    PUT:  max(0, strike - price)

Prices and strikes are scaled by 1e8 and quoted in the settlement asset.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Protocol, runtime_checkable

from .core import (
    CONTRACT_SIZE, PRICE_SCALE, BPS,
    InvalidInstrument,
)
from .fixed_point import Rounding, mul_div, pow10, require_uint


@dataclass(frozen=True, slots=True)
class Instrument:
    """
    Read-only description of one option series.

    Attributes:
        instrument_id: Series identifier
        underlying: Asset the option is written on
        settlement_asset: Asset premiums and payoffs are paid in
        expiry: Unix seconds; trading stops and settlement opens at expiry
        strike: Strike price scaled by 1e8, in settlement-asset terms
        is_call: True for calls, False for puts
        contract_size: Must equal CONTRACT_SIZE before any price math
        is_active: False puts the series in close-only mode
    """
    instrument_id: str
    underlying: str
    settlement_asset: str
    expiry: int
    strike: int
    is_call: bool
    contract_size: int = CONTRACT_SIZE
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class SettlementInfo:
    price: int
    is_finalized: bool


@runtime_checkable
class InstrumentRegistry(Protocol):
    """Protocol for the external option-series catalog."""

    def get_series(self, instrument_id: str) -> Instrument:
        ...

    def get_settlement_info(self, instrument_id: str) -> SettlementInfo:
        ...


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def require_canonical_contract_size(instrument: Instrument) -> Instrument:
    """
    Raises:
        InvalidInstrument: If the series uses a non-canonical contract size
            or a non-positive strike
    """
    if instrument.contract_size != CONTRACT_SIZE:
        raise InvalidInstrument(
            f"{instrument.instrument_id}: contract size {instrument.contract_size} "
            f"!= canonical {CONTRACT_SIZE}"
        )
    if not isinstance(instrument.strike, int) or instrument.strike <= 0:
        raise InvalidInstrument(f"{instrument.instrument_id}: strike must be positive")
    return instrument


def intrinsic_price(is_call: bool, strike: int, price: int) -> int:
    """Intrinsic value per underlying unit, scaled by 1e8."""
    require_uint(strike, "strike")
    require_uint(price, "price")
    if is_call:
        return price - strike if price > strike else 0
    return strike - price if strike > price else 0


def price_to_amount(price_1e8: int, decimals: int, rounding: Rounding = Rounding.FLOOR) -> int:
    """Convert a 1e8-scaled per-contract price into smallest units of an asset."""
    return mul_div(price_1e8, pow10(decimals), PRICE_SCALE, rounding)


def payoff_per_contract(instrument: Instrument, price: int, settlement_decimals: int,
                        rounding: Rounding = Rounding.FLOOR) -> int:
    """Cash value of one contract at `price`, in settlement-asset smallest units."""
    require_canonical_contract_size(instrument)
    intrinsic = intrinsic_price(instrument.is_call, instrument.strike, price)
    per_unit = mul_div(intrinsic, instrument.contract_size, CONTRACT_SIZE, rounding)
    return price_to_amount(per_unit, settlement_decimals, rounding)


def shock_price(price: int, is_call: bool, shock_up_bps: int, shock_down_bps: int) -> int:
    """
    Move the price against the option writer.

    Calls are shocked up (rounded up), puts are shocked down (rounded down).
    """
    if is_call:
        return mul_div(price, BPS + shock_up_bps, BPS, Rounding.CEIL)
    return mul_div(price, BPS - shock_down_bps, BPS, Rounding.FLOOR)


# ============================================================================
# REFERENCE REGISTRY
# ============================================================================

class InMemoryInstrumentRegistry:
    """
    Minimal series catalog.

    Finalization is a single call here; the two-phase workflow of a real
    catalog is outside the engine.
    """

    def __init__(self):
        self.series: Dict[str, Instrument] = {}
        self.settlements: Dict[str, SettlementInfo] = {}

    def add_series(self, instrument: Instrument) -> Instrument:
        if instrument.instrument_id in self.series:
            raise ValueError(f"Series {instrument.instrument_id} already registered")
        self.series[instrument.instrument_id] = instrument
        return instrument

    def get_series(self, instrument_id: str) -> Instrument:
        try:
            return self.series[instrument_id]
        except KeyError:
            raise InvalidInstrument(f"unknown series {instrument_id}") from None

    def set_active(self, instrument_id: str, is_active: bool) -> None:
        self.series[instrument_id] = replace(self.get_series(instrument_id), is_active=is_active)

    def finalize(self, instrument_id: str, price: int) -> None:
        self.get_series(instrument_id)
        if price <= 0:
            raise ValueError(f"settlement price must be positive, got {price}")
        self.settlements[instrument_id] = SettlementInfo(price=price, is_finalized=True)

    def get_settlement_info(self, instrument_id: str) -> SettlementInfo:
        self.get_series(instrument_id)
        return self.settlements.get(instrument_id, SettlementInfo(price=0, is_finalized=False))

    def __repr__(self) -> str:
        return f"InMemoryInstrumentRegistry({len(self.series)} series, {len(self.settlements)} finalized)"
