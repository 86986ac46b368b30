"""
seizure.py - Collateral seizure planning for liquidation penalties

A planner turns a penalty expressed in base units into an ordered list of
(asset, amount) legs to take from the trader. The engine executes the plan:
it clamps every leg to the trader's balance, values what it actually took at
the oracle price and stops once the penalty is covered.
"""

from __future__ import annotations
from typing import Dict, List, Protocol, Tuple, runtime_checkable

from .core import BPS
from .fixed_point import Rounding, mul_div


SeizureLeg = Tuple[str, int]


@runtime_checkable
class SeizurePlanner(Protocol):
    """Protocol for external seizure planners."""

    def plan(self, trader: str, target_value: int, balances: Dict[str, int]) -> List[SeizureLeg]:
        """
        Args:
            trader: Account being liquidated
            target_value: Penalty in base-asset smallest units
            balances: Trader's claimable balances, base asset first

        Returns:
            Ordered (asset, amount) legs
        """
        ...


class OracleSeizurePlanner:
    """
    Base asset first, then every other asset at its oracle equivalent.

    Each non-base asset is valued at (1 - haircut - spread) of its oracle
    value when apply_haircut is set, so riskier collateral is seized in
    larger amounts. Unpriced assets are skipped.

    Example:
        planner = OracleSeizurePlanner(engine.risk, spread_bps=200)
        planner.plan("alice", 10_000_000, {"USDC": 4_000_000, "WETH": 10**18})
        # [("USDC", 4_000_000), ("WETH", <6 USDC worth at a 2% discount>)]
    """

    def __init__(self, risk, spread_bps: int = 0, apply_haircut: bool = False):
        if spread_bps < 0 or spread_bps >= BPS:
            raise ValueError(f"spread_bps must be in [0, {BPS}), got {spread_bps}")
        self.risk = risk
        self.spread_bps = spread_bps
        self.apply_haircut = apply_haircut

    def _discount_bps(self, asset: str) -> int:
        haircut = self.risk.config.asset_config(asset).haircut_bps if self.apply_haircut else 0
        return min(haircut + self.spread_bps, BPS)

    def plan(self, trader: str, target_value: int, balances: Dict[str, int]) -> List[SeizureLeg]:
        base = self.risk.config.base_asset()
        legs: List[SeizureLeg] = []
        remaining = target_value
        for asset, balance in balances.items():
            if remaining == 0:
                break
            if not balance:
                continue
            if asset == base:
                take = min(balance, remaining)
                legs.append((asset, take))
                remaining -= take
                continue
            keep_bps = BPS - self._discount_bps(asset)
            if keep_bps == 0:
                continue
            gross = mul_div(remaining, BPS, keep_bps, Rounding.CEIL)
            needed = self.risk.base_to_asset(asset, gross, Rounding.CEIL)
            if needed is None:
                continue
            take = min(needed, balance)
            value = self.risk.value_in_base(asset, take, Rounding.FLOOR) or 0
            legs.append((asset, take))
            remaining -= min(mul_div(value, keep_bps, BPS, Rounding.FLOOR), remaining)
        return legs

    def __repr__(self) -> str:
        return f"OracleSeizurePlanner(spread={self.spread_bps}bps, haircut={self.apply_haircut})"
