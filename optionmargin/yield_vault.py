"""
yield_vault.py - Yield strategy adapter interface and a reference vault

The ledger may route idle collateral into an external yield strategy and
hold shares in it. The adapter is untrusted: the ledger previews every
deposit/withdraw and requires the actual share count to match exactly.

Rounding (always in the vault's favour):
    preview_deposit(assets)  -> shares, FLOOR
    preview_mint(shares)     -> assets, CEIL
    preview_withdraw(assets) -> shares, CEIL
    preview_redeem(shares)   -> assets, FLOOR

SimpleYieldVault uses a virtual offset of one share and one asset so the
first depositor gets 1:1 shares and the share price cannot be inflated from
zero.
"""

from __future__ import annotations
from typing import Protocol, runtime_checkable

from .core import InsufficientBalance
from .fixed_point import Rounding, mul_div, checked_add, checked_sub, require_uint


@runtime_checkable
class YieldAdapter(Protocol):
    """Protocol for pluggable yield strategies."""

    def preview_deposit(self, assets: int) -> int:
        ...

    def preview_mint(self, shares: int) -> int:
        ...

    def preview_withdraw(self, assets: int) -> int:
        ...

    def preview_redeem(self, shares: int) -> int:
        ...

    def deposit(self, assets: int) -> int:
        """Take `assets` and return the number of shares minted."""
        ...

    def withdraw(self, assets: int, receiver: str) -> int:
        """Send `assets` to receiver and return the number of shares burned."""
        ...

    def total_assets(self) -> int:
        ...

    def total_shares(self) -> int:
        ...


class SimpleYieldVault:
    """
    In-memory ERC-4626 style vault.

    Example:
        vault = SimpleYieldVault("USDC")
        shares = vault.deposit(1_000_000)   # 1_000_000 shares
        vault.accrue(100_000)               # +10% yield
        vault.preview_redeem(shares)        # 1_099_999 (floor)
    """

    def __init__(self, asset: str):
        self.asset = asset
        self._total_assets = 0
        self._total_shares = 0

    def total_assets(self) -> int:
        return self._total_assets

    def total_shares(self) -> int:
        return self._total_shares

    def _to_shares(self, assets: int, rounding: Rounding) -> int:
        return mul_div(assets, self._total_shares + 1, self._total_assets + 1, rounding)

    def _to_assets(self, shares: int, rounding: Rounding) -> int:
        return mul_div(shares, self._total_assets + 1, self._total_shares + 1, rounding)

    def preview_deposit(self, assets: int) -> int:
        return self._to_shares(assets, Rounding.FLOOR)

    def preview_mint(self, shares: int) -> int:
        return self._to_assets(shares, Rounding.CEIL)

    def preview_withdraw(self, assets: int) -> int:
        return self._to_shares(assets, Rounding.CEIL)

    def preview_redeem(self, shares: int) -> int:
        return self._to_assets(shares, Rounding.FLOOR)

    def deposit(self, assets: int) -> int:
        require_uint(assets, "assets")
        shares = self.preview_deposit(assets)
        self._total_assets = checked_add(self._total_assets, assets)
        self._total_shares = checked_add(self._total_shares, shares)
        return shares

    def withdraw(self, assets: int, receiver: str) -> int:
        require_uint(assets, "assets")
        if assets > self._total_assets:
            raise InsufficientBalance(f"vault holds {self._total_assets}, asked {assets}")
        shares = self.preview_withdraw(assets)
        if shares > self._total_shares:
            raise InsufficientBalance(f"vault has {self._total_shares} shares, needs {shares}")
        self._total_assets = checked_sub(self._total_assets, assets)
        self._total_shares = checked_sub(self._total_shares, shares)
        return shares

    def accrue(self, assets: int) -> None:
        """Simulate strategy yield."""
        self._total_assets = checked_add(self._total_assets, assets)

    def __repr__(self) -> str:
        return f"SimpleYieldVault({self.asset}, assets={self._total_assets}, shares={self._total_shares})"
