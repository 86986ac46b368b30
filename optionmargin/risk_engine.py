"""
risk_engine.py - Account equity, maintenance and initial margin

Read-only over the CollateralLedger and the PositionBook. Every figure is
expressed in smallest units of the configured base asset.

computation (compute_account_risk):
    1. equity        = Σ supported assets: value_in_base(claimable) × (1 - haircut)
                       (assets without a valid price are skipped)
    2. liability     = Σ shorts: |qty| × shocked intrinsic value in base
                       (floor × oracle_down_multiplier when unpriced)
    3. equity       -= liability                    (signed)
    4. maintenance   = Σ shorts: |qty| × max(shocked intrinsic, floor value)
                       where floor value = max(mm floor, Black-Scholes premium
                       at the shocked spot and floor vol); flat floor when the
                       underlying has no enabled risk config
    5. initial       = ceil(maintenance × im_factor_bps / BPS)

Oracle and registry failures degrade to the conservative branch. Configuration
errors (base asset unset, unsupported settlement asset) are raised.
"""

from __future__ import annotations
from typing import Optional, Tuple

from .core import (
    BPS, MAX_MARGIN_RATIO, LogicalClock,
    AccountRisk, WithdrawPreview,
)
from .config import ConfigStore
from .fixed_point import (
    Rounding, apply_bps, mul_div, checked_add, checked_mul,
    convert_at_price, convert_at_price_inverse,
)
from .instruments import (
    Instrument, InstrumentRegistry,
    require_canonical_contract_size, payoff_per_contract, shock_price, price_to_amount,
)
from .black_scholes import floor_premium
from .collateral_ledger import CollateralLedger
from .oracle import OracleReader
from .position_book import PositionBook


class RiskEngine:
    """
    Stateless risk calculator.

    Example:
        risk = RiskEngine(config, ledger, book, registry, reader, clock)
        r = risk.compute_account_risk("alice")
        r.equity, r.maintenance_margin, r.initial_margin
        risk.is_liquidatable("alice")
    """

    def __init__(self, config: ConfigStore, ledger: CollateralLedger, book: PositionBook,
                 registry: InstrumentRegistry, oracle: OracleReader, clock: LogicalClock,
                 verbose: bool = False):
        self.config = config
        self.ledger = ledger
        self.book = book
        self.registry = registry
        self.oracle = oracle
        self.clock = clock
        self.verbose = verbose

    # ========================================================================
    # VALUATION
    # ========================================================================

    def value_in_base(self, asset: str, amount: int,
                      rounding: Rounding = Rounding.FLOOR) -> Optional[int]:
        """Value of `amount` of `asset` in base units, or None if unpriced."""
        base = self.config.base_asset()
        if asset == base:
            return amount
        read = self.oracle.read(asset, base)
        if not read.ok:
            return None
        return convert_at_price(
            amount, read.price,
            self.config.asset_config(asset).decimals,
            self.config.asset_config(base).decimals,
            rounding,
        )

    def base_to_asset(self, asset: str, base_amount: int,
                      rounding: Rounding = Rounding.FLOOR) -> Optional[int]:
        """Amount of `asset` worth `base_amount`, or None if unpriced."""
        base = self.config.base_asset()
        if asset == base:
            return base_amount
        read = self.oracle.read(asset, base)
        if not read.ok:
            return None
        return convert_at_price_inverse(
            base_amount, read.price,
            self.config.asset_config(asset).decimals,
            self.config.asset_config(base).decimals,
            rounding,
        )

    def collateral_value(self, account: str) -> int:
        """Haircut value of all supported collateral; unpriced assets count zero."""
        total = 0
        for asset in self.config.supported_assets():
            balance = self.ledger.claimable(account, asset)
            if not balance:
                continue
            value = self.value_in_base(asset, balance)
            if value is None:
                if self.verbose:
                    print(f"⚠️  RISK {account}: {asset} unpriced, skipped from equity")
                continue
            haircut = self.config.asset_config(asset).haircut_bps
            total = checked_add(total, apply_bps(value, BPS - haircut, Rounding.FLOOR))
        return total

    # ========================================================================
    # PER-CONTRACT RISK
    # ========================================================================

    def _down_floor(self, floor: int) -> int:
        return apply_bps(floor, self.config.params.oracle_down_multiplier_bps, Rounding.CEIL)

    def short_contract_risk(self, instrument_id: str) -> Tuple[int, int]:
        """
        Liability and maintenance margin of one short contract, in base units.

        Returns:
            (liability_per_contract, maintenance_per_contract)
        """
        params = self.config.params
        try:
            instrument = require_canonical_contract_size(self.registry.get_series(instrument_id))
        except Exception as e:  # untrusted registry
            if self.verbose:
                print(f"⚠️  RISK {instrument_id}: series lookup failed ({type(e).__name__}), bumped floor")
            bumped = self._down_floor(params.default_mm_floor_per_contract)
            return bumped, bumped

        settle_cfg = self.config.asset_config(instrument.settlement_asset)
        underlying_cfg = self.config.underlying_config(instrument.underlying)
        enabled = underlying_cfg is not None and underlying_cfg.enabled
        floor = underlying_cfg.mm_floor_per_contract if enabled \
            else params.default_mm_floor_per_contract
        bumped = self._down_floor(floor)

        spot = self.oracle.read(instrument.underlying, instrument.settlement_asset)
        if not spot.ok:
            return bumped, (bumped if enabled else floor)

        if enabled:
            shocked = shock_price(spot.price, instrument.is_call,
                                  underlying_cfg.shock_up_bps, underlying_cfg.shock_down_bps)
        else:
            shocked = spot.price
        intrinsic = payoff_per_contract(instrument, shocked, settle_cfg.decimals, Rounding.CEIL)
        liability = self.value_in_base(instrument.settlement_asset, intrinsic, Rounding.CEIL)
        if liability is None:
            return bumped, (bumped if enabled else floor)
        if not enabled:
            return liability, floor

        floor_value = max(floor, self._floor_vol_value(instrument, shocked, underlying_cfg.floor_vol_bps,
                                                        settle_cfg.decimals))
        return liability, max(liability, floor_value)

    def _floor_vol_value(self, instrument: Instrument, shocked_spot: int, vol_bps: int,
                         settlement_decimals: int) -> int:
        """Black-Scholes premium at the floor vol in base units; 0 when not applicable."""
        remaining = instrument.expiry - self.clock.now
        if vol_bps == 0 or remaining <= 0:
            return 0
        try:
            premium = floor_premium(shocked_spot, instrument.strike, remaining, vol_bps,
                                    instrument.is_call)
        except ValueError:
            return 0
        amount = price_to_amount(premium, settlement_decimals, Rounding.CEIL)
        value = self.value_in_base(instrument.settlement_asset, amount, Rounding.CEIL)
        return value or 0

    def liquidation_price(self, instrument: Instrument) -> int:
        """
        Per-contract price a liquidator receives, in settlement units.

        max(shocked intrinsic × (1 + spread), intrinsic × price_floor)

        Raises:
            OracleUnavailable: If the underlying cannot be priced
        """
        params = self.config.params
        require_canonical_contract_size(instrument)
        decimals = self.config.asset_config(instrument.settlement_asset).decimals
        spot = self.oracle.require(instrument.underlying, instrument.settlement_asset)
        cfg = self.config.underlying_config(instrument.underlying)
        if cfg is not None and cfg.enabled:
            shocked = shock_price(spot, instrument.is_call, cfg.shock_up_bps, cfg.shock_down_bps)
        else:
            shocked = spot
        shocked_value = payoff_per_contract(instrument, shocked, decimals, Rounding.CEIL)
        price = apply_bps(shocked_value, BPS + params.liquidation_spread_bps, Rounding.CEIL)
        if params.liquidation_price_floor_bps:
            fair = payoff_per_contract(instrument, spot, decimals, Rounding.FLOOR)
            price = max(price, apply_bps(fair, params.liquidation_price_floor_bps, Rounding.CEIL))
        return price

    # ========================================================================
    # ACCOUNT RISK
    # ========================================================================

    def compute_account_risk(self, account: str) -> AccountRisk:
        params = self.config.params
        self.config.base_asset()
        equity = self.collateral_value(account)
        liability = 0
        maintenance = 0
        for page in self.book.iter_pages(account, params.risk_page_size):
            for instrument_id in page:
                quantity = self.book.position(account, instrument_id)
                if quantity >= 0:
                    continue
                contracts = -quantity
                per_liability, per_maintenance = self.short_contract_risk(instrument_id)
                liability = checked_add(liability, checked_mul(contracts, per_liability))
                maintenance = checked_add(maintenance, checked_mul(contracts, per_maintenance))
        initial = mul_div(maintenance, params.im_factor_bps, BPS, Rounding.CEIL)
        return AccountRisk(equity=equity - liability, maintenance_margin=maintenance,
                           initial_margin=initial)

    @staticmethod
    def margin_ratio_bps(risk: AccountRisk) -> int:
        """equity × BPS / maintenance; saturates at MAX_MARGIN_RATIO and 0."""
        if risk.maintenance_margin == 0:
            return MAX_MARGIN_RATIO
        if risk.equity <= 0:
            return 0
        return min(risk.equity * BPS // risk.maintenance_margin, MAX_MARGIN_RATIO)

    def is_liquidatable(self, account: str) -> bool:
        risk = self.compute_account_risk(account)
        return risk.maintenance_margin > 0 and \
            self.margin_ratio_bps(risk) < self.config.params.liquidation_threshold_bps

    def meets_initial_margin(self, account: str) -> bool:
        risk = self.compute_account_risk(account)
        return risk.equity >= risk.initial_margin

    # ========================================================================
    # WITHDRAW PREVIEW
    # ========================================================================

    def preview_withdraw(self, account: str, asset: str, amount: int) -> WithdrawPreview:
        """
        Simulate removing `amount` of `asset`.

        The equity delta uses the same price and haircut path as equity. If the
        account holds shorts and the asset cannot be priced, nothing is
        withdrawable.
        """
        risk = self.compute_account_risk(account)
        unmargined = self.book.short_contracts(account) == 0
        balance = self.ledger.claimable(account, asset)
        ratio_before = self.margin_ratio_bps(risk)

        credited = self.config.is_supported(asset)
        haircut = self.config.asset_config(asset).haircut_bps if credited else BPS
        priced = True
        delta = 0
        if credited and haircut < BPS:
            value = self.value_in_base(asset, min(amount, balance))
            if value is None:
                priced = False
            else:
                delta = apply_bps(value, BPS - haircut, Rounding.CEIL)

        after = AccountRisk(risk.equity - delta, risk.maintenance_margin, risk.initial_margin)
        ratio_after = self.margin_ratio_bps(after) if priced else 0

        if unmargined:
            max_withdrawable = balance
        elif risk.equity < risk.initial_margin or not priced:
            max_withdrawable = 0
        elif not credited or haircut == BPS:
            max_withdrawable = balance
        else:
            gross = mul_div(risk.equity - risk.initial_margin, BPS, BPS - haircut, Rounding.FLOOR)
            units = self.base_to_asset(asset, gross, Rounding.FLOOR)
            max_withdrawable = min(units, balance) if units is not None else 0

        if amount > balance:
            would_breach = True
        elif unmargined:
            would_breach = False
        elif not priced:
            would_breach = True
        else:
            would_breach = after.equity < risk.initial_margin

        return WithdrawPreview(
            max_withdrawable=max_withdrawable,
            margin_ratio_before=ratio_before,
            margin_ratio_after=ratio_after,
            would_breach=would_breach,
        )

    def __repr__(self) -> str:
        return f"RiskEngine(base={self.config.params.base_asset})"
