"""
margin_engine.py - Option positions, trades, settlement and liquidation

The MarginEngine is the only component that mutates positions. It moves
collateral exclusively through CollateralLedger.transfer_between(), as the
ledger's bound engine, and enforces margin through the RiskEngine.

Position lifecycle per (account, instrument), implicit in the signed quantity:

    flat -> long | short -> flat
    deactivated series are close-only: |quantity| may shrink, never flip sign

Every operation is atomic: positions, settlement flags and accounting are
snapshotted together with a ledger savepoint, and any exception restores
both. Position mutations are serialized by their own non-reentrant guard.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Tuple, Iterator

from .core import (
    BPS, INSURANCE_ACCOUNT, LogicalClock, PositionKey,
    AccountRisk, SettlementAccounting, SettlementResult, SettlementStatus,
    LiquidationFill, LiquidationResult,
    InvalidAmount, InvalidInstrument, MarginRequirementBreach, InsufficientInsurance,
    InstrumentExpired, InstrumentNotExpired, SettlementNotFinalized, CloseOnlyViolation,
    NotLiquidatable, NothingToLiquidate, LiquidationNotImproving,
)
from .config import ConfigStore, ROLE_MATCHER, ROLE_RISK_ADMIN
from .fixed_point import Rounding, apply_bps, checked_add, checked_mul, require_uint, to_int256
from .guards import NonReentrant
from .instruments import (
    Instrument, InstrumentRegistry, require_canonical_contract_size, payoff_per_contract,
)
from .collateral_ledger import CollateralLedger
from .oracle import OracleReader, PriceOracle
from .position_book import PositionBook
from .risk_engine import RiskEngine
from .seizure import SeizurePlanner, OracleSeizurePlanner


class MarginEngine:
    """
    Position and margin engine for cash-settled options.

    Example:
        engine = MarginEngine.create(config, clock, oracle, registry, caller="admin")
        engine.ledger.deposit("alice", "USDC", 1_000_000_000)
        engine.ledger.deposit("bob", "USDC", 1_000_000_000)
        engine.apply_trade("bob", "alice", "ETH-C-3000", 1, 50_000_000, caller="admin")
        engine.position("alice", "ETH-C-3000")   # -1
    """

    def __init__(self, config: ConfigStore, ledger: CollateralLedger,
                 registry: InstrumentRegistry, oracle: OracleReader, clock: LogicalClock,
                 engine_id: str = "margin_engine", verbose: bool = False):
        if not engine_id:
            raise InvalidAmount("engine_id cannot be empty")
        self.config = config
        self.ledger = ledger
        self.registry = registry
        self.oracle = oracle
        self.clock = clock
        self.engine_id = engine_id
        self.verbose = verbose

        self.book = PositionBook(config.params.max_open_instruments)
        self.risk = RiskEngine(config, ledger, self.book, registry, oracle, clock, verbose)
        self.seizure_planner: SeizurePlanner = OracleSeizurePlanner(self.risk)

        self._settled: Set[PositionKey] = set()
        self._accounting: Dict[str, SettlementAccounting] = {}
        self._bad_debt: Dict[str, int] = {}
        self._guard = NonReentrant("positions")

    @classmethod
    def create(cls, config: ConfigStore, clock: LogicalClock, oracle: PriceOracle,
               registry: InstrumentRegistry, *, caller: str,
               engine_id: str = "margin_engine", verbose: bool = False) -> MarginEngine:
        """Build a ledger, oracle reader and engine, and bind the engine to the ledger."""
        ledger = CollateralLedger(config, clock, verbose=verbose)
        reader = OracleReader(oracle, clock, config, verbose=verbose)
        engine = cls(config, ledger, registry, reader, clock, engine_id=engine_id, verbose=verbose)
        engine.bind(caller)
        return engine

    def bind(self, caller: str) -> None:
        """Register as the ledger's engine and install the withdraw margin check."""
        self.ledger.bind_engine(caller, self.engine_id, self._check_withdraw)

    def set_seizure_planner(self, caller: str, planner: Optional[SeizurePlanner]) -> None:
        self.config.access.require(caller, ROLE_RISK_ADMIN)
        self.seizure_planner = planner if planner is not None else OracleSeizurePlanner(self.risk)

    # ========================================================================
    # READS
    # ========================================================================

    def position(self, account: str, instrument_id: str) -> int:
        return self.book.position(account, instrument_id)

    def open_instruments(self, account: str, offset: int = 0, limit: int = 32) -> Tuple[str, ...]:
        return self.book.open_instruments(account, offset, limit)

    def open_instrument_count(self, account: str) -> int:
        return self.book.open_instrument_count(account)

    def is_settled(self, instrument_id: str, account: str) -> bool:
        return (account, instrument_id) in self._settled

    def settlement_accounting(self, instrument_id: str) -> SettlementAccounting:
        return self._accounting.get(instrument_id, SettlementAccounting())

    def total_bad_debt(self, asset: str) -> int:
        return self._bad_debt.get(asset, 0)

    def account_risk(self, account: str) -> AccountRisk:
        return self.risk.compute_account_risk(account)

    def is_liquidatable(self, account: str) -> bool:
        return self.risk.is_liquidatable(account)

    # ========================================================================
    # OPERATIONS (Mutating)
    # ========================================================================

    def apply_trade(self, buyer: str, seller: str, instrument_id: str,
                    quantity: int, price: int, *, caller: str) -> Tuple[int, int]:
        """
        Execute a matched trade: buyer goes long, seller goes short.

        Args:
            buyer: Account receiving +quantity
            seller: Account receiving -quantity
            instrument_id: Option series
            quantity: Number of contracts (> 0)
            price: Premium per contract in settlement-asset smallest units (> 0)
            caller: Must hold the matcher role

        Returns:
            (buyer_position, seller_position) after the trade

        Raises:
            Unauthorized, InvalidAmount, InvalidInstrument, InstrumentExpired,
            CloseOnlyViolation, TooManyOpenPositions, InsufficientBalance,
            MarginRequirementBreach
        """
        self.config.access.require(caller, ROLE_MATCHER)
        self._require_party(buyer)
        self._require_party(seller)
        if buyer == seller:
            raise InvalidAmount("buyer and seller must be different")
        self._require_positive(quantity, "quantity")
        self._require_positive(price, "price")
        delta = to_int256(quantity)

        instrument = self._instrument(instrument_id)
        if self.clock.now >= instrument.expiry:
            raise InstrumentExpired(f"{instrument_id} expired at {instrument.expiry}")
        self.config.asset_config(instrument.settlement_asset)
        held = self.book.position(seller, instrument_id)
        if held - delta < min(held, 0):
            self._require_margined_underlying(instrument)
        premium = checked_mul(quantity, price)
        max_open = self.config.params.max_open_instruments

        with self._atomic("apply_trade"):
            if not instrument.is_active:
                self._require_reducing(buyer, instrument_id, delta)
                self._require_reducing(seller, instrument_id, -delta)
            buyer_pos = self.book.apply_delta(buyer, instrument_id, delta, max_open)
            seller_pos = self.book.apply_delta(seller, instrument_id, -delta, max_open)
            self.ledger.transfer_between(instrument.settlement_asset, buyer, seller, premium,
                                         caller=self.engine_id)
            self._require_initial_margin(buyer)
            self._require_initial_margin(seller)

        if self.verbose:
            print(f"✓ TRADE {instrument_id}: {buyer} +{quantity} / {seller} -{quantity} @ {price}")
        return buyer_pos, seller_pos

    def settle_account(self, instrument_id: str, account: str) -> SettlementResult:
        """
        Cash-settle one account's position in an expired series.

        Longs are paid from the insurance account; shorts pay into it up to
        their balance, and any shortfall is booked as bad debt. A second call
        for the same (instrument, account) returns ALREADY_SETTLED and
        changes nothing.

        Raises:
            InstrumentNotExpired: Before expiry
            SettlementNotFinalized: If no final settlement price exists
            InsufficientInsurance: If the insurance account cannot pay a long
        """
        self._require_party(account)
        if (account, instrument_id) in self._settled:
            return SettlementResult(SettlementStatus.ALREADY_SETTLED, instrument_id, account)

        instrument = self._instrument(instrument_id)
        if self.clock.now < instrument.expiry:
            raise InstrumentNotExpired(f"{instrument_id} expires at {instrument.expiry}")
        info = self.registry.get_settlement_info(instrument_id)
        if not info.is_finalized or info.price <= 0:
            raise SettlementNotFinalized(f"{instrument_id} has no final settlement price")
        asset = instrument.settlement_asset
        decimals = self.config.asset_config(asset).decimals
        per_contract = payoff_per_contract(instrument, info.price, decimals, Rounding.FLOOR)

        with self._atomic("settle_account"):
            quantity = self.book.position(account, instrument_id)
            payoff = checked_mul(abs(quantity), per_contract)
            paid = collected = bad_debt = 0
            if quantity > 0 and payoff:
                insurance = self.ledger.claimable(INSURANCE_ACCOUNT, asset)
                if insurance < payoff:
                    raise InsufficientInsurance(
                        f"{asset}: insurance holds {insurance}, owes {account} {payoff}"
                    )
                self.ledger.transfer_between(asset, INSURANCE_ACCOUNT, account, payoff,
                                             caller=self.engine_id)
                paid = payoff
            elif quantity < 0 and payoff:
                collected = min(payoff, self.ledger.claimable(account, asset))
                if collected:
                    self.ledger.transfer_between(asset, account, INSURANCE_ACCOUNT, collected,
                                                 caller=self.engine_id)
                bad_debt = payoff - collected

            self.book.close(account, instrument_id)
            self._settled.add((account, instrument_id))
            totals = self.settlement_accounting(instrument_id)
            self._accounting[instrument_id] = replace(
                totals,
                collected=checked_add(totals.collected, collected),
                paid=checked_add(totals.paid, paid),
                bad_debt=checked_add(totals.bad_debt, bad_debt),
            )
            if bad_debt:
                self._bad_debt[asset] = checked_add(self.total_bad_debt(asset), bad_debt)

        if self.verbose:
            print(f"✓ SETTLED {instrument_id} {account}: qty={quantity} "
                  f"paid={paid} collected={collected} bad_debt={bad_debt}")
        return SettlementResult(
            status=SettlementStatus.SETTLED,
            instrument_id=instrument_id,
            account=account,
            quantity=quantity,
            payoff=payoff if quantity > 0 else -payoff,
            collected=collected,
            paid=paid,
            bad_debt=bad_debt,
        )

    def liquidate(self, liquidator: str, trader: str, instrument_ids: Sequence[str],
                  quantities: Sequence[int]) -> LiquidationResult:
        """
        Transfer part of an under-margined trader's short book to a liquidator.

        At most close_factor of the trader's total short contracts are closed,
        walking the requested (instrument, quantity) pairs in order. The
        liquidator takes over the shorts and is paid the liquidation price
        per contract plus a penalty seized from the trader's collateral.

        Raises:
            NotLiquidatable: If the trader is at or above the threshold
            NothingToLiquidate: If no requested entry closes anything
            OracleUnavailable: If a closed series cannot be priced
            LiquidationNotImproving: If the trader is not better off afterwards
            MarginRequirementBreach: If the liquidator ends below initial margin
        """
        self._require_party(liquidator)
        self._require_party(trader)
        if liquidator == trader:
            raise InvalidAmount("liquidator and trader must be different")
        if len(instrument_ids) != len(quantities):
            raise InvalidAmount("instrument_ids and quantities must have the same length")
        params = self.config.params
        base = self.config.base_asset()

        with self._atomic("liquidate"):
            before = self.risk.compute_account_risk(trader)
            ratio_before = self.risk.margin_ratio_bps(before)
            if before.maintenance_margin == 0 or ratio_before >= params.liquidation_threshold_bps:
                raise NotLiquidatable(f"{trader} margin ratio {ratio_before} bps")
            total_short = self.book.short_contracts(trader)
            if total_short == 0:
                raise NothingToLiquidate(f"{trader} has no short positions")

            allowance = max(1, total_short * params.close_factor_bps // BPS)
            fills: List[LiquidationFill] = []
            penalty_target = 0
            for instrument_id, requested in zip(instrument_ids, quantities):
                if allowance == 0:
                    break
                require_uint(requested, "quantity")
                short = -self.book.position(trader, instrument_id)
                if requested == 0 or short <= 0:
                    continue
                instrument = self._instrument(instrument_id)
                if self.clock.now >= instrument.expiry:
                    continue
                closing = min(requested, short, allowance)
                if not instrument.is_active:
                    # close-only: the liquidator can only net against an existing long
                    closing = min(closing, max(self.book.position(liquidator, instrument_id), 0))
                    if closing == 0:
                        continue
                fills.append(self._close_short(trader, liquidator, instrument, closing))
                allowance -= closing
                penalty_target = checked_add(penalty_target, self._penalty(instrument, closing))

            if not fills:
                raise NothingToLiquidate(f"no closable short among {list(instrument_ids)}")

            seized, seized_value = self._seize(trader, liquidator, penalty_target, base)

            after = self.risk.compute_account_risk(trader)
            self._require_improvement(trader, before, after)
            self._require_initial_margin(liquidator)

        contracts = sum(fill.quantity for fill in fills)
        if self.verbose:
            print(f"✓ LIQUIDATED {trader} -> {liquidator}: {contracts} contracts, "
                  f"penalty {seized_value}/{penalty_target}")
        return LiquidationResult(
            trader=trader,
            liquidator=liquidator,
            fills=tuple(fills),
            contracts_closed=contracts,
            penalty_target=penalty_target,
            penalty_seized_value=seized_value,
            seized=seized,
            risk_before=before,
            risk_after=after,
        )

    def fund_insurance(self, funder: str, asset: str, amount: int) -> int:
        """
        Move collateral from an account into the insurance account.

        Returns:
            The insurance account's new balance in `asset`
        """
        self._require_party(funder)
        self._require_positive(amount, "amount")
        with self._atomic("fund_insurance"):
            self.ledger.transfer_between(asset, funder, INSURANCE_ACCOUNT, amount,
                                         caller=self.engine_id)
            self._require_initial_margin(funder)
        return self.ledger.claimable(INSURANCE_ACCOUNT, asset)

    def withdraw(self, account: str, asset: str, amount: int) -> int:
        """Withdraw through the ledger; the installed guard enforces initial margin."""
        return self.ledger.withdraw(account, asset, amount)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @contextmanager
    def _atomic(self, operation: str) -> Iterator[None]:
        with self._guard(operation):
            snapshot = self._snapshot()
            try:
                with self.ledger.transaction():
                    yield
            except BaseException:
                self._restore(snapshot)
                if self.verbose:
                    print(f"✗ REJECTED {operation}: rolled back")
                raise

    def _snapshot(self) -> Tuple:
        return (
            self.book.snapshot(), set(self._settled),
            dict(self._accounting), dict(self._bad_debt),
        )

    def _restore(self, snapshot: Tuple) -> None:
        book, self._settled, self._accounting, self._bad_debt = snapshot
        self.book.restore(book)

    def _check_withdraw(self, account: str, asset: str, amount: int) -> None:
        if amount > self.ledger.claimable(account, asset):
            return
        preview = self.risk.preview_withdraw(account, asset, amount)
        if preview.would_breach:
            raise MarginRequirementBreach(
                f"{account} withdrawing {amount} {asset} breaches initial margin "
                f"(max {preview.max_withdrawable})"
            )

    def _instrument(self, instrument_id: str) -> Instrument:
        return require_canonical_contract_size(self.registry.get_series(instrument_id))

    def _require_reducing(self, account: str, instrument_id: str, delta: int) -> None:
        current = self.book.position(account, instrument_id)
        new = current + delta
        if current == 0 or abs(new) > abs(current) or (new != 0 and (new > 0) != (current > 0)):
            raise CloseOnlyViolation(
                f"{instrument_id} is close-only: {account} {current} -> {new}"
            )

    def _require_margined_underlying(self, instrument: Instrument) -> None:
        cfg = self.config.underlying_config(instrument.underlying)
        if (cfg is None or not cfg.enabled) and self.config.params.default_mm_floor_per_contract == 0:
            raise InvalidInstrument(
                f"{instrument.instrument_id}: no risk config for {instrument.underlying} "
                f"and no default maintenance floor"
            )

    def _require_initial_margin(self, account: str) -> None:
        risk = self.risk.compute_account_risk(account)
        if risk.equity < risk.initial_margin:
            raise MarginRequirementBreach(
                f"{account}: equity {risk.equity} < initial margin {risk.initial_margin}"
            )

    def _require_improvement(self, trader: str, before: AccountRisk, after: AccountRisk) -> None:
        if before.equity > 0:
            target = self.risk.margin_ratio_bps(before) + self.config.params.min_improvement_bps
            if self.risk.margin_ratio_bps(after) >= target:
                return
        elif after.maintenance_margin < before.maintenance_margin or after.equity > before.equity:
            return
        raise LiquidationNotImproving(
            f"{trader}: ratio {self.risk.margin_ratio_bps(before)} -> "
            f"{self.risk.margin_ratio_bps(after)} bps"
        )

    def _close_short(self, trader: str, liquidator: str, instrument: Instrument,
                     quantity: int) -> LiquidationFill:
        price = self.risk.liquidation_price(instrument)
        owed = checked_mul(quantity, price)
        max_open = self.config.params.max_open_instruments
        self.book.apply_delta(trader, instrument.instrument_id, quantity, max_open)
        self.book.apply_delta(liquidator, instrument.instrument_id, -quantity, max_open)
        asset = instrument.settlement_asset
        paid = min(owed, self.ledger.claimable(trader, asset))
        if paid:
            self.ledger.transfer_between(asset, trader, liquidator, paid, caller=self.engine_id)
        return LiquidationFill(instrument.instrument_id, quantity, price, owed, paid)

    def _penalty(self, instrument: Instrument, quantity: int) -> int:
        """mm floor × contracts × penalty rate, in base units."""
        params = self.config.params
        cfg = self.config.underlying_config(instrument.underlying)
        floor = cfg.mm_floor_per_contract if cfg is not None and cfg.enabled \
            else params.default_mm_floor_per_contract
        return apply_bps(checked_mul(floor, quantity), params.liquidation_penalty_bps)

    def _seize(self, trader: str, liquidator: str, target: int,
               base: str) -> Tuple[Dict[str, int], int]:
        """Execute the seizure plan; never takes more than the trader holds."""
        if target == 0:
            return {}, 0
        balances = {base: self.ledger.claimable(trader, base)}
        for asset in self.config.supported_assets():
            if asset != base:
                balances[asset] = self.ledger.claimable(trader, asset)

        seized: Dict[str, int] = {}
        value = 0
        for asset, amount in self.seizure_planner.plan(trader, target, balances):
            if value >= target:
                break
            self.config.asset_config(asset)
            require_uint(amount, "seizure amount")
            take = min(amount, self.ledger.claimable(trader, asset))
            if not take:
                continue
            leg_value = self.risk.value_in_base(asset, take, Rounding.FLOOR)
            if leg_value is None:
                continue
            self.ledger.transfer_between(asset, trader, liquidator, take, caller=self.engine_id)
            seized[asset] = seized.get(asset, 0) + take
            value = checked_add(value, leg_value)
        return seized, value

    @staticmethod
    def _require_party(account: str) -> None:
        if not isinstance(account, str) or not account.strip():
            raise InvalidAmount("account cannot be empty")
        if account == INSURANCE_ACCOUNT:
            raise InvalidAmount(f"{INSURANCE_ACCOUNT} cannot hold positions")

    @staticmethod
    def _require_positive(value: int, name: str) -> None:
        require_uint(value, name)
        if value == 0:
            raise InvalidAmount(f"{name} must be positive")

    def __repr__(self) -> str:
        return f"MarginEngine({self.engine_id}, {self.book!r})"
