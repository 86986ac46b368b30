"""
collateral_ledger.py - Multi-asset collateral ledger with yield participation

The CollateralLedger is the only component that mutates balances.

Key responsibilities:
    - Holds per (account, asset) balances split into an idle (liquid) part
      and strategy shares (a claim on an external yield adapter)
    - Keeps a cached claimable balance: claimable = idle + preview_redeem(shares),
      recomputed after every mutating call
    - Drains idle before strategy shares on every outflow
    - Executes every operation atomically (savepoint per operation, rollback
      on any exception) and logs every applied operation

External interaction:
    Adapter deposit/withdraw calls are never made mid-operation. Internal
    effects are applied first using the adapter's previews; the real calls are
    queued and flushed once per asset when the outermost transaction commits.
    The adapter must then return exactly its own preview, and may never burn
    more (or mint fewer) shares than were booked. Any deviation is an
    AdapterIntegrityError and the whole transaction is rolled back.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, Any

from .core import (
    BalanceKey, LogicalClock,
    InsufficientBalance, InvalidAmount, Unauthorized,
    AdapterIntegrityError, ZeroAdapter, StrategyHasShares,
)
from .config import ConfigStore, ROLE_RISK_ADMIN
from .fixed_point import checked_add, checked_sub, require_uint
from .guards import NonReentrant
from .yield_vault import YieldAdapter


# Signature of the hook consulted before a user withdrawal.
WithdrawGuard = Callable[[str, str, int], None]

_DEPOSIT = "deposit"
_WITHDRAW = "withdraw"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    Immutable audit record of one applied ledger operation.

    Attributes:
        sequence: Monotonic sequence within the ledger
        timestamp: Logical time the operation was applied
        kind: DEPOSIT, WITHDRAW, TRANSFER, TO_STRATEGY, TO_IDLE
        account: Account debited (or credited for deposits)
        counterparty: Account credited by a transfer, else None
        asset: Asset symbol
        amount: Asset amount moved
        shares: Strategy shares minted (+) or burned (-) by this operation
    """
    sequence: int
    timestamp: int
    kind: str
    account: str
    counterparty: Optional[str]
    asset: str
    amount: int
    shares: int = 0

    def __repr__(self) -> str:
        target = f"→{self.counterparty}" if self.counterparty else ""
        share_str = f", shares={self.shares:+d}" if self.shares else ""
        return f"LedgerEntry(#{self.sequence} {self.kind} {self.amount} {self.asset}: {self.account}{target}{share_str})"


@dataclass(slots=True)
class _PendingCall:
    asset: str
    direction: str
    assets: int
    shares: int


class CollateralLedger:
    """
    Collateral ledger with idle/strategy split and atomic operations.

    Thread Safety:
        Not thread-safe. Mutations are serialized by a non-reentrant guard;
        a nested mutating call raises ReentrancyError.

    Example:
        ledger = CollateralLedger(config, clock)
        ledger.deposit("alice", "USDC", 1_000_000_000)
        ledger.withdraw("alice", "USDC", 250_000_000)
        ledger.claimable("alice", "USDC")   # 750_000_000
    """

    def __init__(self, config: ConfigStore, clock: LogicalClock,
                 name: str = "collateral", verbose: bool = False):
        self.name = name
        self.config = config
        self.clock = clock
        self.verbose = verbose

        self._idle: Dict[BalanceKey, int] = {}
        self._shares: Dict[BalanceKey, int] = {}
        self._claimable: Dict[BalanceKey, int] = {}

        self._strategies: Dict[str, YieldAdapter] = {}
        # Shares booked to accounts, per asset
        self._total_shares: Dict[str, int] = {}
        # Shares the adapter actually minted to the ledger, per asset
        self._shares_held: Dict[str, int] = {}
        # Net shares moved by adapter calls already executed in the current commit
        self._flushed: Dict[str, int] = {}
        self._total_deposited: Dict[str, int] = {}
        self._total_withdrawn: Dict[str, int] = {}
        self._yield_opt_in: Set[str] = set()

        self.entries: List[LedgerEntry] = []
        self._next_sequence = 0

        self._engine: Optional[str] = None
        self._withdraw_guard: Optional[WithdrawGuard] = None

        self._guard = NonReentrant("ledger")
        self._tx_depth = 0
        self._pending: List[_PendingCall] = []
        self._touched: Set[BalanceKey] = set()

    # ========================================================================
    # READS
    # ========================================================================

    def idle_balance(self, account: str, asset: str) -> int:
        return self._idle.get((account, asset), 0)

    def strategy_shares(self, account: str, asset: str) -> int:
        return self._shares.get((account, asset), 0)

    def claimable(self, account: str, asset: str) -> int:
        """Cached idle + preview_redeem(shares), as of the last sync."""
        return self._claimable.get((account, asset), 0)

    def balances(self, account: str) -> Dict[str, int]:
        """Non-zero claimable balances of an account."""
        return {
            asset: amount
            for (acct, asset), amount in self._claimable.items()
            if acct == account and amount
        }

    def accounts(self) -> Set[str]:
        return {acct for (acct, _) in self._claimable} | {acct for (acct, _) in self._shares}

    def total_claimable(self, asset: str) -> int:
        """Sum of claimable balances, accumulated in a deterministic order."""
        return sum(
            amount for (acct, a), amount in sorted(self._claimable.items()) if a == asset
        )

    def total_shares(self, asset: str) -> int:
        return self._total_shares.get(asset, 0)

    def total_deposited(self, asset: str) -> int:
        return self._total_deposited.get(asset, 0)

    def total_withdrawn(self, asset: str) -> int:
        return self._total_withdrawn.get(asset, 0)

    def strategy(self, asset: str) -> Optional[YieldAdapter]:
        return self._strategies.get(asset)

    def is_opted_in(self, account: str) -> bool:
        return account in self._yield_opt_in

    @property
    def engine(self) -> Optional[str]:
        return self._engine

    def verify_conservation(self, asset: str) -> Dict[str, Any]:
        """
        Check that claimable balances add up to net deposits.

        Holds exactly while no yield accrues and no strategy rounding occurs.

        Returns:
            Dict with keys 'valid', 'total_claimable', 'net_deposited', 'difference'
        """
        total = self.total_claimable(asset)
        net = self.total_deposited(asset) - self.total_withdrawn(asset)
        return {
            'valid': total == net,
            'total_claimable': total,
            'net_deposited': net,
            'difference': total - net,
        }

    def verify_share_backing(self, asset: str) -> Dict[str, Any]:
        """
        Check that booked shares never exceed shares actually held.

        Surplus is rounding dust from netted adapter calls; it belongs to
        nobody and stays with the protocol.
        """
        booked = self.total_shares(asset)
        held = self._shares_held.get(asset, 0)
        per_account = sum(s for (acct, a), s in self._shares.items() if a == asset)
        return {
            'valid': booked <= held and per_account == booked,
            'booked': booked,
            'held': held,
            'surplus': held - booked,
        }

    # ========================================================================
    # CONFIGURATION (Mutating, guarded)
    # ========================================================================

    def bind_engine(self, caller: str, engine_id: str,
                    withdraw_guard: Optional[WithdrawGuard] = None) -> None:
        """Designate the only caller allowed to use transfer_between()."""
        self.config.access.require(caller)
        if not engine_id:
            raise InvalidAmount("engine_id cannot be empty")
        self._engine = engine_id
        self._withdraw_guard = withdraw_guard

    def set_strategy(self, caller: str, asset: str, adapter: Optional[YieldAdapter]) -> None:
        """
        Configure (or clear, with None) the yield adapter for an asset.

        Raises:
            StrategyHasShares: If the current strategy still backs booked shares
        """
        self.config.access.require(caller, ROLE_RISK_ADMIN)
        self.config.asset_config(asset)
        with self._guard("set_strategy"):
            if self.total_shares(asset) > 0:
                raise StrategyHasShares(
                    f"{asset}: {self.total_shares(asset)} shares outstanding in current strategy"
                )
            if adapter is None:
                self._strategies.pop(asset, None)
            else:
                self._strategies[asset] = adapter
            self._shares_held[asset] = 0
            if self.verbose:
                print(f"📝 Strategy for {asset}: {adapter!r}")

    def set_yield_opt_in(self, account: str, enabled: bool) -> None:
        """Opt in/out of routing future deposits; existing shares are left as they are."""
        self._require_account(account)
        if enabled:
            self._yield_opt_in.add(account)
        else:
            self._yield_opt_in.discard(account)

    # ========================================================================
    # OPERATIONS (Mutating)
    # ========================================================================

    def deposit(self, account: str, asset: str, amount: int) -> int:
        """
        Credit `amount` to the account's idle balance.

        If the account opted into yield and the asset has a strategy, the
        deposit is routed into strategy shares straight away.

        Returns:
            The account's new claimable balance
        """
        self._require_account(account)
        self._require_positive(amount)
        self.config.asset_config(asset)
        with self._guard("deposit"), self.transaction():
            key = (account, asset)
            self._idle[key] = checked_add(self._idle.get(key, 0), amount)
            self._total_deposited[asset] = checked_add(self.total_deposited(asset), amount)
            shares = 0
            if account in self._yield_opt_in and asset in self._strategies:
                shares = self._route_to_strategy(key, amount)
            self._sync(key)
            self._log("DEPOSIT", account, None, asset, amount, shares)
        return self.claimable(account, asset)

    def withdraw(self, account: str, asset: str, amount: int) -> int:
        """
        Remove `amount` from the ledger, idle first then strategy shares.

        Raises:
            InsufficientBalance: If idle plus redeemable shares cannot cover amount
            MarginRequirementBreach: If the installed withdraw guard rejects it

        Returns:
            The account's new claimable balance
        """
        self._require_account(account)
        self._require_positive(amount)
        with self._guard("withdraw"), self.transaction():
            if self._withdraw_guard is not None:
                self._withdraw_guard(account, asset, amount)
            shares = self._debit((account, asset), amount)
            self._total_withdrawn[asset] = checked_add(self.total_withdrawn(asset), amount)
            self._sync((account, asset))
            self._log("WITHDRAW", account, None, asset, amount, -shares)
        return self.claimable(account, asset)

    def transfer_between(self, asset: str, src: str, dst: str, amount: int, *, caller: str) -> None:
        """
        Move `amount` of `asset` from src to dst.

        Only the bound engine may call this. The debit follows the same
        idle-then-strategy rule as withdraw(); dst is credited idle.

        Raises:
            Unauthorized: If caller is not the bound engine
            InvalidAmount: If src == dst or amount is zero
            UnsupportedAsset: If the asset is not supported
            InsufficientBalance: If src cannot cover amount
        """
        if self._engine is None or caller != self._engine:
            raise Unauthorized(f"{caller} is not the position engine")
        self._require_account(src)
        self._require_account(dst)
        if src == dst:
            raise InvalidAmount("Source and dest must be different")
        self._require_positive(amount)
        self.config.asset_config(asset)
        with self._guard("transfer_between"), self.transaction():
            shares = self._debit((src, asset), amount)
            dst_key = (dst, asset)
            self._idle[dst_key] = checked_add(self._idle.get(dst_key, 0), amount)
            self._sync((src, asset))
            self._sync(dst_key)
            self._log("TRANSFER", src, dst, asset, amount, -shares)

    def move_to_strategy(self, account: str, asset: str, amount: int) -> int:
        """
        Route idle balance into strategy shares.

        Returns:
            Shares minted
        """
        self._require_account(account)
        self._require_positive(amount)
        self.config.asset_config(asset)
        with self._guard("move_to_strategy"), self.transaction():
            key = (account, asset)
            if asset not in self._strategies:
                raise ZeroAdapter(f"{asset} has no strategy configured")
            idle = self._idle.get(key, 0)
            if idle < amount:
                raise InsufficientBalance(f"{account} {asset}: idle {idle} < {amount}")
            shares = self._route_to_strategy(key, amount)
            if shares == 0:
                raise InvalidAmount(f"{amount} {asset} is too small to mint a share")
            self._sync(key)
            self._log("TO_STRATEGY", account, None, asset, amount, shares)
            return shares

    def move_to_idle(self, account: str, asset: str, amount: int) -> int:
        """
        Burn enough strategy shares to bring `amount` back to idle.

        Returns:
            Shares burned
        """
        self._require_account(account)
        self._require_positive(amount)
        with self._guard("move_to_idle"), self.transaction():
            key = (account, asset)
            shares = self._burn_for(key, amount)
            self._idle[key] = checked_add(self._idle.get(key, 0), amount)
            self._sync(key)
            self._log("TO_IDLE", account, None, asset, amount, -shares)
            return shares

    def sync(self, account: str, asset: str) -> int:
        """Recompute the cached claimable balance (picks up strategy yield)."""
        with self._guard("sync"):
            self._sync((account, asset))
            return self.claimable(account, asset)

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    @contextmanager
    def transaction(self) -> Iterator[CollateralLedger]:
        """
        Savepoint scope.

        Any exception restores the state captured on entry. When the
        outermost scope exits cleanly, queued adapter calls are flushed;
        a failing flush rolls the whole transaction back.
        """
        snapshot = self._snapshot()
        outer = self._tx_depth == 0
        self._tx_depth += 1
        try:
            yield self
            if outer:
                self._commit()
        except BaseException:
            self._restore(snapshot)
            if outer:
                self._reapply_flushed()
            raise
        finally:
            if outer:
                self._flushed.clear()
            self._tx_depth -= 1

    def _snapshot(self) -> Tuple:
        return (
            dict(self._idle), dict(self._shares), dict(self._claimable),
            dict(self._total_shares), dict(self._shares_held),
            dict(self._total_deposited), dict(self._total_withdrawn),
            len(self.entries), self._next_sequence,
            len(self._pending), set(self._touched),
        )

    def _restore(self, snapshot: Tuple) -> None:
        (self._idle, self._shares, self._claimable,
         self._total_shares, self._shares_held,
         self._total_deposited, self._total_withdrawn,
         n_entries, self._next_sequence,
         n_pending, self._touched) = snapshot
        del self.entries[n_entries:]
        del self._pending[n_pending:]

    def _reapply_flushed(self) -> None:
        for asset, delta in self._flushed.items():
            self._shares_held[asset] = self._shares_held.get(asset, 0) + delta
            if self.verbose and delta:
                print(f"⚠️  ADAPTER {asset}: {delta:+} shares moved before rollback")

    def _commit(self) -> None:
        try:
            if self._pending:
                if self._guard.locked:
                    self._flush_pending()
                else:
                    with self._guard("commit"):
                        self._flush_pending()
                for key in sorted(self._touched):
                    self._sync(key)
        finally:
            self._pending.clear()
            self._touched.clear()

    def _flush_pending(self) -> None:
        """
        Net queued adapter calls per (asset, direction) and execute them.

        Every group's preview is checked against its booked shares before the
        first adapter call. Calls that complete are recorded in _flushed so a
        later failure cannot roll back share counts the adapters already moved.
        """
        groups: Dict[Tuple[str, str], List[int]] = {}
        for call in self._pending:
            totals = groups.setdefault((call.asset, call.direction), [0, 0])
            totals[0] += call.assets
            totals[1] += call.shares

        plan = []
        for (asset, direction), (assets, booked) in groups.items():
            adapter = self._strategies.get(asset)
            if adapter is None:
                raise ZeroAdapter(f"{asset}: strategy removed with calls pending")
            if direction == _DEPOSIT:
                expected = adapter.preview_deposit(assets)
                if expected < booked:
                    raise AdapterIntegrityError(
                        f"{asset}: deposit preview {expected} below booked {booked}"
                    )
            else:
                expected = adapter.preview_withdraw(assets)
                if expected > booked:
                    raise AdapterIntegrityError(
                        f"{asset}: withdraw preview {expected} above booked {booked}"
                    )
            plan.append((asset, direction, assets, booked, expected, adapter))

        for asset, direction, assets, booked, expected, adapter in plan:
            if direction == _DEPOSIT:
                actual = adapter.deposit(assets)
                if actual != expected:
                    raise AdapterIntegrityError(
                        f"{asset}: deposit minted {actual}, preview {expected}, booked {booked}"
                    )
                self._shares_held[asset] = checked_add(self._shares_held.get(asset, 0), actual)
                self._flushed[asset] = self._flushed.get(asset, 0) + actual
            else:
                actual = adapter.withdraw(assets, self.name)
                if actual != expected:
                    raise AdapterIntegrityError(
                        f"{asset}: withdraw burned {actual}, preview {expected}, booked {booked}"
                    )
                self._shares_held[asset] = checked_sub(self._shares_held.get(asset, 0), actual)
                self._flushed[asset] = self._flushed.get(asset, 0) - actual
            if self.verbose:
                print(f"✓ ADAPTER {direction} {assets} {asset}: shares {actual}")

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _route_to_strategy(self, key: BalanceKey, amount: int) -> int:
        """Convert `amount` of idle into shares; returns shares booked (0 = left idle)."""
        account, asset = key
        adapter = self._strategies[asset]
        shares = require_uint(adapter.preview_deposit(amount), "preview_deposit")
        if shares == 0:
            return 0
        self._idle[key] = checked_sub(self._idle.get(key, 0), amount)
        self._shares[key] = checked_add(self._shares.get(key, 0), shares)
        self._total_shares[asset] = checked_add(self.total_shares(asset), shares)
        self._pending.append(_PendingCall(asset, _DEPOSIT, amount, shares))
        self._touched.add(key)
        return shares

    def _burn_for(self, key: BalanceKey, assets: int) -> int:
        """Burn the shares (rounded up) that redeem `assets`; returns shares burned."""
        account, asset = key
        held = self._shares.get(key, 0)
        adapter = self._strategies.get(asset)
        if adapter is None:
            if held:
                raise ZeroAdapter(f"{account} holds {held} {asset} shares but no strategy is set")
            raise InsufficientBalance(f"{account} {asset}: short by {assets}")
        shares = require_uint(adapter.preview_withdraw(assets), "preview_withdraw")
        if shares > held:
            raise InsufficientBalance(
                f"{account} {asset}: needs {shares} shares, holds {held}"
            )
        self._shares[key] = held - shares
        self._total_shares[asset] = checked_sub(self.total_shares(asset), shares)
        self._pending.append(_PendingCall(asset, _WITHDRAW, assets, shares))
        self._touched.add(key)
        return shares

    def _debit(self, key: BalanceKey, amount: int) -> int:
        """Take `amount` out of idle first, then shares. Returns shares burned."""
        idle = self._idle.get(key, 0)
        if idle >= amount:
            self._idle[key] = idle - amount
            return 0
        shares = self._burn_for(key, amount - idle)
        self._idle[key] = 0
        return shares

    def _sync(self, key: BalanceKey) -> None:
        account, asset = key
        idle = self._idle.get(key, 0)
        shares = self._shares.get(key, 0)
        if shares:
            adapter = self._strategies.get(asset)
            if adapter is None:
                raise ZeroAdapter(f"{account} holds {shares} {asset} shares but no strategy is set")
            value = checked_add(idle, require_uint(adapter.preview_redeem(shares), "preview_redeem"))
        else:
            value = idle
        if value:
            self._claimable[key] = value
        else:
            self._claimable.pop(key, None)
        if not idle:
            self._idle.pop(key, None)
        if not shares:
            self._shares.pop(key, None)

    def _log(self, kind: str, account: str, counterparty: Optional[str],
             asset: str, amount: int, shares: int) -> None:
        entry = LedgerEntry(
            sequence=self._next_sequence,
            timestamp=self.clock.now,
            kind=kind,
            account=account,
            counterparty=counterparty,
            asset=asset,
            amount=amount,
            shares=shares,
        )
        self._next_sequence += 1
        self.entries.append(entry)
        if self.verbose:
            print(f"✓ {entry!r}")

    @staticmethod
    def _require_account(account: str) -> None:
        if not isinstance(account, str) or not account.strip():
            raise InvalidAmount("account cannot be empty")

    @staticmethod
    def _require_positive(amount: int) -> None:
        require_uint(amount, "amount")
        if amount == 0:
            raise InvalidAmount("amount must be positive")

    def __repr__(self) -> str:
        return (f"CollateralLedger({self.name}, {len(self.accounts())} accounts, "
                f"{len(self.entries)} entries)")
