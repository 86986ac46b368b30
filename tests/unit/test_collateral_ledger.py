"""
test_collateral_ledger.py - Unit tests for the collateral ledger

Covers:
- Deposits, withdrawals and engine-only transfers
- Idle/strategy split and yield participation
- Adapter integrity checks and rollback
- Savepoints and re-entrancy
"""

import pytest

from optionmargin import (
    SimpleYieldVault,
    InsufficientBalance, InvalidAmount, Unauthorized, UnsupportedAsset,
    AdapterIntegrityError, ZeroAdapter, StrategyHasShares, ReentrancyError,
)

from tests.fakes import (
    ADMIN, ENGINE_ID, T0, InflatingVault, GreedyVault, ShiftingPreviewVault, CallbackVault,
)


def _with_vault(ledger, vault=None):
    vault = vault or SimpleYieldVault("USDC")
    ledger.set_strategy(ADMIN, "USDC", vault)
    return vault


# =============================================================================
# BASIC OPERATIONS
# =============================================================================

class TestDeposit:

    def test_deposit_credits_idle(self, ledger):
        assert ledger.deposit("alice", "USDC", 1_000) == 1_000
        assert ledger.idle_balance("alice", "USDC") == 1_000
        assert ledger.strategy_shares("alice", "USDC") == 0
        assert ledger.total_deposited("USDC") == 1_000

    def test_deposit_is_logged(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        entry = ledger.entries[-1]
        assert entry.kind == "DEPOSIT"
        assert entry.amount == 1_000
        assert entry.timestamp == T0
        assert entry.sequence == 0

    def test_unsupported_asset(self, ledger):
        with pytest.raises(UnsupportedAsset):
            ledger.deposit("alice", "DOGE", 1)

    @pytest.mark.parametrize("account, amount", [("", 1), ("  ", 1), ("alice", 0), ("alice", -5)])
    def test_invalid_inputs(self, ledger, account, amount):
        with pytest.raises(InvalidAmount):
            ledger.deposit(account, "USDC", amount)
        assert ledger.entries == []


class TestWithdraw:

    def test_withdraw(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        assert ledger.withdraw("alice", "USDC", 400) == 600
        assert ledger.total_withdrawn("USDC") == 400
        assert ledger.verify_conservation("USDC")["valid"]

    def test_overdraw_changes_nothing(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(InsufficientBalance):
            ledger.withdraw("alice", "USDC", 1_001)
        assert ledger.claimable("alice", "USDC") == 1_000
        assert ledger.total_withdrawn("USDC") == 0
        assert len(ledger.entries) == 1

    def test_withdraw_guard_can_veto(self, ledger):
        def veto(account, asset, amount):
            raise RuntimeError(f"{account} blocked")

        ledger.bind_engine(ADMIN, ENGINE_ID, veto)
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(RuntimeError):
            ledger.withdraw("alice", "USDC", 1)
        assert ledger.claimable("alice", "USDC") == 1_000


class TestTransferBetween:

    def test_only_bound_engine(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(Unauthorized):
            ledger.transfer_between("USDC", "alice", "bob", 1, caller="alice")

    def test_bind_requires_owner(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.bind_engine("mallory", "mallory_engine")

    def test_same_account_rejected(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(InvalidAmount):
            ledger.transfer_between("USDC", "alice", "alice", 1, caller=ENGINE_ID)

    def test_transfer_moves_claimable(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        ledger.transfer_between("USDC", "alice", "bob", 300, caller=ENGINE_ID)
        assert ledger.balances("alice") == {"USDC": 700}
        assert ledger.balances("bob") == {"USDC": 300}
        assert ledger.entries[-1].counterparty == "bob"

    def test_transfer_insufficient(self, ledger):
        ledger.deposit("alice", "USDC", 10)
        with pytest.raises(InsufficientBalance):
            ledger.transfer_between("USDC", "alice", "bob", 11, caller=ENGINE_ID)
        assert ledger.claimable("bob", "USDC") == 0


# =============================================================================
# YIELD STRATEGY
# =============================================================================

class TestYieldParticipation:

    def test_opted_in_deposit_routes_to_strategy(self, ledger):
        vault = _with_vault(ledger)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        assert ledger.idle_balance("alice", "USDC") == 0
        assert ledger.strategy_shares("alice", "USDC") == 1_000
        assert ledger.claimable("alice", "USDC") == 1_000
        assert vault.total_assets() == 1_000
        assert ledger.verify_share_backing("USDC") == {
            'valid': True, 'booked': 1_000, 'held': 1_000, 'surplus': 0,
        }

    def test_not_opted_in_stays_idle(self, ledger):
        vault = _with_vault(ledger)
        ledger.deposit("alice", "USDC", 1_000)
        assert ledger.idle_balance("alice", "USDC") == 1_000
        assert vault.total_assets() == 0

    def test_yield_shows_up_after_sync(self, ledger):
        vault = _with_vault(ledger)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        vault.accrue(100)
        assert ledger.claimable("alice", "USDC") == 1_000
        assert ledger.sync("alice", "USDC") == 1_099

    def test_withdraw_burns_shares_rounded_up(self, ledger):
        vault = _with_vault(ledger)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        vault.accrue(100)
        ledger.sync("alice", "USDC")
        assert ledger.withdraw("alice", "USDC", 500) == 599
        assert ledger.strategy_shares("alice", "USDC") == 545
        assert vault.total_assets() == 600
        assert ledger.verify_share_backing("USDC")["valid"]

    def test_outflow_drains_idle_first(self, ledger):
        _with_vault(ledger)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        ledger.set_yield_opt_in("alice", False)
        ledger.deposit("alice", "USDC", 100)
        ledger.transfer_between("USDC", "alice", "bob", 300, caller=ENGINE_ID)
        assert ledger.idle_balance("alice", "USDC") == 0
        assert ledger.strategy_shares("alice", "USDC") == 800
        assert ledger.claimable("alice", "USDC") == 800
        assert ledger.idle_balance("bob", "USDC") == 300

    def test_move_to_strategy_and_back(self, ledger):
        _with_vault(ledger)
        ledger.deposit("alice", "USDC", 1_000)
        assert ledger.move_to_strategy("alice", "USDC", 600) == 600
        assert ledger.idle_balance("alice", "USDC") == 400
        assert ledger.move_to_idle("alice", "USDC", 200) == 200
        assert ledger.idle_balance("alice", "USDC") == 600
        assert ledger.claimable("alice", "USDC") == 1_000

    def test_move_to_strategy_without_adapter(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(ZeroAdapter):
            ledger.move_to_strategy("alice", "USDC", 1)

    def test_move_too_small_to_mint(self, ledger):
        vault = _with_vault(ledger)
        vault.deposit(10)
        vault.accrue(1_000)
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(InvalidAmount):
            ledger.move_to_strategy("alice", "USDC", 1)
        assert ledger.idle_balance("alice", "USDC") == 1_000

    def test_tiny_opted_in_deposit_stays_idle(self, ledger):
        vault = _with_vault(ledger)
        vault.deposit(10)
        vault.accrue(1_000)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1)
        assert ledger.idle_balance("alice", "USDC") == 1
        assert ledger.strategy_shares("alice", "USDC") == 0

    def test_strategy_swap_blocked_while_shares_outstanding(self, ledger):
        _with_vault(ledger)
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(StrategyHasShares):
            ledger.set_strategy(ADMIN, "USDC", SimpleYieldVault("USDC"))
        ledger.withdraw("alice", "USDC", 1_000)
        ledger.set_strategy(ADMIN, "USDC", None)
        assert ledger.strategy("USDC") is None

    def test_set_strategy_requires_risk_admin(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.set_strategy("alice", "USDC", SimpleYieldVault("USDC"))

    def test_same_direction_calls_are_netted(self, ledger):
        vault = _with_vault(ledger)
        for account in ("alice", "bob"):
            ledger.set_yield_opt_in(account, True)
        with ledger.transaction():
            ledger.deposit("alice", "USDC", 333)
            ledger.deposit("bob", "USDC", 667)
            assert vault.total_assets() == 0
        assert vault.total_assets() == 1_000
        assert ledger.verify_share_backing("USDC")["valid"]


# =============================================================================
# ADAPTER INTEGRITY
# =============================================================================

class TestAdapterIntegrity:

    def test_over_minting_adapter_rolls_back(self, ledger):
        _with_vault(ledger, InflatingVault("USDC"))
        ledger.set_yield_opt_in("alice", True)
        with pytest.raises(AdapterIntegrityError):
            ledger.deposit("alice", "USDC", 1_000)
        assert ledger.claimable("alice", "USDC") == 0
        assert ledger.total_deposited("USDC") == 0
        assert ledger.total_shares("USDC") == 0
        assert ledger.entries == []

    def test_over_burning_adapter_rolls_back(self, ledger):
        _with_vault(ledger, GreedyVault("USDC"))
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(AdapterIntegrityError):
            ledger.withdraw("alice", "USDC", 500)
        assert ledger.claimable("alice", "USDC") == 1_000
        assert ledger.strategy_shares("alice", "USDC") == 1_000

    def test_mint_below_booked_rejected(self, ledger):
        _with_vault(ledger, ShiftingPreviewVault("USDC"))
        ledger.set_yield_opt_in("alice", True)
        with pytest.raises(AdapterIntegrityError):
            ledger.deposit("alice", "USDC", 1_000)
        assert ledger.strategy_shares("alice", "USDC") == 0

    def test_previews_checked_for_every_asset_before_any_call(self, ledger):
        usdc_vault = _with_vault(ledger)
        ledger.set_strategy(ADMIN, "WETH", ShiftingPreviewVault("WETH"))
        ledger.set_yield_opt_in("alice", True)
        with pytest.raises(AdapterIntegrityError):
            with ledger.transaction():
                ledger.deposit("alice", "USDC", 1_000)
                ledger.deposit("alice", "WETH", 1_000)
        assert usdc_vault.total_assets() == 0
        assert ledger.verify_share_backing("USDC")["held"] == 0
        assert ledger.claimable("alice", "USDC") == 0

    def test_held_shares_track_calls_made_before_a_failure(self, ledger):
        usdc_vault = _with_vault(ledger)
        ledger.set_strategy(ADMIN, "WETH", GreedyVault("WETH"))
        ledger.set_yield_opt_in("alice", True)
        ledger.deposit("alice", "USDC", 1_000)
        ledger.deposit("alice", "WETH", 1_000)

        with pytest.raises(AdapterIntegrityError):
            with ledger.transaction():
                ledger.withdraw("alice", "USDC", 400)
                ledger.withdraw("alice", "WETH", 400)

        assert ledger.claimable("alice", "USDC") == 1_000
        assert ledger.strategy_shares("alice", "USDC") == 1_000
        # the USDC vault already burned 400 shares; the books say so
        backing = ledger.verify_share_backing("USDC")
        assert backing["held"] == usdc_vault.total_shares() == 600
        assert not backing["valid"]
        assert ledger.verify_share_backing("WETH")["held"] == 1_000
        assert ledger.strategy_shares("alice", "USDC") == 0


# =============================================================================
# TRANSACTIONS AND RE-ENTRANCY
# =============================================================================

class TestTransactions:

    def test_savepoint_rolls_back_everything(self, ledger):
        ledger.deposit("alice", "USDC", 1_000)
        with pytest.raises(RuntimeError):
            with ledger.transaction():
                ledger.deposit("bob", "USDC", 500)
                ledger.transfer_between("USDC", "alice", "bob", 200, caller=ENGINE_ID)
                raise RuntimeError("abort")
        assert ledger.balances("alice") == {"USDC": 1_000}
        assert ledger.balances("bob") == {}
        assert len(ledger.entries) == 1
        assert ledger.total_deposited("USDC") == 1_000

    def test_nested_mutation_from_adapter_rejected(self, ledger):
        vault = _with_vault(ledger, CallbackVault(
            "USDC", lambda: ledger.deposit("mallory", "USDC", 1)))
        ledger.set_yield_opt_in("alice", True)
        with pytest.raises(ReentrancyError):
            ledger.deposit("alice", "USDC", 1_000)
        assert ledger.claimable("alice", "USDC") == 0
        assert ledger.claimable("mallory", "USDC") == 0
        assert vault.total_assets() == 0

    def test_guard_released_after_failure(self, ledger):
        with pytest.raises(InsufficientBalance):
            ledger.withdraw("alice", "USDC", 1)
        ledger.deposit("alice", "USDC", 1)
        assert ledger.claimable("alice", "USDC") == 1
