#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Margin Engine Step by Step

This is a pedagogical demonstration of how the option margin engine works.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Foundation     - Configuration, collateral, the first short option
  4-6:   Margin         - Rejected trades, guarded withdrawals, yield
  7-8:   Stress         - A 40% rally, liquidation, oracle outages
  9-10:  Expiry         - Settlement, idempotency, conservation proof

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
import sys

from optionmargin import (
    # Configuration
    ConfigStore, RiskParameters, AssetConfig, UnderlyingRiskConfig, ROLE_MATCHER,
    # Collaborators
    LogicalClock, StaticPriceOracle, InMemoryInstrumentRegistry, Instrument,
    SimpleYieldVault,
    # Engine
    MarginEngine, INSURANCE_ACCOUNT, MarginEngineError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: int = 1_700_000_000
    expiry_days: int = 7

    # Prices are 1e8-scaled, amounts in smallest units
    initial_spot: int = 2_500 * 10**8
    rally_spot: int = 3_500 * 10**8          # +40%
    settlement_price: int = 4_400 * 10**8
    strike: int = 4_200 * 10**8

    alice_usdc: int = 1_000 * 10**6
    bob_usdc: int = 1_000 * 10**6
    liz_usdc: int = 3_000 * 10**6
    carol_weth: int = 2 * 10**18
    insurance_usdc: int = 5_000 * 10**6

    contracts: int = 2
    premium: int = 10 * 10**6
    mm_floor: int = 50 * 10**6


CONFIG = DemoConfig()
SERIES = "WETH-4200-C"
ADMIN = "admin"
MATCHER = "matcher"

# Global state for interactive mode
QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def usdc(amount: int) -> str:
    return f"{amount / 10**6:,.6f} USDC"


def show_risk(engine: MarginEngine, account: str):
    risk = engine.account_risk(account)
    ratio = engine.risk.margin_ratio_bps(risk)
    print(f"{account:>8}: equity {usdc(risk.equity):>22}  MM {usdc(risk.maintenance_margin):>20}"
          f"  IM {usdc(risk.initial_margin):>20}  ratio {ratio} bps")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_configure():
    """Build configuration, oracle, series catalog and the engine."""
    step_header(1, "Configuration and Wiring",
        "Every component receives its configuration explicitly.")

    print("""
    The engine is assembled from explicit pieces:

    1. ConfigStore   - assets, haircuts, shocks, risk parameters, roles
    2. PriceOracle   - WETH/USDC price, validated by an OracleReader
    3. Registry      - the option series catalog (external)
    4. MarginEngine  - positions, margin, settlement, liquidation
                       on top of a CollateralLedger it creates and binds
    """)

    wait_for_enter()

    clock = LogicalClock(CONFIG.start_time)
    config = ConfigStore(owner=ADMIN, params=RiskParameters(base_asset="USDC"))
    config.set_asset(ADMIN, "USDC", AssetConfig(supported=True, decimals=6))
    config.set_asset(ADMIN, "WETH", AssetConfig(supported=True, decimals=18, haircut_bps=1_000))
    config.set_underlying(ADMIN, "WETH", UnderlyingRiskConfig(
        mm_floor_per_contract=CONFIG.mm_floor, shock_up_bps=3_000, shock_down_bps=3_000,
    ))
    config.access.grant(ADMIN, ROLE_MATCHER, MATCHER)

    oracle = StaticPriceOracle()
    oracle.set_price("WETH", "USDC", CONFIG.initial_spot, clock.now)

    registry = InMemoryInstrumentRegistry()
    expiry = clock.now + CONFIG.expiry_days * 86_400
    registry.add_series(Instrument(SERIES, "WETH", "USDC", expiry, CONFIG.strike, True))

    engine = MarginEngine.create(config, clock, oracle, registry, caller=ADMIN, verbose=True)

    section_header("Initial State")
    print(f"Config:   {config!r}")
    print(f"Oracle:   {oracle!r}")
    print(f"Registry: {registry!r}")
    print(f"Engine:   {engine!r}")
    print(f"Ledger:   {engine.ledger!r}")

    return engine, clock, oracle, registry


def step_02_deposits(engine: MarginEngine):
    """Fund accounts with base and non-base collateral."""
    step_header(2, "Collateral",
        "Deposits are credited idle; non-base collateral is valued with a haircut.")

    ledger = engine.ledger
    print(">>> ledger.deposit('alice', 'USDC', 1_000 USDC) ...")
    ledger.deposit("alice", "USDC", CONFIG.alice_usdc)
    ledger.deposit("bob", "USDC", CONFIG.bob_usdc)
    ledger.deposit("liz", "USDC", CONFIG.liz_usdc)
    ledger.deposit("carol", "WETH", CONFIG.carol_weth)
    ledger.deposit(INSURANCE_ACCOUNT, "USDC", CONFIG.insurance_usdc)

    section_header("Equity")
    for account in ("alice", "carol"):
        show_risk(engine, account)

    section_header("Key Insight")
    print("""
    carol's 2 WETH at 2,500 are worth 5,000 USDC, but only 4,500 count as
    equity: the 10% haircut is applied before any margin check.
    """)


def step_03_first_short(engine: MarginEngine):
    """Write two calls and look at the margin they need."""
    step_header(3, "The First Short",
        "Shorts carry maintenance margin: max(shocked intrinsic, floor).")

    print(f">>> engine.apply_trade('bob', 'alice', '{SERIES}', 2, 10 USDC, caller='matcher')")
    engine.apply_trade("bob", "alice", SERIES, CONFIG.contracts, CONFIG.premium, caller=MATCHER)

    section_header("Risk")
    show_risk(engine, "alice")
    show_risk(engine, "bob")

    section_header("Key Insight")
    print("""
    At 2,500 the call is far out of the money even after a 30% shock
    (3,250 < 4,200), so each contract is margined at the 50 USDC floor.
    Initial margin is 110% of maintenance.
    """)


# ============================================================================
# PHASE 2: MARGIN (Steps 4-6)
# ============================================================================

def step_04_rejected_trade(engine: MarginEngine):
    """A trade that would breach initial margin is rolled back entirely."""
    step_header(4, "Rejected Trades",
        "A trade that leaves either party below initial margin changes nothing.")

    before = engine.ledger.balances("alice")
    print(f">>> engine.apply_trade('bob', 'alice', '{SERIES}', 25, 10 USDC, caller='matcher')")
    try:
        engine.apply_trade("bob", "alice", SERIES, 25, CONFIG.premium, caller=MATCHER)
    except MarginEngineError as e:
        print(f"Rejected: {type(e).__name__}: {e}")

    section_header("Result")
    print(f"alice position: {engine.position('alice', SERIES)} (unchanged)")
    print(f"alice balances: {engine.ledger.balances('alice')} == {before}")


def step_05_withdrawals(engine: MarginEngine):
    """Withdrawals are previewed against initial margin."""
    step_header(5, "Guarded Withdrawals",
        "Collateral can leave only while the account stays above initial margin.")

    preview = engine.risk.preview_withdraw("alice", "USDC", CONFIG.alice_usdc)
    print(f"Max withdrawable: {usdc(preview.max_withdrawable)}")
    print(f"Withdrawing everything would breach: {preview.would_breach}")

    print("\n>>> engine.withdraw('alice', 'USDC', 1_000 USDC)")
    try:
        engine.withdraw("alice", "USDC", CONFIG.alice_usdc)
    except MarginEngineError as e:
        print(f"Rejected: {type(e).__name__}")

    print("\n>>> engine.withdraw('alice', 'USDC', 100 USDC)")
    remaining = engine.withdraw("alice", "USDC", 100 * 10**6)
    print(f"alice now holds {usdc(remaining)}")
    engine.ledger.deposit("alice", "USDC", 100 * 10**6)


def step_06_yield(engine: MarginEngine):
    """Route collateral into a yield strategy."""
    step_header(6, "Yield-Bearing Collateral",
        "Opted-in deposits become strategy shares; yield shows up as equity.")

    vault = SimpleYieldVault("USDC")
    engine.ledger.set_strategy(ADMIN, "USDC", vault)
    engine.ledger.set_yield_opt_in("dave", True)

    print(">>> ledger.deposit('dave', 'USDC', 1_000 USDC)")
    engine.ledger.deposit("dave", "USDC", 1_000 * 10**6)
    print(f"dave shares: {engine.ledger.strategy_shares('dave', 'USDC'):,}")

    print(">>> vault.accrue(50 USDC); ledger.sync('dave', 'USDC')")
    vault.accrue(50 * 10**6)
    print(f"dave claimable: {usdc(engine.ledger.sync('dave', 'USDC'))}")

    section_header("Share Backing")
    print(engine.ledger.verify_share_backing("USDC"))


# ============================================================================
# PHASE 3: STRESS (Steps 7-8)
# ============================================================================

def step_07_liquidation(engine: MarginEngine, oracle: StaticPriceOracle, clock: LogicalClock):
    """A 40% rally puts alice under water; liz takes over half the book."""
    step_header(7, "Liquidation",
        "Below the threshold, a liquidator closes up to the close factor.")

    print(">>> oracle.set_price('WETH', 'USDC', 3_500, now)   # +40%")
    oracle.set_price("WETH", "USDC", CONFIG.rally_spot, clock.now)
    show_risk(engine, "alice")
    print(f"Liquidatable: {engine.is_liquidatable('alice')}")

    print(f"\n>>> engine.liquidate('liz', 'alice', ['{SERIES}'], [2])")
    result = engine.liquidate("liz", "alice", [SERIES], [CONFIG.contracts])

    section_header("Result")
    for fill in result.fills:
        print(f"Closed {fill.quantity} x {fill.instrument_id} @ {usdc(fill.price_per_contract)}")
    print(f"Penalty: {usdc(result.penalty_seized_value)} of {usdc(result.penalty_target)}, "
          f"seized {result.seized}")
    print(f"Ratio: {engine.risk.margin_ratio_bps(result.risk_before)} -> "
          f"{engine.risk.margin_ratio_bps(result.risk_after)} bps")
    show_risk(engine, "alice")
    show_risk(engine, "liz")


def step_08_oracle_outage(engine: MarginEngine, oracle: StaticPriceOracle, clock: LogicalClock):
    """With no valid price, every figure takes its conservative branch."""
    step_header(8, "Oracle Outage",
        "Unpriced collateral counts zero; unpriced shorts use a bumped floor.")

    oracle.remove_price("WETH", "USDC")
    show_risk(engine, "alice")
    show_risk(engine, "carol")

    section_header("Key Insight")
    print("""
    alice's remaining short is margined at 2x the floor (100 USDC) and
    carol's WETH is skipped entirely. Risk reads never raise on a bad feed;
    only liquidation, which needs a price to pay, refuses to run.
    """)
    oracle.set_price("WETH", "USDC", CONFIG.rally_spot, clock.now)


# ============================================================================
# PHASE 4: EXPIRY (Steps 9-10)
# ============================================================================

def step_09_settlement(engine: MarginEngine, registry: InMemoryInstrumentRegistry,
                       clock: LogicalClock):
    """Settle every holder against the insurance account."""
    step_header(9, "Settlement",
        "Longs are paid from insurance, shorts pay into it. Once per account.")

    expiry = registry.get_series(SERIES).expiry
    clock.advance_time(expiry)
    registry.finalize(SERIES, CONFIG.settlement_price)
    print(">>> registry.finalize(SERIES, 4_400)")

    for account in ("bob", "alice", "liz"):
        result = engine.settle_account(SERIES, account)
        print(f"{account:>6}: {result.status.value} payoff {usdc(result.payoff)}")

    section_header("Idempotency")
    again = engine.settle_account(SERIES, "bob")
    print(f"bob again: {again.status.value}, paid {usdc(again.paid)}")
    print(f"Accounting: {engine.settlement_accounting(SERIES)}")


def step_10_conservation(engine: MarginEngine):
    """Every unit of collateral is accounted for."""
    step_header(10, "Conservation Proof",
        "Trades, liquidation and settlement only move collateral around.")

    ledger = engine.ledger
    for account in sorted(ledger.accounts()):
        print(f"{account:>16}: {ledger.balances(account)}")

    section_header("Verification")
    for asset in ("USDC", "WETH"):
        result = ledger.verify_conservation(asset)
        status = "✓" if result['valid'] else "✗ (strategy yield accrued)"
        print(f"{asset}: claimable {result['total_claimable']:,} vs "
              f"net deposited {result['net_deposited']:,} {status}")
    print(f"\nLedger entries: {len(ledger.entries)}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       OPTION MARGIN ENGINE - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    engine, clock, oracle, registry = step_01_configure()
    wait_for_enter()

    step_02_deposits(engine)
    wait_for_enter()

    step_03_first_short(engine)
    wait_for_enter()

    step_04_rejected_trade(engine)
    wait_for_enter()

    step_05_withdrawals(engine)
    wait_for_enter()

    step_06_yield(engine)
    wait_for_enter()

    step_07_liquidation(engine, oracle, clock)
    wait_for_enter()

    step_08_oracle_outage(engine, oracle, clock)
    wait_for_enter()

    step_09_settlement(engine, registry, clock)
    wait_for_enter()

    step_10_conservation(engine)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    You've learned:

    FOUNDATION
      - Configuration is explicit and versioned
      - Collateral is valued in the base asset after haircuts

    MARGIN
      - Shorts need max(shocked intrinsic, floor) of maintenance margin
      - Trades and withdrawals are checked against initial margin
      - Rejected operations change nothing

    STRESS
      - Liquidation closes part of the book and must improve the ratio
      - Oracle failures degrade to conservative figures

    EXPIRY
      - Settlement goes through the insurance account, once per account
      - Collateral is conserved

    Next steps:
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
