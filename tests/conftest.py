"""
conftest.py - Shared pytest fixtures for margin engine tests

Provides common fixtures used across unit and functional tests:
- A bare config/clock/ledger trio with an engine id bound for transfers
- A full market (USDC base, WETH collateral, WETH options) with a bound engine
- Funded market variants
"""

import pytest

from optionmargin import (
    AssetConfig, CollateralLedger, ConfigStore, LogicalClock, RiskParameters,
    INSURANCE_ACCOUNT,
)

from tests.fakes import ADMIN, ENGINE_ID, T0, USDC, build_market


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return LogicalClock(T0)


@pytest.fixture
def config():
    """USDC (6 dp) as base plus WETH (18 dp, 10% haircut)."""
    store = ConfigStore(owner=ADMIN, params=RiskParameters(base_asset="USDC"))
    store.set_asset(ADMIN, "USDC", AssetConfig(supported=True, decimals=6))
    store.set_asset(ADMIN, "WETH", AssetConfig(supported=True, decimals=18, haircut_bps=1_000))
    return store


@pytest.fixture
def ledger(config, clock):
    """Ledger with an engine id bound, so transfer_between(caller=ENGINE_ID) works."""
    ledger = CollateralLedger(config, clock)
    ledger.bind_engine(ADMIN, ENGINE_ID)
    return ledger


# =============================================================================
# MARKET FIXTURES
# =============================================================================

@pytest.fixture
def market():
    """WETH at 3000 USDC; call 3500 and put 2500 expiring in 7 days."""
    return build_market()


@pytest.fixture
def funded_market(market):
    """alice, bob and liz each hold 1,000 USDC; insurance holds 10,000 USDC."""
    for account in ("alice", "bob", "liz"):
        market.ledger.deposit(account, "USDC", 1_000 * USDC)
    market.ledger.deposit(INSURANCE_ACCOUNT, "USDC", 10_000 * USDC)
    return market
