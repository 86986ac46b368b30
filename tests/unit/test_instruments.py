"""
test_instruments.py - Unit tests for payoff math and the in-memory registry
"""

import pytest

from optionmargin import (
    CONTRACT_SIZE, Rounding,
    Instrument, InMemoryInstrumentRegistry, SettlementInfo,
    intrinsic_price, payoff_per_contract, shock_price,
    InvalidInstrument,
)
from optionmargin.instruments import price_to_amount, require_canonical_contract_size

from tests.fakes import PRICE, T0


def _call(strike=3_500 * PRICE, **kw):
    return Instrument("C", "WETH", "USDC", T0 + 100, strike, True, **kw)


def _put(strike=2_500 * PRICE, **kw):
    return Instrument("P", "WETH", "USDC", T0 + 100, strike, False, **kw)


class TestIntrinsic:

    def test_call(self):
        assert intrinsic_price(True, 3_500 * PRICE, 3_700 * PRICE) == 200 * PRICE
        assert intrinsic_price(True, 3_500 * PRICE, 3_000 * PRICE) == 0

    def test_put(self):
        assert intrinsic_price(False, 2_500 * PRICE, 2_000 * PRICE) == 500 * PRICE
        assert intrinsic_price(False, 2_500 * PRICE, 2_600 * PRICE) == 0


class TestPayoff:

    def test_payoff_in_settlement_units(self):
        assert payoff_per_contract(_call(), 3_700 * PRICE, 6) == 200 * 10 ** 6
        assert payoff_per_contract(_put(), 2_000 * PRICE, 18) == 500 * 10 ** 18

    def test_rounding_on_sub_unit_prices(self):
        # 0.00000123 USDC of intrinsic cannot be expressed in 6 decimals
        inst = _call(strike=1 * PRICE)
        price = 1 * PRICE + 123
        assert payoff_per_contract(inst, price, 6, Rounding.FLOOR) == 1
        assert payoff_per_contract(inst, price, 6, Rounding.CEIL) == 2

    def test_price_to_amount(self):
        assert price_to_amount(12_345 * PRICE, 6) == 12_345 * 10 ** 6

    def test_non_canonical_contract_size_rejected(self):
        with pytest.raises(InvalidInstrument):
            payoff_per_contract(_call(contract_size=CONTRACT_SIZE * 10), 4_000 * PRICE, 6)

    def test_zero_strike_rejected(self):
        with pytest.raises(InvalidInstrument):
            require_canonical_contract_size(_call(strike=0))


class TestShock:

    def test_calls_shock_up_rounding_up(self):
        assert shock_price(3_000 * PRICE, True, 3_000, 3_000) == 3_900 * PRICE
        assert shock_price(3, True, 3_000, 0) == 4

    def test_puts_shock_down_rounding_down(self):
        assert shock_price(3_000 * PRICE, False, 3_000, 3_000) == 2_100 * PRICE
        assert shock_price(3, False, 0, 3_000) == 2

    def test_full_down_shock_reaches_zero(self):
        assert shock_price(3_000 * PRICE, False, 0, 10_000) == 0


class TestRegistry:

    def test_lifecycle(self):
        registry = InMemoryInstrumentRegistry()
        registry.add_series(_call())
        assert registry.get_settlement_info("C") == SettlementInfo(0, False)
        registry.finalize("C", 3_600 * PRICE)
        assert registry.get_settlement_info("C") == SettlementInfo(3_600 * PRICE, True)

    def test_unknown_series(self):
        with pytest.raises(InvalidInstrument):
            InMemoryInstrumentRegistry().get_series("nope")

    def test_duplicate_series(self):
        registry = InMemoryInstrumentRegistry()
        registry.add_series(_call())
        with pytest.raises(ValueError):
            registry.add_series(_call())

    def test_deactivate(self):
        registry = InMemoryInstrumentRegistry()
        registry.add_series(_call())
        registry.set_active("C", False)
        assert not registry.get_series("C").is_active
