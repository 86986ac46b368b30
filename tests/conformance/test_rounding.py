"""
Rounding Direction Conformance Tests

INVARIANT: Every integer division rounds in the protocol's favour.

    collateral value        FLOOR  (credit less)
    liabilities, margin     CEIL   (require more)
    payouts to users        FLOOR
    vault shares minted     FLOOR, shares burned CEIL

A FLOOR and a CEIL of the same quotient differ by at most one unit.
"""

from fractions import Fraction

from hypothesis import given, settings
from hypothesis import strategies as st

from optionmargin import (
    BPS, MAX_MARGIN_RATIO, PRICE_SCALE, Rounding, AccountRisk, Instrument, RiskEngine,
    SimpleYieldVault,
    mul_div, apply_bps, convert_at_price, convert_at_price_inverse,
    payoff_per_contract, shock_price,
)

from tests.fakes import CALL_3500, PRICE, USDC, WETH, build_market


amounts = st.integers(min_value=0, max_value=10 ** 30)
prices = st.integers(min_value=1, max_value=10 ** 14)
decimals = st.integers(min_value=0, max_value=18)


class TestMulDiv:

    @given(amounts, amounts, st.integers(min_value=1, max_value=10 ** 30))
    def test_floor_and_ceil_bracket_exact(self, a, b, d):
        exact = Fraction(a * b, d)
        down = mul_div(a, b, d, Rounding.FLOOR)
        up = mul_div(a, b, d, Rounding.CEIL)
        assert down <= exact <= up
        assert up - down in (0, 1)
        assert (up == down) == (exact.denominator == 1)

    @given(amounts, st.integers(min_value=0, max_value=BPS))
    def test_bps_never_exceeds_whole(self, value, bps):
        assert apply_bps(value, bps) <= value
        assert apply_bps(value, bps, Rounding.CEIL) <= value


class TestPriceConversion:

    @given(amounts, prices, decimals, decimals)
    def test_conversion_brackets_exact(self, amount, price, from_dec, to_dec):
        exact = Fraction(amount * price * 10 ** to_dec, PRICE_SCALE * 10 ** from_dec)
        assert convert_at_price(amount, price, from_dec, to_dec) <= exact
        assert convert_at_price(amount, price, from_dec, to_dec, Rounding.CEIL) >= exact

    @given(st.integers(min_value=0, max_value=10 ** 24), prices, decimals, decimals)
    def test_inverse_floor_never_buys_more_than_paid(self, base_amount, price, from_dec, to_dec):
        units = convert_at_price_inverse(base_amount, price, from_dec, to_dec)
        assert convert_at_price(units, price, from_dec, to_dec) <= base_amount

    @given(st.integers(min_value=1, max_value=10 ** 24), prices, decimals, decimals)
    def test_inverse_ceil_covers_target(self, base_amount, price, from_dec, to_dec):
        units = convert_at_price_inverse(base_amount, price, from_dec, to_dec, Rounding.CEIL)
        value = Fraction(units * price * 10 ** to_dec, PRICE_SCALE * 10 ** from_dec)
        assert value >= base_amount


class TestPayoffs:

    @given(st.integers(min_value=1, max_value=10 ** 13), st.integers(min_value=1, max_value=10 ** 13),
           st.booleans(), st.integers(min_value=0, max_value=18))
    def test_payoff_rounding(self, strike, price, is_call, settle_decimals):
        instrument = Instrument("X", "WETH", "USDC", 1, strike, is_call)
        intrinsic = max(0, price - strike) if is_call else max(0, strike - price)
        exact = Fraction(intrinsic * 10 ** settle_decimals, PRICE_SCALE)
        assert payoff_per_contract(instrument, price, settle_decimals, Rounding.FLOOR) <= exact
        assert payoff_per_contract(instrument, price, settle_decimals, Rounding.CEIL) >= exact

    @given(st.integers(min_value=1, max_value=10 ** 13), st.booleans(),
           st.integers(min_value=0, max_value=BPS), st.integers(min_value=0, max_value=BPS))
    def test_shock_moves_against_the_writer(self, price, is_call, up, down):
        shocked = shock_price(price, is_call, up, down)
        if is_call:
            assert shocked * BPS >= price * (BPS + up)
        else:
            assert shocked * BPS <= price * (BPS - down)


class TestAccountFigures:

    @given(st.integers(min_value=1, max_value=10 ** 9), st.integers(min_value=1, max_value=5))
    @settings(max_examples=50, deadline=None)
    def test_collateral_floor_margin_ceil(self, wei, contracts):
        m = build_market(spot=3_001 * PRICE + 7)
        m.ledger.deposit("alice", "WETH", wei + 10 * WETH)
        m.ledger.deposit("bob", "USDC", 10_000 * USDC)
        m.trade("bob", "alice", CALL_3500, contracts, 1)
        risk = m.risk.compute_account_risk("alice")

        collateral = Fraction((wei + 10 * WETH) * (3_001 * PRICE + 7), PRICE_SCALE * 10 ** 12)
        collateral = collateral * (BPS - 1_000) / BPS + 1 * contracts
        shocked = Fraction((3_001 * PRICE + 7) * (BPS + 3_000), BPS)
        liability = contracts * (shocked - 3_500 * PRICE) * USDC / PRICE_SCALE
        assert risk.equity <= collateral - liability
        assert risk.maintenance_margin >= liability
        assert risk.initial_margin * BPS >= risk.maintenance_margin * 11_000

    @given(st.integers(min_value=-10 ** 12, max_value=10 ** 12),
           st.integers(min_value=0, max_value=10 ** 12))
    def test_margin_ratio_rounds_down(self, equity, maintenance):
        ratio = RiskEngine.margin_ratio_bps(AccountRisk(equity, maintenance, maintenance))
        if maintenance == 0:
            assert ratio == MAX_MARGIN_RATIO
        elif equity <= 0:
            assert ratio == 0
        else:
            assert ratio * maintenance <= equity * BPS
            assert 0 <= ratio <= MAX_MARGIN_RATIO


class TestVaultRounding:

    @given(st.lists(st.integers(min_value=1, max_value=10 ** 15), min_size=1, max_size=8),
           st.integers(min_value=0, max_value=10 ** 15))
    def test_vault_never_pays_out_more_than_it_holds(self, deposits, yield_amount):
        vault = SimpleYieldVault("USDC")
        shares = [vault.deposit(amount) for amount in deposits]
        vault.accrue(yield_amount)
        redeemable = sum(vault.preview_redeem(s) for s in shares)
        assert redeemable <= vault.total_assets()
        for amount in deposits:
            assert vault.preview_withdraw(amount) >= vault.preview_deposit(amount)
