"""
Liquidation Improvement Conformance Tests

INVARIANT: A successful liquidation leaves the trader better off and the
liquidator solvent.

    equity_before > 0  →  ratio_after ≥ ratio_before + min_improvement_bps
    equity_before ≤ 0  →  mm_after < mm_before  or  equity_after > equity_before
    liquidator         →  equity ≥ initial margin afterwards
    contracts closed   ≤  max(1, total_short × close_factor / BPS)

Liquidations that cannot meet these are rejected and change nothing.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from optionmargin import BPS, MarginEngineError

from tests.fakes import CALL_3500, PRICE, PUT_2500, USDC, build_market


@st.composite
def distressed_book(draw):
    """A short book written at 2,500 and a spot move afterwards."""
    return {
        "collateral": draw(st.integers(min_value=300, max_value=5_000)),
        "calls": draw(st.integers(min_value=1, max_value=6)),
        "puts": draw(st.integers(min_value=0, max_value=4)),
        "spot": draw(st.integers(min_value=1_200, max_value=6_000)),
        "close_factor_bps": draw(st.sampled_from([2_500, 5_000, 10_000])),
        "requested": draw(st.integers(min_value=1, max_value=10)),
    }


def _setup(book):
    m = build_market(spot=2_500 * PRICE, close_factor_bps=book["close_factor_bps"])
    m.ledger.deposit("alice", "USDC", book["collateral"] * USDC)
    m.ledger.deposit("bob", "USDC", 10_000 * USDC)
    m.ledger.deposit("liz", "USDC", 100_000 * USDC)
    for instrument, quantity in ((CALL_3500, book["calls"]), (PUT_2500, book["puts"])):
        if quantity:
            try:
                m.trade("bob", "alice", instrument, quantity, 10 * USDC)
            except MarginEngineError:
                pass
    m.set_spot(book["spot"] * PRICE)
    return m


class TestLiquidationImprovement:

    @given(distressed_book())
    @settings(max_examples=100, deadline=None)
    def test_successful_liquidation_improves_trader(self, book):
        m = _setup(book)
        total_short = m.engine.book.short_contracts("alice")
        min_improvement = m.config.params.min_improvement_bps
        try:
            result = m.engine.liquidate("liz", "alice", [CALL_3500, PUT_2500],
                                        [book["requested"], book["requested"]])
        except MarginEngineError:
            return

        before, after = result.risk_before, result.risk_after
        if before.equity > 0:
            assert m.risk.margin_ratio_bps(after) >= m.risk.margin_ratio_bps(before) + min_improvement
        else:
            assert after.maintenance_margin < before.maintenance_margin or after.equity > before.equity

        assert m.risk.meets_initial_margin("liz")
        allowance = max(1, total_short * book["close_factor_bps"] // BPS)
        assert 0 < result.contracts_closed <= allowance
        assert m.engine.book.short_contracts("alice") == total_short - result.contracts_closed

    @given(distressed_book())
    @settings(max_examples=100, deadline=None)
    def test_only_liquidatable_accounts_are_touched(self, book):
        m = _setup(book)
        liquidatable = m.engine.is_liquidatable("alice")
        balances = m.ledger.balances("alice")
        try:
            m.engine.liquidate("liz", "alice", [CALL_3500, PUT_2500],
                               [book["requested"], book["requested"]])
        except MarginEngineError:
            assert m.ledger.balances("alice") == balances
            return
        assert liquidatable

    @given(distressed_book())
    @settings(max_examples=100, deadline=None)
    def test_penalty_never_exceeds_target_in_base(self, book):
        m = _setup(book)
        try:
            result = m.engine.liquidate("liz", "alice", [CALL_3500, PUT_2500],
                                        [book["requested"], book["requested"]])
        except MarginEngineError:
            return
        # default planner takes base collateral only up to the target
        assert result.seized.get("USDC", 0) <= result.penalty_target
        assert result.penalty_seized_value <= result.penalty_target
