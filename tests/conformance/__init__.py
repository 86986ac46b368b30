"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the margin engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Collateral is only moved, never created or destroyed
2. rounding.py - Every rounding step favours the protocol
3. settlement_idempotency.py - Each (instrument, account) settles exactly once
4. atomicity.py - All-or-nothing operation semantics
5. reentrancy.py - Nested mutating calls are rejected
6. liquidation_improvement.py - Liquidations only ever help the trader's margin

These tests use hypothesis for property-based testing.
"""
