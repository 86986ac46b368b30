"""
fixed_point.py - Integer scaling and range-checked arithmetic

Every conversion across heterogeneous asset decimals goes through this module.
The rules are:
    - multiply first, divide last (never divide first)
    - rounding direction is always explicit (FLOOR or CEIL)
    - every input and result is range-checked against the uint256/int256 bounds

Python integers never overflow on their own, so the bounds are enforced
explicitly. Exceeding them raises ArithmeticOverflow; touching the reserved
INT256_MIN sentinel raises SentinelValue.
"""

from __future__ import annotations
from enum import Enum
from typing import Tuple

from .core import (
    UINT256_MAX, INT256_MAX, INT256_MIN, BPS, MAX_DECIMALS, PRICE_SCALE,
    ArithmeticOverflow, SentinelValue, DecimalsOutOfRange, InvalidAmount,
)


class Rounding(Enum):
    FLOOR = "floor"
    CEIL = "ceil"


# Precomputed 10**0 .. 10**77; 10**78 no longer fits in uint256.
_POW10: Tuple[int, ...] = tuple(10 ** i for i in range(MAX_DECIMALS + 1))


def pow10(n: int) -> int:
    """Return 10**n from the bounded table."""
    if not isinstance(n, int) or isinstance(n, bool) or n < 0 or n > MAX_DECIMALS:
        raise DecimalsOutOfRange(f"decimals must be in [0, {MAX_DECIMALS}], got {n!r}")
    return _POW10[n]


# ============================================================================
# RANGE CHECKS
# ============================================================================

def require_uint(value: int, name: str = "value") -> int:
    """Validate that value is an int in [0, UINT256_MAX]."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidAmount(f"{name} must be int, got {type(value).__name__}")
    if value < 0:
        raise InvalidAmount(f"{name} must be non-negative, got {value}")
    if value > UINT256_MAX:
        raise ArithmeticOverflow(f"{name} exceeds uint256")
    return value


def require_int(value: int, name: str = "value") -> int:
    """Validate that value is an int inside the usable int256 range."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidAmount(f"{name} must be int, got {type(value).__name__}")
    if value == INT256_MIN:
        raise SentinelValue(f"{name} is the reserved int256 minimum")
    if value < INT256_MIN or value > INT256_MAX:
        raise ArithmeticOverflow(f"{name} exceeds int256")
    return value


def to_int256(value: int) -> int:
    """Cast an unsigned amount to a signed one, rejecting anything above INT256_MAX."""
    require_uint(value)
    if value > INT256_MAX:
        raise ArithmeticOverflow(f"{value} does not fit in int256")
    return value


def abs_int256(value: int) -> int:
    """Absolute value of a signed quantity. The sentinel has none."""
    require_int(value)
    return -value if value < 0 else value


# ============================================================================
# CHECKED ARITHMETIC
# ============================================================================

def checked_add(a: int, b: int) -> int:
    result = require_uint(a) + require_uint(b)
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"{a} + {b} overflows uint256")
    return result


def checked_sub(a: int, b: int) -> int:
    require_uint(a)
    require_uint(b)
    if b > a:
        raise ArithmeticOverflow(f"{a} - {b} underflows uint256")
    return a - b


def checked_mul(a: int, b: int) -> int:
    result = require_uint(a) * require_uint(b)
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"{a} * {b} overflows uint256")
    return result


def checked_add_signed(a: int, b: int) -> int:
    """Signed add; the result may be neither out of range nor the sentinel."""
    require_int(a)
    require_int(b)
    result = a + b
    if result == INT256_MIN:
        raise SentinelValue("result is the reserved int256 minimum")
    if result < INT256_MIN or result > INT256_MAX:
        raise ArithmeticOverflow(f"{a} + {b} overflows int256")
    return result


def mul_div(a: int, b: int, denominator: int, rounding: Rounding = Rounding.FLOOR) -> int:
    """
    Compute a * b / denominator with explicit rounding.

    The intermediate product is exact (full precision), only the inputs and
    the final result are bounded.

    Raises:
        ArithmeticOverflow: If denominator is zero or the result exceeds uint256
    """
    require_uint(a, "a")
    require_uint(b, "b")
    require_uint(denominator, "denominator")
    if denominator == 0:
        raise ArithmeticOverflow("division by zero")
    quotient, remainder = divmod(a * b, denominator)
    if rounding is Rounding.CEIL and remainder:
        quotient += 1
    if quotient > UINT256_MAX:
        raise ArithmeticOverflow("mul_div result exceeds uint256")
    return quotient


def apply_bps(value: int, bps: int, rounding: Rounding = Rounding.FLOOR) -> int:
    """value * bps / 10_000."""
    return mul_div(value, bps, BPS, rounding)


def scale_amount(amount: int, from_decimals: int, to_decimals: int,
                 rounding: Rounding = Rounding.FLOOR) -> int:
    """Re-express an amount with a different number of decimals."""
    if from_decimals == to_decimals:
        return require_uint(amount)
    if to_decimals > from_decimals:
        return mul_div(amount, pow10(to_decimals - from_decimals), 1, rounding)
    return mul_div(amount, 1, pow10(from_decimals - to_decimals), rounding)


def _price_factors(price: int, from_decimals: int, to_decimals: int) -> Tuple[int, int]:
    """Numerator and denominator for amount(from) * price / 1e8 -> amount(to)."""
    if to_decimals >= from_decimals:
        return checked_mul(price, pow10(to_decimals - from_decimals)), PRICE_SCALE
    return price, checked_mul(PRICE_SCALE, pow10(from_decimals - to_decimals))


def convert_at_price(amount: int, price: int, from_decimals: int, to_decimals: int,
                     rounding: Rounding = Rounding.FLOOR) -> int:
    """
    Value `amount` (from_decimals units) at a 1e8-scaled price, in to_decimals units.

    Example:
        convert_at_price(2 * 10**18, 3000 * 10**8, 18, 6)   # 6_000_000_000
    """
    numerator, denominator = _price_factors(price, from_decimals, to_decimals)
    return mul_div(amount, numerator, denominator, rounding)


def convert_at_price_inverse(amount: int, price: int, from_decimals: int, to_decimals: int,
                             rounding: Rounding = Rounding.FLOOR) -> int:
    """
    Inverse of convert_at_price: how many from_decimals units are worth `amount`.

    Raises:
        ArithmeticOverflow: If price is zero
    """
    numerator, denominator = _price_factors(price, from_decimals, to_decimals)
    return mul_div(amount, denominator, numerator, rounding)
