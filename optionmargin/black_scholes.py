"""
black_scholes.py - Zero-rate Black-Scholes used for the floor-volatility margin

The maintenance-margin floor of a short option includes the premium the
option would carry at a floor volatility. Integer inputs (1e8-scaled prices,
seconds to expiry, volatility in basis points) are converted to floats,
priced, and converted back to a 1e8-scaled integer rounded UP so the margin
is never understated.

Provides:
- normal_cdf, d1, d2 (float/ndarray)
- call_price, put_price (float/ndarray)
- floor_premium (int interface)
"""

import math
import numpy as np
from typing import Union
from scipy.special import erf as scipy_erf

from .core import BPS, PRICE_SCALE, SECONDS_PER_YEAR


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]

SQRT_2 = math.sqrt(2.0)


def normal_cdf(x: Numeric) -> Numeric:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + scipy_erf(np.asarray(x) / SQRT_2))


def _validate_bs_inputs(s: Numeric, k: Numeric, t: Numeric, v: Numeric) -> None:
    """Validate inputs to prevent division by zero and NaN/Inf."""
    for name, value in (("spot", s), ("strike", k), ("time", t), ("volatility", v)):
        arr = np.asarray(value)
        if not np.all(np.isfinite(arr)) or np.any(arr <= 0):
            raise ValueError(f"{name} must be positive and finite")


def d1(s: Numeric, k: Numeric, t: Numeric, v: Numeric) -> Numeric:
    """
    d1 = (ln(S/K) + 0.5*σ²*t) / (σ*√t), t in years.

    Raises:
        ValueError: If any input is non-positive or not finite
    """
    _validate_bs_inputs(s, k, t, v)
    return (np.log(s / k) + 0.5 * v * v * t) / (v * np.sqrt(t))


def d2(s: Numeric, k: Numeric, t: Numeric, v: Numeric) -> Numeric:
    """d2 = d1 - σ*√t."""
    return d1(s, k, t, v) - v * np.sqrt(t)


def call_price(s: Numeric, k: Numeric, t: Numeric, v: Numeric) -> Numeric:
    """C = S*N(d1) - K*N(d2)"""
    d1_val = d1(s, k, t, v)
    d2_val = d1_val - v * np.sqrt(t)
    return s * normal_cdf(d1_val) - k * normal_cdf(d2_val)


def put_price(s: Numeric, k: Numeric, t: Numeric, v: Numeric) -> Numeric:
    """P = K*N(-d2) - S*N(-d1)"""
    d1_val = d1(s, k, t, v)
    d2_val = d1_val - v * np.sqrt(t)
    return k * normal_cdf(-d2_val) - s * normal_cdf(-d1_val)


def floor_premium(spot: int, strike: int, seconds_to_expiry: int, vol_bps: int, is_call: bool) -> int:
    """
    Option premium per underlying unit at the floor volatility.

    Args:
        spot: Underlying price scaled by 1e8
        strike: Strike scaled by 1e8
        seconds_to_expiry: Remaining life; must be positive
        vol_bps: Annualised volatility in basis points
        is_call: Call or put

    Returns:
        Premium scaled by 1e8, rounded up

    Raises:
        ValueError: On non-positive inputs or a non-finite result
    """
    s = spot / PRICE_SCALE
    k = strike / PRICE_SCALE
    t = seconds_to_expiry / SECONDS_PER_YEAR
    v = vol_bps / BPS
    value = float(call_price(s, k, t, v) if is_call else put_price(s, k, t, v))
    if not math.isfinite(value):
        raise ValueError(f"non-finite premium for spot={spot} strike={strike}")
    return max(0, math.ceil(value * PRICE_SCALE))
