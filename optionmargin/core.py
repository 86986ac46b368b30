"""
Core types, constants and exceptions for the option margin engine.

This module provides the foundational pieces shared by every component:
1. Constants: fixed-point scales, integer bounds, reserved accounts
2. Exceptions: MarginEngineError and the failure taxonomy surfaced to callers
3. Immutable result types: AccountRisk, WithdrawPreview, SettlementResult, ...
4. LogicalClock: the monotonic time source shared by all components

All amounts are Python ints in smallest units. Unsigned values are bounded by
UINT256_MAX and signed values by the int256 range; INT256_MIN is reserved and
never a valid position.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple, Optional


# ============================================================================
# CONSTANTS
# ============================================================================

UINT256_MAX = 2 ** 256 - 1
INT256_MAX = 2 ** 255 - 1
# Reserved sentinel: has no valid absolute value in int256.
INT256_MIN = -(2 ** 255)

# Basis points denominator.
BPS = 10_000

# Oracle prices and strikes are scaled by 1e8.
PRICE_DECIMALS = 8
PRICE_SCALE = 10 ** PRICE_DECIMALS

# One contract references exactly one whole unit of the underlying.
CONTRACT_SIZE = 10 ** 8

# Largest decimals value that fits the power-of-ten table without overflow.
MAX_DECIMALS = 77

# Margin ratio reported when maintenance margin is zero.
MAX_MARGIN_RATIO = UINT256_MAX

# Account that backs positive settlement payoffs and absorbs collections.
INSURANCE_ACCOUNT = "insurance_fund"

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


# ============================================================================
# TYPE ALIASES
# ============================================================================

# (account, asset) -> amount
BalanceKey = Tuple[str, str]

# (account, instrument_id) -> signed quantity
PositionKey = Tuple[str, str]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MarginEngineError(Exception):
    """Base exception for all margin engine errors."""
    pass


class InvalidAmount(MarginEngineError, ValueError):
    """Raised when an argument is malformed (zero, negative, wrong type, equal parties)."""
    pass


# --- configuration ---------------------------------------------------------

class ConfigurationError(MarginEngineError):
    """Raised when required configuration is missing or inconsistent."""
    pass


class BaseAssetNotSet(ConfigurationError):
    pass


class UnsupportedAsset(ConfigurationError):
    pass


class DecimalsOutOfRange(ConfigurationError):
    pass


class StrategyHasShares(ConfigurationError):
    """Raised when switching a strategy that still backs user shares."""
    pass


# --- authorization ---------------------------------------------------------

class Unauthorized(MarginEngineError):
    """Raised when the caller does not hold the role an operation requires."""
    pass


# --- insufficiency ---------------------------------------------------------

class InsufficiencyError(MarginEngineError):
    pass


class InsufficientBalance(InsufficiencyError):
    pass


class InsufficientInsurance(InsufficiencyError):
    pass


# --- oracle ----------------------------------------------------------------

class OracleError(MarginEngineError):
    pass


class OracleUnavailable(OracleError):
    """Raised when an operation cannot proceed without a valid price."""
    pass


class OracleDeviation(OracleError):
    """Raised by redundant oracles when sources disagree beyond tolerance."""
    pass


# --- margin ----------------------------------------------------------------

class MarginRequirementBreach(MarginEngineError):
    pass


# --- arithmetic / integrity -------------------------------------------------

class ArithmeticGuardError(MarginEngineError):
    """Broken invariant: the operation must stop rather than produce a wrong number."""
    pass


class ArithmeticOverflow(ArithmeticGuardError):
    pass


class SentinelValue(ArithmeticGuardError):
    pass


class AdapterIntegrityError(ArithmeticGuardError):
    """Raised when a yield adapter's actual share count differs from its preview."""
    pass


class ZeroAdapter(ArithmeticGuardError):
    """Raised when shares exist for an asset but no adapter is configured."""
    pass


# --- liquidation -----------------------------------------------------------

class LiquidationError(MarginEngineError):
    pass


class NotLiquidatable(LiquidationError):
    pass


class NothingToLiquidate(LiquidationError):
    pass


class LiquidationNotImproving(LiquidationError):
    pass


# --- instruments -----------------------------------------------------------

class InstrumentError(MarginEngineError):
    pass


class InvalidInstrument(InstrumentError):
    pass


class InstrumentExpired(InstrumentError):
    pass


class InstrumentNotExpired(InstrumentError):
    pass


class SettlementNotFinalized(InstrumentError):
    pass


class CloseOnlyViolation(InstrumentError):
    pass


class TooManyOpenPositions(InstrumentError):
    pass


# --- concurrency -----------------------------------------------------------

class ReentrancyError(MarginEngineError):
    pass


# ============================================================================
# ENUMS
# ============================================================================

class SettlementStatus(Enum):
    """
    Outcome of a settlement attempt.

    SETTLED: Payoff was computed and moved; the position is now flat.
    ALREADY_SETTLED: The (instrument, account) pair was settled before (no-op).
    """
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccountRisk:
    """
    Risk snapshot of one account in base-asset smallest units.

    Derived on demand and never stored, so it cannot go stale on its own.
    """
    equity: int
    maintenance_margin: int
    initial_margin: int


@dataclass(frozen=True, slots=True)
class WithdrawPreview:
    max_withdrawable: int
    margin_ratio_before: int
    margin_ratio_after: int
    would_breach: bool


@dataclass(frozen=True, slots=True)
class SettlementAccounting:
    """Cumulative per-instrument settlement totals (monotonically increasing)."""
    collected: int = 0
    paid: int = 0
    bad_debt: int = 0


@dataclass(frozen=True, slots=True)
class SettlementResult:
    status: SettlementStatus
    instrument_id: str
    account: str
    quantity: int = 0
    payoff: int = 0
    collected: int = 0
    paid: int = 0
    bad_debt: int = 0


@dataclass(frozen=True, slots=True)
class LiquidationFill:
    """One instrument closed during a liquidation."""
    instrument_id: str
    quantity: int
    price_per_contract: int
    cash_owed: int
    cash_paid: int


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    trader: str
    liquidator: str
    fills: Tuple[LiquidationFill, ...]
    contracts_closed: int
    penalty_target: int
    penalty_seized_value: int
    seized: Dict[str, int] = field(default_factory=dict)
    risk_before: Optional[AccountRisk] = None
    risk_after: Optional[AccountRisk] = None


# ============================================================================
# TIME
# ============================================================================

class LogicalClock:
    """
    Monotonic logical time in unix seconds.

    Time can only move forward, never backward. Shared by the ledger, the
    oracle reader and the margin engine so every component agrees on "now".
    """

    def __init__(self, initial_time: int = 0):
        if initial_time < 0:
            raise ValueError(f"initial_time must be non-negative, got {initial_time}")
        self._now = initial_time

    @property
    def now(self) -> int:
        return self._now

    def advance_time(self, new_time: int) -> None:
        """
        Advance the clock to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._now:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._now}")
        self._now = new_time

    def advance_by(self, seconds: int) -> None:
        self.advance_time(self._now + seconds)

    def __repr__(self) -> str:
        return f"LogicalClock(now={self._now})"
