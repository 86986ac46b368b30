"""
optionmargin - Cross-collateral margin engine for cash-settled options

Integer-only accounting of multi-asset collateral (with optional yield
strategies), option positions, margin requirements, settlement and
liquidation.

Usage:
    from optionmargin import (
        ConfigStore, RiskParameters, AssetConfig, UnderlyingRiskConfig,
        LogicalClock, StaticPriceOracle, InMemoryInstrumentRegistry, Instrument,
        MarginEngine, ROLE_MATCHER,
    )

    clock = LogicalClock(1_700_000_000)
    config = ConfigStore(owner="admin", params=RiskParameters(base_asset="USDC"))
    config.set_asset("admin", "USDC", AssetConfig(supported=True, decimals=6))
    config.set_underlying("admin", "WETH", UnderlyingRiskConfig(
        mm_floor_per_contract=50_000_000, shock_up_bps=3_000, shock_down_bps=3_000,
    ))

    oracle = StaticPriceOracle()
    oracle.set_price("WETH", "USDC", 3_000 * 10**8, clock.now)
    registry = InMemoryInstrumentRegistry()
    registry.add_series(Instrument(
        "WETH-3500-C", "WETH", "USDC", clock.now + 7 * 86_400, 3_500 * 10**8, True,
    ))

    engine = MarginEngine.create(config, clock, oracle, registry, caller="admin")
    engine.ledger.deposit("alice", "USDC", 1_000_000_000)
    engine.ledger.deposit("bob", "USDC", 1_000_000_000)
    engine.apply_trade("bob", "alice", "WETH-3500-C", 1, 20_000_000, caller="admin")
    engine.account_risk("alice")
"""

# Core types
from .core import (
    UINT256_MAX,
    INT256_MAX,
    INT256_MIN,
    BPS,
    PRICE_DECIMALS,
    PRICE_SCALE,
    CONTRACT_SIZE,
    MAX_DECIMALS,
    MAX_MARGIN_RATIO,
    INSURANCE_ACCOUNT,
    LogicalClock,
    AccountRisk,
    WithdrawPreview,
    SettlementStatus,
    SettlementAccounting,
    SettlementResult,
    LiquidationFill,
    LiquidationResult,
    MarginEngineError,
    InvalidAmount,
    ConfigurationError,
    BaseAssetNotSet,
    UnsupportedAsset,
    DecimalsOutOfRange,
    StrategyHasShares,
    Unauthorized,
    InsufficiencyError,
    InsufficientBalance,
    InsufficientInsurance,
    OracleError,
    OracleUnavailable,
    OracleDeviation,
    MarginRequirementBreach,
    ArithmeticGuardError,
    ArithmeticOverflow,
    SentinelValue,
    AdapterIntegrityError,
    ZeroAdapter,
    LiquidationError,
    NotLiquidatable,
    NothingToLiquidate,
    LiquidationNotImproving,
    InstrumentError,
    InvalidInstrument,
    InstrumentExpired,
    InstrumentNotExpired,
    SettlementNotFinalized,
    CloseOnlyViolation,
    TooManyOpenPositions,
    ReentrancyError,
)

# Fixed-point scaling
from .fixed_point import (
    Rounding,
    pow10,
    mul_div,
    apply_bps,
    scale_amount,
    convert_at_price,
    convert_at_price_inverse,
)

# Configuration
from .config import (
    ROLE_RISK_ADMIN,
    ROLE_MATCHER,
    AssetConfig,
    UnderlyingRiskConfig,
    RiskParameters,
    ConfigChange,
    AccessPolicy,
    ConfigStore,
)

# External collaborators
from .oracle import (
    PriceOracle,
    PriceRead,
    OracleReader,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    RedundantPriceOracle,
)
from .instruments import (
    Instrument,
    SettlementInfo,
    InstrumentRegistry,
    InMemoryInstrumentRegistry,
    intrinsic_price,
    payoff_per_contract,
    shock_price,
)
from .yield_vault import YieldAdapter, SimpleYieldVault
from .seizure import SeizurePlanner, OracleSeizurePlanner

# Components
from .guards import NonReentrant
from .open_index import OpenInstrumentIndex
from .collateral_ledger import CollateralLedger, LedgerEntry
from .position_book import PositionBook
from .risk_engine import RiskEngine
from .margin_engine import MarginEngine

# Floor-volatility pricing
from .black_scholes import floor_premium

__version__ = "0.1.0"

__all__ = [
    # Constants
    'UINT256_MAX', 'INT256_MAX', 'INT256_MIN', 'BPS', 'PRICE_DECIMALS', 'PRICE_SCALE',
    'CONTRACT_SIZE', 'MAX_DECIMALS', 'MAX_MARGIN_RATIO', 'INSURANCE_ACCOUNT',
    # Results
    'LogicalClock', 'AccountRisk', 'WithdrawPreview', 'SettlementStatus',
    'SettlementAccounting', 'SettlementResult', 'LiquidationFill', 'LiquidationResult',
    # Exceptions
    'MarginEngineError', 'InvalidAmount', 'ConfigurationError', 'BaseAssetNotSet',
    'UnsupportedAsset', 'DecimalsOutOfRange', 'StrategyHasShares', 'Unauthorized',
    'InsufficiencyError', 'InsufficientBalance', 'InsufficientInsurance',
    'OracleError', 'OracleUnavailable', 'OracleDeviation', 'MarginRequirementBreach',
    'ArithmeticGuardError', 'ArithmeticOverflow', 'SentinelValue',
    'AdapterIntegrityError', 'ZeroAdapter',
    'LiquidationError', 'NotLiquidatable', 'NothingToLiquidate', 'LiquidationNotImproving',
    'InstrumentError', 'InvalidInstrument', 'InstrumentExpired', 'InstrumentNotExpired',
    'SettlementNotFinalized', 'CloseOnlyViolation', 'TooManyOpenPositions',
    'ReentrancyError',
    # Fixed point
    'Rounding', 'pow10', 'mul_div', 'apply_bps', 'scale_amount',
    'convert_at_price', 'convert_at_price_inverse',
    # Config
    'ROLE_RISK_ADMIN', 'ROLE_MATCHER', 'AssetConfig', 'UnderlyingRiskConfig',
    'RiskParameters', 'ConfigChange', 'AccessPolicy', 'ConfigStore',
    # Collaborators
    'PriceOracle', 'PriceRead', 'OracleReader', 'StaticPriceOracle',
    'TimeSeriesPriceOracle', 'RedundantPriceOracle',
    'Instrument', 'SettlementInfo', 'InstrumentRegistry', 'InMemoryInstrumentRegistry',
    'intrinsic_price', 'payoff_per_contract', 'shock_price',
    'YieldAdapter', 'SimpleYieldVault', 'SeizurePlanner', 'OracleSeizurePlanner',
    # Components
    'NonReentrant', 'OpenInstrumentIndex', 'CollateralLedger', 'LedgerEntry',
    'PositionBook', 'RiskEngine', 'MarginEngine',
    'floor_premium',
]
