"""
config.py - Risk configuration and access control

Configuration is an explicit object injected into every component at
construction. Nothing is read from ambient global state.

ARCHITECTURE:
=============

1. FROZEN DATACLASSES (explicit inputs):
   - AssetConfig: per collateral/settlement asset
   - UnderlyingRiskConfig: per option underlying
   - RiskParameters: engine-wide risk and liquidation parameters

2. AccessPolicy: owner plus named roles; every setter and every privileged
   operation calls require() before touching state.

3. ConfigStore: the single mutable holder. Every successful change bumps
   `version` and appends a ConfigChange record, so callers can detect that
   the configuration moved underneath them.

Misconfiguration is always fatal to the call. Missing values are never
silently defaulted.
"""

from __future__ import annotations
from dataclasses import dataclass, replace, fields
from typing import Dict, List, Optional, Set, Tuple, Any

from .core import (
    BPS, MAX_DECIMALS, UINT256_MAX,
    ConfigurationError, BaseAssetNotSet, UnsupportedAsset, DecimalsOutOfRange,
    Unauthorized,
)


# Role names
ROLE_RISK_ADMIN = "risk_admin"
ROLE_MATCHER = "matcher"


def _require_bps(name: str, value: int, upper: Optional[int] = BPS) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative int, got {value!r}")
    if upper is not None and value > upper:
        raise ConfigurationError(f"{name} must be <= {upper}, got {value}")


def _require_amount(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value > UINT256_MAX:
        raise ConfigurationError(f"{name} must be a uint256, got {value!r}")


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class AssetConfig:
    """
    Configuration of one collateral/settlement asset.

    haircut_bps is the discount applied to the asset's value when computing
    equity (0 = full credit, 10_000 = no credit).
    """
    supported: bool
    decimals: int
    haircut_bps: int = 0

    def __post_init__(self):
        if not isinstance(self.decimals, int) or isinstance(self.decimals, bool) \
                or self.decimals < 0 or self.decimals > MAX_DECIMALS:
            raise DecimalsOutOfRange(
                f"decimals must be in [0, {MAX_DECIMALS}], got {self.decimals!r}"
            )
        _require_bps("haircut_bps", self.haircut_bps)


@dataclass(frozen=True, slots=True)
class UnderlyingRiskConfig:
    """
    Shock parameters for all options written on one underlying.

    mm_floor_per_contract is expressed in base-asset smallest units.
    floor_vol_bps is an annualised volatility (2_000 = 20%); zero disables the
    Black-Scholes leg of the floor value.
    """
    mm_floor_per_contract: int
    shock_up_bps: int
    shock_down_bps: int
    floor_vol_bps: int = 0
    enabled: bool = True

    def __post_init__(self):
        _require_amount("mm_floor_per_contract", self.mm_floor_per_contract)
        _require_bps("shock_up_bps", self.shock_up_bps, upper=None)
        _require_bps("shock_down_bps", self.shock_down_bps)
        _require_bps("floor_vol_bps", self.floor_vol_bps, upper=100 * BPS)


@dataclass(frozen=True, slots=True)
class RiskParameters:
    """
    Engine-wide risk parameters.

    Attributes:
        base_asset: Settlement/valuation currency of every risk figure
        im_factor_bps: Initial margin as a multiple of maintenance (>= 100%)
        oracle_down_multiplier_bps: Bump applied to per-contract floors when
            prices are unavailable (policy choice, default 2x)
        liquidation_threshold_bps: Margin ratio below which an account is liquidatable
        close_factor_bps: Share of total short contracts one liquidation may close
        liquidation_spread_bps: Premium over shocked intrinsic paid to the liquidator
        liquidation_price_floor_bps: Minimum liquidation price relative to
            unshocked intrinsic (0 disables)
        liquidation_penalty_bps: Penalty rate on mm floor * contracts closed
        min_improvement_bps: Required margin-ratio improvement per liquidation
        max_oracle_delay: Global staleness bound in seconds (0 = unset)
        risk_page_size: Page size used when iterating open instruments
        max_open_instruments: Cap on the open-instrument index per account
        default_mm_floor_per_contract: Flat floor used when an underlying has
            no enabled risk config
    """
    base_asset: Optional[str] = None
    im_factor_bps: int = 11_000
    oracle_down_multiplier_bps: int = 20_000
    liquidation_threshold_bps: int = 10_000
    close_factor_bps: int = 5_000
    liquidation_spread_bps: int = 500
    liquidation_price_floor_bps: int = 0
    liquidation_penalty_bps: int = 1_000
    min_improvement_bps: int = 1
    max_oracle_delay: int = 0
    risk_page_size: int = 32
    max_open_instruments: int = 64
    default_mm_floor_per_contract: int = 0

    def __post_init__(self):
        if self.im_factor_bps < BPS:
            raise ConfigurationError(f"im_factor_bps must be >= {BPS}, got {self.im_factor_bps}")
        if self.oracle_down_multiplier_bps < BPS:
            raise ConfigurationError(
                f"oracle_down_multiplier_bps must be >= {BPS}, got {self.oracle_down_multiplier_bps}"
            )
        _require_bps("liquidation_threshold_bps", self.liquidation_threshold_bps, upper=None)
        _require_bps("close_factor_bps", self.close_factor_bps)
        if self.close_factor_bps == 0:
            raise ConfigurationError("close_factor_bps must be positive")
        _require_bps("liquidation_spread_bps", self.liquidation_spread_bps)
        _require_bps("liquidation_price_floor_bps", self.liquidation_price_floor_bps, upper=None)
        _require_bps("liquidation_penalty_bps", self.liquidation_penalty_bps)
        _require_bps("min_improvement_bps", self.min_improvement_bps, upper=None)
        _require_amount("max_oracle_delay", self.max_oracle_delay)
        _require_amount("default_mm_floor_per_contract", self.default_mm_floor_per_contract)
        if self.risk_page_size <= 0:
            raise ConfigurationError("risk_page_size must be positive")
        if self.max_open_instruments <= 0:
            raise ConfigurationError("max_open_instruments must be positive")


@dataclass(frozen=True, slots=True)
class ConfigChange:
    """Audit record of one configuration change."""
    version: int
    caller: str
    key: str
    old_value: Any
    new_value: Any


# ============================================================================
# ACCESS CONTROL
# ============================================================================

class AccessPolicy:
    """
    Owner plus named roles.

    The owner implicitly holds every role. Only the owner can grant, revoke
    or transfer ownership.
    """

    def __init__(self, owner: str):
        if not owner:
            raise ConfigurationError("owner cannot be empty")
        self.owner = owner
        self._roles: Dict[str, Set[str]] = {}

    def has_role(self, account: str, role: str) -> bool:
        return account == self.owner or account in self._roles.get(role, set())

    def require(self, caller: str, role: Optional[str] = None) -> None:
        """Raise Unauthorized unless caller is the owner or holds role."""
        if caller == self.owner:
            return
        if role is not None and caller in self._roles.get(role, set()):
            return
        raise Unauthorized(f"{caller} lacks role {role or 'owner'}")

    def grant(self, caller: str, role: str, account: str) -> None:
        self.require(caller)
        self._roles.setdefault(role, set()).add(account)

    def revoke(self, caller: str, role: str, account: str) -> None:
        self.require(caller)
        self._roles.get(role, set()).discard(account)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self.require(caller)
        if not new_owner:
            raise ConfigurationError("new owner cannot be empty")
        self.owner = new_owner


# ============================================================================
# CONFIG STORE
# ============================================================================

class ConfigStore:
    """
    Versioned holder of all risk configuration.

    Example:
        config = ConfigStore(owner="admin", params=RiskParameters(base_asset="USDC"))
        config.set_asset("admin", "USDC", AssetConfig(supported=True, decimals=6))
        config.set_underlying("admin", "WETH", UnderlyingRiskConfig(
            mm_floor_per_contract=50_000_000, shock_up_bps=3_000, shock_down_bps=3_000,
        ))
    """

    def __init__(self, owner: str, params: Optional[RiskParameters] = None):
        self.access = AccessPolicy(owner)
        self._params = params or RiskParameters()
        self._assets: Dict[str, AssetConfig] = {}
        self._underlyings: Dict[str, UnderlyingRiskConfig] = {}
        self._feed_delays: Dict[Tuple[str, str], int] = {}
        self.version = 0
        self.history: List[ConfigChange] = []

    def _record(self, caller: str, key: str, old_value: Any, new_value: Any) -> None:
        self.version += 1
        self.history.append(ConfigChange(self.version, caller, key, old_value, new_value))

    # ------------------------------------------------------------------
    # Setters (guarded)
    # ------------------------------------------------------------------

    def set_params(self, caller: str, **changes: Any) -> RiskParameters:
        """Replace selected RiskParameters fields; validation runs on the new object."""
        self.access.require(caller, ROLE_RISK_ADMIN)
        known = {f.name for f in fields(RiskParameters)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"unknown risk parameters: {sorted(unknown)}")
        old = self._params
        new = replace(old, **changes)
        self._params = new
        self._record(caller, "params", old, new)
        return new

    def set_asset(self, caller: str, asset: str, config: AssetConfig) -> None:
        self.access.require(caller, ROLE_RISK_ADMIN)
        if not asset:
            raise ConfigurationError("asset cannot be empty")
        old = self._assets.get(asset)
        self._assets[asset] = config
        self._record(caller, f"asset:{asset}", old, config)

    def set_underlying(self, caller: str, underlying: str, config: UnderlyingRiskConfig) -> None:
        self.access.require(caller, ROLE_RISK_ADMIN)
        if not underlying:
            raise ConfigurationError("underlying cannot be empty")
        old = self._underlyings.get(underlying)
        self._underlyings[underlying] = config
        self._record(caller, f"underlying:{underlying}", old, config)

    def set_feed_delay(self, caller: str, base: str, quote: str, seconds: int) -> None:
        """Per-feed staleness bound in seconds (0 removes it)."""
        self.access.require(caller, ROLE_RISK_ADMIN)
        _require_amount("seconds", seconds)
        key = (base, quote)
        old = self._feed_delays.get(key, 0)
        if seconds:
            self._feed_delays[key] = seconds
        else:
            self._feed_delays.pop(key, None)
        self._record(caller, f"feed_delay:{base}/{quote}", old, seconds)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def params(self) -> RiskParameters:
        return self._params

    def base_asset(self) -> str:
        """Return the configured base asset; it must also be a supported asset."""
        base = self._params.base_asset
        if not base:
            raise BaseAssetNotSet("base asset is not configured")
        self.asset_config(base)
        return base

    def is_supported(self, asset: str) -> bool:
        config = self._assets.get(asset)
        return config is not None and config.supported

    def asset_config(self, asset: str) -> AssetConfig:
        """
        Raises:
            UnsupportedAsset: If the asset is unknown or disabled
        """
        config = self._assets.get(asset)
        if config is None or not config.supported:
            raise UnsupportedAsset(f"asset {asset} is not supported")
        return config

    def supported_assets(self) -> List[str]:
        """Supported assets in configuration order."""
        return [asset for asset, config in self._assets.items() if config.supported]

    def underlying_config(self, underlying: str) -> Optional[UnderlyingRiskConfig]:
        return self._underlyings.get(underlying)

    def feed_delay(self, base: str, quote: str) -> int:
        return self._feed_delays.get((base, quote), 0)

    def effective_oracle_delay(self, base: str, quote: str) -> int:
        """Minimum of the global and per-feed bounds that are set (0 = unbounded)."""
        bounds = [d for d in (self._params.max_oracle_delay, self.feed_delay(base, quote)) if d > 0]
        return min(bounds) if bounds else 0

    def __repr__(self) -> str:
        return (f"ConfigStore(v{self.version}, {len(self._assets)} assets, "
                f"{len(self._underlyings)} underlyings, base={self._params.base_asset})")
