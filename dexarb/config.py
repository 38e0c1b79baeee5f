# dexarb/config.py
"""
YAML configuration for the arbitrage core.

The raw file is loaded with `yaml.safe_load` and projected into small frozen
dataclasses, one per concern. Every key is optional; missing keys fall back to
the defaults below.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional
import yaml

from .models import RiskLevel, Tier, TradeSettings

DEFAULT_POOL_FEES: Dict[str, float] = {
    "Minswap": 0.003,
    "SundaeSwap": 0.003,
    "WingRiders": 0.0035,
    "MuesliSwap": 0.003,
}

# Minimum spread (%) implied by each risk level.
RISK_LEVEL_MIN_SPREAD: Dict[RiskLevel, float] = {
    RiskLevel.CONSERVATIVE: 5.0,
    RiskLevel.MODERATE: 3.0,
    RiskLevel.AGGRESSIVE: 2.0,
}


def _build(cls, raw: Optional[Dict[str, Any]]):
    raw = raw or {}
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in names})


@dataclass(frozen=True)
class FeeModel:
    """
    Per-leg cost of one swap: a fixed cost (network + batcher + flat aggregator
    fee, in base-asset units) plus percentage aggregator and pool-swap fees.
    Rates are fractions, e.g. 0.003 == 0.3%.
    """
    fixed_swap_fee: float = 3.8
    aggregator_fee_rate: float = 0.0
    default_pool_fee: float = 0.003
    pool_fees: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_POOL_FEES))

    def pool_fee(self, venue: str) -> float:
        return self.pool_fees.get(venue, self.default_pool_fee)

    def percentage_rate(self, venue: str) -> float:
        return self.aggregator_fee_rate + self.pool_fee(venue)

    def leg_fee(self, venue: str, amount: float) -> float:
        """Total cost of swapping `amount` base-asset units on `venue`."""
        return self.fixed_swap_fee + amount * self.percentage_rate(venue)


@dataclass(frozen=True)
class TierThresholds:
    green_min_profit: float = 5.0

    def classify(self, net_profit: float) -> Tier:
        if net_profit > self.green_min_profit:
            return Tier.GREEN
        if net_profit > 0:
            return Tier.YELLOW
        return Tier.RED


@dataclass(frozen=True)
class TriangularConfig:
    jitter_amplitude: float = 0.01
    min_profit_pct: float = -1.0
    max_profit_pct: float = 5.0
    max_results: int = 20


@dataclass(frozen=True)
class RiskLimits:
    balance_reserve: float = 10.0
    max_trade_size: float = 200.0
    fee_buffer: float = 0.5
    min_profit_fraction: float = 0.01
    kill_guard_seconds: float = 3.0
    max_quote_age_seconds: float = 30.0


@dataclass(frozen=True)
class ExecutionTimings:
    poll_interval_seconds: float = 5.0
    max_confirmation_wait_seconds: float = 120.0
    dry_run_delay_seconds: float = 1.5
    default_leg_fee: float = 0.2
    dry_run_fee_rate: float = 0.006
    dry_run_fee_flat: float = 0.4

    def dry_run_fee(self, amount: float) -> float:
        return amount * self.dry_run_fee_rate + self.dry_run_fee_flat


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: float = 12.0
    stale_after_seconds: float = 30.0


@dataclass(frozen=True)
class TokenInfo:
    unit: str
    decimals: int = 6


@dataclass(frozen=True)
class AppConfig:
    system: Dict[str, Any] = field(default_factory=dict)
    venues: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    gateway: Dict[str, Any] = field(default_factory=dict)
    tokens: Dict[str, TokenInfo] = field(default_factory=dict)
    fees: FeeModel = field(default_factory=FeeModel)
    tiers: TierThresholds = field(default_factory=TierThresholds)
    triangular: TriangularConfig = field(default_factory=TriangularConfig)
    risk: RiskLimits = field(default_factory=RiskLimits)
    timings: ExecutionTimings = field(default_factory=ExecutionTimings)
    cache: CacheConfig = field(default_factory=CacheConfig)
    trade_settings: TradeSettings = field(default_factory=TradeSettings)

    @property
    def base_symbol(self) -> str:
        return self.system.get("base_symbol", "ADA")

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AppConfig":
        raw = raw or {}
        venues = raw.get("venues") or {}

        fee_raw = dict(raw.get("fees") or {})
        pool_fees = dict(DEFAULT_POOL_FEES)
        pool_fees.update(fee_raw.pop("pool_fees", None) or {})
        # A venue block may carry its own pool fee.
        for name, venue in venues.items():
            if venue and "pool_fee" in venue:
                pool_fees[name] = float(venue["pool_fee"])
        fee_raw["pool_fees"] = pool_fees

        tokens = {
            symbol: _build(TokenInfo, info)
            for symbol, info in (raw.get("tokens") or {}).items()
        }

        return cls(
            system=raw.get("system") or {},
            venues=venues,
            gateway=raw.get("gateway") or {},
            tokens=tokens,
            fees=_build(FeeModel, fee_raw),
            tiers=_build(TierThresholds, raw.get("tiers")),
            triangular=_build(TriangularConfig, raw.get("triangular")),
            risk=_build(RiskLimits, raw.get("risk")),
            timings=_build(ExecutionTimings, raw.get("execution")),
            cache=_build(CacheConfig, raw.get("cache")),
            trade_settings=TradeSettings.from_dict(raw.get("trade_settings") or {}),
        )


def load_config(path: str = "config.yaml") -> AppConfig:
    with open(path, "r") as f:
        return AppConfig.from_dict(yaml.safe_load(f))
