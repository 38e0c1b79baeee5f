# dexarb/models.py
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Dict, Optional, Tuple
import time
import uuid

from .errors import InvalidSettingsError


class VenueState(Enum):
    LIVE = "live"
    STALE = "stale"
    DEMO = "demo"


class Tier(Enum):
    """Coarse profitability bucket used for ranking and display."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class RiskLevel(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class ExecutionState(Enum):
    """
    States of the execution orchestrator.
    IDLE is the resting state; COMPLETED and FAILED are terminal for one invocation.
    """
    IDLE = "idle"
    BUILDING_BUY = "building-buy"
    SIGNING_BUY = "signing-buy"
    CONFIRMING_BUY = "confirming-buy"
    BUILDING_SELL = "building-sell"
    SIGNING_SELL = "signing-sell"
    CONFIRMING_SELL = "confirming-sell"
    COMPLETED = "completed"
    FAILED = "failed"


class TradeStatus(Enum):
    """
    Lifecycle of a ledger entry.
    DRY_RUN short-circuits the whole pipeline.
    """
    PENDING = "pending"
    BUILDING_BUY = "building-buy"
    SIGNING_BUY = "signing-buy"
    CONFIRMING_BUY = "confirming-buy"
    BUILDING_SELL = "building-sell"
    SIGNING_SELL = "signing-sell"
    CONFIRMING_SELL = "confirming-sell"
    COMPLETED = "completed"
    FAILED = "failed"
    DRY_RUN = "dry-run"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.COMPLETED, TradeStatus.FAILED, TradeStatus.DRY_RUN)

    @property
    def counts_toward_pnl(self) -> bool:
        return self in (TradeStatus.COMPLETED, TradeStatus.DRY_RUN)


class Exposure(Enum):
    """Whether a failed trade left funds in the intermediate asset."""
    NONE = "none"
    STRANDED = "stranded"


@dataclass(frozen=True, slots=True)
class Quote:
    """
    One price observation of `quote_symbol` on a venue.
    `price` is expressed in base-asset units per token, `depth` in base-asset units.
    """
    venue: str
    base_symbol: str
    quote_symbol: str
    price: float
    depth: float
    observed_at: float

    @property
    def pair_key(self) -> str:
        return f"{self.base_symbol}/{self.quote_symbol}"

    def age(self, now: Optional[float] = None) -> float:
        """Returns the age of the observation in seconds."""
        return (time.time() if now is None else now) - self.observed_at


@dataclass(frozen=True, slots=True)
class VenueStatus:
    venue: str
    state: VenueState
    last_update: float
    quote_count: int
    response_latency_ms: Optional[float] = None


@dataclass(frozen=True, slots=True)
class Opportunity:
    """
    A fee-adjusted cross-venue (direct) arbitrage candidate.
    `buy_venue` is always the cheaper side, so buy_price <= sell_price.
    """
    id: str
    pair_key: str
    base_symbol: str
    quote_symbol: str
    buy_venue: str
    sell_venue: str
    buy_price: float
    sell_price: float
    spread_pct: float
    gross_profit: float
    net_profit: float
    buy_depth: float
    sell_depth: float
    observed_at: float
    tier: Tier


@dataclass(frozen=True, slots=True)
class TriangularLeg:
    from_symbol: str
    to_symbol: str
    price: float


@dataclass(frozen=True, slots=True)
class TriangularOpportunity:
    """
    A modeled three-leg round trip on a single venue.

    The middle leg price is derived from two base-quoted pairs and perturbed by
    a simulated slippage jitter; it is NOT an observed pool price. Re-query the
    real third-leg pool before acting on one of these.
    """
    id: str
    venue: str
    route: Tuple[str, ...]
    legs: Tuple[TriangularLeg, ...]
    profit_pct: float
    net_profit: float
    observed_at: float


@dataclass(frozen=True, slots=True)
class OpportunityStats:
    total: int
    avg_spread_pct: float
    best_spread_pct: float


@dataclass(frozen=True, slots=True)
class TradeSettings:
    """
    Session-owned trading configuration.
    The core reads one immutable snapshot per decision; updates produce a new snapshot.
    """
    trade_size: float = 200.0
    min_spread_pct: float = 2.0
    max_slippage_pct: float = 1.5
    risk_level: RiskLevel = RiskLevel.MODERATE
    daily_loss_limit: float = 50.0
    dry_run: bool = True
    auto_trade: bool = False
    cooldown_seconds: float = 60.0

    def validate(self) -> "TradeSettings":
        if self.trade_size <= 0:
            raise InvalidSettingsError(f"trade_size must be positive, got {self.trade_size}")
        if self.min_spread_pct < 0:
            raise InvalidSettingsError(f"min_spread_pct cannot be negative, got {self.min_spread_pct}")
        if not 0 < self.max_slippage_pct <= 50:
            raise InvalidSettingsError(f"max_slippage_pct must be in (0, 50], got {self.max_slippage_pct}")
        if self.daily_loss_limit < 0:
            raise InvalidSettingsError(f"daily_loss_limit cannot be negative, got {self.daily_loss_limit}")
        if self.cooldown_seconds < 0:
            raise InvalidSettingsError(f"cooldown_seconds cannot be negative, got {self.cooldown_seconds}")
        if not isinstance(self.risk_level, RiskLevel):
            raise InvalidSettingsError(f"unknown risk_level {self.risk_level!r}")
        for flag in ("dry_run", "auto_trade"):
            if not isinstance(getattr(self, flag), bool):
                raise InvalidSettingsError(f"{flag} must be true or false, got {getattr(self, flag)!r}")
        return self

    def merged(self, **changes) -> "TradeSettings":
        """Returns a validated copy with `changes` applied."""
        if "risk_level" in changes:
            changes["risk_level"] = coerce_risk_level(changes["risk_level"])
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise InvalidSettingsError(f"unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "TradeSettings":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls().merged(**known)


def coerce_risk_level(value) -> RiskLevel:
    if isinstance(value, RiskLevel):
        return value
    try:
        return RiskLevel(str(value).lower())
    except ValueError:
        raise InvalidSettingsError(f"unknown risk_level {value!r}") from None


def generate_trade_id(now: Optional[float] = None) -> str:
    ms = int((time.time() if now is None else now) * 1000)
    return f"trade-{ms}-{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class TradeRecord:
    """
    One execution attempt. Mutable only while in flight; the ledger refuses
    records that have not reached a terminal status.
    """
    id: str
    created_at: float
    pair_key: str
    buy_venue: str
    sell_venue: str
    amount: float
    buy_price: float
    sell_price: float
    fees: float = 0.0
    net_profit: float = 0.0
    status: TradeStatus = TradeStatus.PENDING
    buy_tx_ref: Optional[str] = None
    sell_tx_ref: Optional[str] = None
    error_message: Optional[str] = None
    dry_run: bool = False
    exposure: Exposure = Exposure.NONE
    completed_at: Optional[float] = None

    CSV_FIELDS = (
        "id", "created_at", "pair_key", "buy_venue", "sell_venue", "amount",
        "buy_price", "sell_price", "fees", "net_profit", "status", "buy_tx_ref",
        "sell_tx_ref", "error_message", "dry_run", "exposure", "completed_at",
    )

    @classmethod
    def open_for(cls, opp: Opportunity, amount: float, dry_run: bool, now: Optional[float] = None) -> "TradeRecord":
        now = time.time() if now is None else now
        return cls(
            id=generate_trade_id(now),
            created_at=now,
            pair_key=opp.pair_key,
            buy_venue=opp.buy_venue,
            sell_venue=opp.sell_venue,
            amount=amount,
            buy_price=opp.buy_price,
            sell_price=opp.sell_price,
            dry_run=dry_run,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def finished_at(self) -> float:
        return self.completed_at if self.completed_at is not None else self.created_at

    def to_row(self) -> list:
        row = []
        for name in self.CSV_FIELDS:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            row.append("" if value is None else str(value))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "TradeRecord":
        def opt(key):
            value = row.get(key, "")
            return value if value != "" else None

        completed = opt("completed_at")
        return cls(
            id=row["id"],
            created_at=float(row["created_at"]),
            pair_key=row["pair_key"],
            buy_venue=row["buy_venue"],
            sell_venue=row["sell_venue"],
            amount=float(row["amount"]),
            buy_price=float(row["buy_price"]),
            sell_price=float(row["sell_price"]),
            fees=float(row.get("fees") or 0.0),
            net_profit=float(row.get("net_profit") or 0.0),
            status=TradeStatus(row["status"]),
            buy_tx_ref=opt("buy_tx_ref"),
            sell_tx_ref=opt("sell_tx_ref"),
            error_message=opt("error_message"),
            dry_run=row.get("dry_run") == "True",
            exposure=Exposure(row.get("exposure") or Exposure.NONE.value),
            completed_at=float(completed) if completed is not None else None,
        )


@dataclass(frozen=True, slots=True)
class DailyPnL:
    profit: float = 0.0
    loss: float = 0.0  # positive magnitude
    net: float = 0.0
    count: int = 0


@dataclass(frozen=True, slots=True)
class LedgerStats:
    total: int = 0
    total_profit: float = 0.0
    wins: int = 0
    win_rate_pct: float = 0.0
    avg_profit: float = 0.0
