# dexarb/risk_engine.py
from dataclasses import dataclass
from typing import Optional
import logging
import time

from .config import RiskLimits
from .errors import InvalidOpportunityError
from .models import DailyPnL, Opportunity, TradeSettings


@dataclass(frozen=True, slots=True)
class RiskDecision:
    ok: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


ALLOW = RiskDecision(True)


def validate_opportunity(opp: Opportunity) -> None:
    """Input validation. Raises before any state transition."""
    if not opp.pair_key or not opp.buy_venue or not opp.sell_venue:
        raise InvalidOpportunityError("Opportunity is missing pair or venue information")
    if opp.buy_venue == opp.sell_venue:
        raise InvalidOpportunityError(f"Buy and sell venue are both {opp.buy_venue}")
    if opp.buy_price <= 0 or opp.sell_price <= 0:
        raise InvalidOpportunityError(f"Non-positive price on {opp.pair_key}")
    if opp.buy_price > opp.sell_price:
        raise InvalidOpportunityError(
            f"Buy price {opp.buy_price} above sell price {opp.sell_price} on {opp.pair_key}"
        )


class RiskEngine:
    """
    Decides 'Can we trade?' separately from the logic that finds the trade.
    Holds only the platform-wide limits; every check is a pure function of its
    arguments (settings snapshot, balance, ledger aggregates, clock).
    """
    def __init__(self, limits: Optional[RiskLimits] = None, logger: Optional[logging.Logger] = None):
        self.limits = limits or RiskLimits()
        self.logger = logger or logging.getLogger(__name__)

    def can_trade(self, settings: TradeSettings, balance: float, daily: DailyPnL) -> RiskDecision:
        # 1. Daily loss limit
        if daily.loss >= settings.daily_loss_limit:
            return self._reject(f"Daily loss limit reached ({daily.loss:.2f} lost today, "
                                f"limit {settings.daily_loss_limit:.2f})")

        # 2. Balance must cover the trade plus the fee reserve
        required = settings.trade_size + self.limits.balance_reserve
        if balance < required:
            return self._reject(f"Insufficient balance (need {required:.2f}, have {balance:.2f})")

        # 3. Platform-wide size ceiling
        if settings.trade_size > self.limits.max_trade_size:
            return self._reject(f"Trade size {settings.trade_size:.2f} exceeds max "
                                f"({self.limits.max_trade_size:.2f})")

        return ALLOW

    def check_cooldown(self, settings: TradeSettings, last_trade_at: Optional[float],
                       now: Optional[float] = None) -> RiskDecision:
        if last_trade_at is None:
            return ALLOW
        now = time.time() if now is None else now
        elapsed = now - last_trade_at
        if elapsed < settings.cooldown_seconds:
            remaining = settings.cooldown_seconds - elapsed
            return self._reject(f"Cooldown: {remaining:.0f}s remaining")
        return ALLOW

    def min_profit_required(self, settings: TradeSettings) -> float:
        return self.limits.fee_buffer + settings.trade_size * self.limits.min_profit_fraction

    def check_min_profit(self, opp: Opportunity, settings: TradeSettings) -> RiskDecision:
        required = self.min_profit_required(settings)
        if opp.net_profit < required:
            return self._reject(f"Profit {opp.net_profit:.2f} below minimum {required:.2f}")
        return ALLOW

    def trade_amount(self, settings: TradeSettings) -> float:
        return min(settings.trade_size, self.limits.max_trade_size)

    def pre_trade_check(self, opp: Opportunity, settings: TradeSettings, balance: float,
                        daily: DailyPnL, last_trade_at: Optional[float],
                        now: Optional[float] = None) -> RiskDecision:
        """
        The final gatekeeper: account-level limits, then cooldown, then the
        opportunity's own profitability.
        """
        decision = self.can_trade(settings, balance, daily)
        if not decision:
            return decision
        decision = self.check_cooldown(settings, last_trade_at, now)
        if not decision:
            return decision
        return self.check_min_profit(opp, settings)

    def _reject(self, reason: str) -> RiskDecision:
        self.logger.warning(f"⛔ REJECTED: {reason}")
        return RiskDecision(False, reason)
