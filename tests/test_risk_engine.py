"""
Tests for dexarb/risk_engine.py - account limits, cooldown and profit floor.
"""

from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from dexarb.config import RiskLimits
from dexarb.errors import InvalidOpportunityError
from dexarb.models import DailyPnL, TradeSettings
from dexarb.risk_engine import RiskEngine, validate_opportunity

from conftest import T0


@pytest.fixture
def risk():
    return RiskEngine(RiskLimits())


@pytest.fixture
def settings():
    return TradeSettings(trade_size=100.0, daily_loss_limit=50.0, cooldown_seconds=60.0)


class TestCanTrade:
    def test_allows_within_limits(self, risk, settings):
        decision = risk.can_trade(settings, balance=1000.0, daily=DailyPnL())
        assert decision
        assert decision.reason is None

    def test_daily_loss_limit_reached(self, risk, settings):
        decision = risk.can_trade(settings, 1000.0, DailyPnL(loss=50.0, net=-50.0, count=3))
        assert not decision
        assert "Daily loss limit" in decision.reason

    def test_just_under_daily_loss_limit(self, risk, settings):
        assert risk.can_trade(settings, 1000.0, DailyPnL(loss=49.99, net=-49.99, count=3))

    def test_profit_does_not_offset_loss(self, risk, settings):
        daily = DailyPnL(profit=100.0, loss=50.0, net=50.0, count=4)
        assert not risk.can_trade(settings, 1000.0, daily)

    def test_zero_loss_limit_blocks_everything(self, risk, settings):
        assert not risk.can_trade(replace(settings, daily_loss_limit=0.0), 1000.0, DailyPnL())

    def test_balance_must_cover_size_plus_reserve(self, risk, settings):
        decision = risk.can_trade(settings, balance=109.99, daily=DailyPnL())
        assert not decision
        assert "Insufficient balance" in decision.reason
        assert risk.can_trade(settings, balance=110.0, daily=DailyPnL())

    def test_size_ceiling(self, risk, settings):
        decision = risk.can_trade(replace(settings, trade_size=250.0), 10_000.0, DailyPnL())
        assert not decision
        assert "exceeds max" in decision.reason

    def test_trade_amount_is_capped(self, settings):
        risk = RiskEngine(RiskLimits(max_trade_size=80.0))
        assert risk.trade_amount(settings) == 80.0
        assert RiskEngine().trade_amount(settings) == 100.0


class TestCooldown:
    def test_no_previous_trade(self, risk, settings):
        assert risk.check_cooldown(settings, None, T0)

    def test_inside_window(self, risk, settings):
        decision = risk.check_cooldown(settings, last_trade_at=T0, now=T0 + 30)
        assert not decision
        assert decision.reason == "Cooldown: 30s remaining"

    def test_window_elapsed(self, risk, settings):
        assert risk.check_cooldown(settings, last_trade_at=T0, now=T0 + 60)

    def test_zero_cooldown(self, risk, settings):
        assert risk.check_cooldown(replace(settings, cooldown_seconds=0), T0, T0)


class TestMinProfit:
    def test_required_floor(self, risk, settings):
        # 0.5 fee buffer + 1% of 100
        assert risk.min_profit_required(settings) == pytest.approx(1.5)

    def test_below_floor_rejected(self, risk, settings, make_opportunity):
        opp = replace(make_opportunity(), net_profit=1.49)
        decision = risk.check_min_profit(opp, settings)
        assert not decision
        assert "below minimum" in decision.reason

    def test_at_floor_allowed(self, risk, settings, make_opportunity):
        assert risk.check_min_profit(replace(make_opportunity(), net_profit=1.5), settings)


class TestPreTradeCheck:
    def test_all_pass(self, risk, settings, make_opportunity):
        assert risk.pre_trade_check(make_opportunity(), settings, 1000.0, DailyPnL(), None, T0)

    def test_account_limits_checked_before_cooldown(self, risk, settings, make_opportunity):
        decision = risk.pre_trade_check(
            make_opportunity(), settings, 1000.0, DailyPnL(loss=60.0), last_trade_at=T0, now=T0 + 1,
        )
        assert "Daily loss limit" in decision.reason

    def test_cooldown_checked_before_profit(self, risk, settings, make_opportunity):
        opp = replace(make_opportunity(), net_profit=0.1)
        decision = risk.pre_trade_check(opp, settings, 1000.0, DailyPnL(), last_trade_at=T0, now=T0 + 1)
        assert decision.reason.startswith("Cooldown")

    def test_only_first_rejection_is_logged(self, settings, make_opportunity, caplog):
        risk = RiskEngine(RiskLimits(), logging.getLogger("dexarb.test_risk"))
        opp = replace(make_opportunity(), net_profit=-8.14)

        with caplog.at_level(logging.WARNING, logger="dexarb.test_risk"):
            decision = risk.pre_trade_check(opp, settings, 1000.0, DailyPnL(loss=60.0), last_trade_at=T0, now=T0 + 10)

        rejected = [r.getMessage() for r in caplog.records if "REJECTED" in r.getMessage()]
        assert len(rejected) == 1
        assert "Daily loss limit" in rejected[0]
        assert decision.reason in rejected[0]


class TestValidateOpportunity:
    def test_valid(self, make_opportunity):
        validate_opportunity(make_opportunity())

    def test_same_venue(self, make_opportunity):
        with pytest.raises(InvalidOpportunityError):
            validate_opportunity(make_opportunity(sell_venue="Minswap"))

    def test_inverted_prices(self, make_opportunity):
        opp = replace(make_opportunity(), buy_price=0.4)
        with pytest.raises(InvalidOpportunityError):
            validate_opportunity(opp)

    def test_non_positive_price(self, make_opportunity):
        with pytest.raises(ValueError):
            validate_opportunity(replace(make_opportunity(), buy_price=0.0))

    def test_missing_pair(self, make_opportunity):
        with pytest.raises(InvalidOpportunityError):
            validate_opportunity(replace(make_opportunity(), pair_key=""))
