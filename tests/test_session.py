"""
Tests for dexarb/session.py - single-flight, risk gating, ledger recording and the kill switch.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from dexarb.config import RiskLimits
from dexarb.errors import (
    ExecutionInProgress, InvalidOpportunityError, InvalidSettingsError, KillSwitchEngaged, TradeRejected,
)
from dexarb.execution import ExecutionOrchestrator
from dexarb.gateway import StaticBalanceSource
from dexarb.ledger import TradeLedger
from dexarb.models import ExecutionState, Exposure, RiskLevel, Tier, TradeSettings, TradeStatus
from dexarb.risk_engine import RiskEngine
from dexarb.session import TradingSession
from dexarb.storage import InMemoryLedgerStore, InMemorySettingsStore

from conftest import FAST, FakeBuilder, FakeChecker, FakeSigner, RecordingNotifier


@pytest.fixture
def build_session(clock):
    def _build(settings: TradeSettings | None = None, balance: float = 1000.0, timings=FAST,
               notifier=None, builder=None, checker=None) -> TradingSession:
        settings = settings or TradeSettings(trade_size=100.0, cooldown_seconds=60.0)
        orchestrator = ExecutionOrchestrator(
            builder or FakeBuilder(), FakeSigner(), checker or FakeChecker(), timings, clock=clock,
        )
        return TradingSession(
            orchestrator,
            RiskEngine(RiskLimits()),
            TradeLedger(InMemoryLedgerStore()),
            InMemorySettingsStore(settings),
            StaticBalanceSource(balance),
            notifier=notifier if notifier is not None else RecordingNotifier(),
            clock=clock,
        )

    return _build


class TestExecuteTrade:
    @pytest.mark.asyncio
    async def test_dry_run_is_recorded_and_notified(self, build_session, make_opportunity):
        notifier = RecordingNotifier()
        session = build_session(notifier=notifier)
        record = await session.execute_trade(make_opportunity())

        assert record.status is TradeStatus.DRY_RUN
        assert record.amount == 100.0
        assert list(session.ledger.records) == [record]
        assert notifier.records == [record]
        assert session.status is ExecutionState.IDLE
        assert not session.is_busy
        assert session.daily_pnl().count == 1

    @pytest.mark.asyncio
    async def test_rejection_writes_nothing(self, build_session, make_opportunity):
        notifier = RecordingNotifier()
        session = build_session(balance=50.0, notifier=notifier)

        with pytest.raises(TradeRejected) as exc_info:
            await session.execute_trade(make_opportunity())

        assert "Insufficient balance" in exc_info.value.reason
        assert len(session.ledger) == 0
        assert notifier.records == []
        assert session.last_decision.startswith("Cannot trade:")
        assert not session.is_busy

    @pytest.mark.asyncio
    async def test_invalid_opportunity_releases_slot(self, build_session, make_opportunity):
        session = build_session()
        bad = replace(make_opportunity(), buy_price=1.0)

        with pytest.raises(InvalidOpportunityError):
            await session.execute_trade(bad)
        assert not session.is_busy
        assert len(session.ledger) == 0

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_trade(self, build_session, make_opportunity, clock):
        session = build_session()
        await session.execute_trade(make_opportunity())

        clock.advance(10)
        with pytest.raises(TradeRejected) as exc_info:
            await session.execute_trade(make_opportunity())
        assert exc_info.value.reason.startswith("Cooldown")
        assert len(session.ledger) == 1

        clock.advance(51)
        await session.execute_trade(make_opportunity())
        assert len(session.ledger) == 2

    @pytest.mark.asyncio
    async def test_failed_live_trade_is_recorded(self, build_session, make_opportunity):
        session = build_session(
            settings=TradeSettings(trade_size=100.0, dry_run=False),
            builder=FakeBuilder(fail_on=2),
        )
        record = await session.execute_trade(make_opportunity())

        assert record.status is TradeStatus.FAILED
        assert record.exposure is Exposure.STRANDED
        assert session.ledger.records[-1] is record
        assert session.last_decision == record.error_message
        assert session.status is ExecutionState.IDLE

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_affect_trade(self, build_session, make_opportunity):
        session = build_session(notifier=RecordingNotifier(fail=True))
        record = await session.execute_trade(make_opportunity())

        assert record.status is TradeStatus.DRY_RUN
        assert len(session.ledger) == 1


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_execution_rejected_while_busy(self, build_session, make_opportunity):
        session = build_session(timings=replace(FAST, dry_run_delay_seconds=0.05))

        first = asyncio.create_task(session.execute_trade(make_opportunity()))
        await asyncio.sleep(0)
        assert session.is_busy
        assert session.active_trade is not None

        with pytest.raises(ExecutionInProgress):
            await session.execute_trade(make_opportunity())

        record = await first
        assert record.status is TradeStatus.DRY_RUN
        assert len(session.ledger) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_only_one_runs(self, build_session, make_opportunity):
        session = build_session(timings=replace(FAST, dry_run_delay_seconds=0.02))
        results = await asyncio.gather(
            *(session.execute_trade(make_opportunity()) for _ in range(5)),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, ExecutionInProgress)]
        assert len(rejected) == 4
        assert len(session.ledger) == 1


class TestKillSwitch:
    @pytest.mark.asyncio
    async def test_cancels_in_flight_and_disables_auto(self, build_session, make_opportunity):
        session = build_session(
            settings=TradeSettings(trade_size=100.0, auto_trade=True, cooldown_seconds=0),
            timings=replace(FAST, dry_run_delay_seconds=5.0),
        )
        task = asyncio.create_task(session.execute_trade(make_opportunity()))
        await asyncio.sleep(0.01)

        session.kill_switch()
        record = await asyncio.wait_for(task, timeout=1.0)

        assert record.status is TradeStatus.FAILED
        assert record.exposure is Exposure.NONE
        assert session.settings.auto_trade is False
        assert session.status is ExecutionState.IDLE
        assert len(session.ledger) == 1

    @pytest.mark.asyncio
    async def test_guard_window(self, build_session, make_opportunity, clock):
        session = build_session(settings=TradeSettings(trade_size=100.0, cooldown_seconds=0))
        session.kill_switch()

        with pytest.raises(KillSwitchEngaged):
            await session.execute_trade(make_opportunity())

        clock.advance(3.1)
        record = await session.execute_trade(make_opportunity())
        assert record.status is TradeStatus.DRY_RUN

    @pytest.mark.asyncio
    async def test_idle_kill_is_harmless(self, build_session):
        session = build_session()
        session.kill_switch()
        assert session.status is ExecutionState.IDLE
        assert session.last_decision.startswith("KILLED")


class TestAutoTrade:
    @pytest.mark.asyncio
    async def test_disabled_does_nothing(self, build_session, make_opportunity):
        session = build_session()
        assert await session.auto_trade_cycle([make_opportunity()]) is None
        assert len(session.ledger) == 0

    @pytest.mark.asyncio
    async def test_takes_first_green(self, build_session, make_opportunity):
        session = build_session(settings=TradeSettings(trade_size=100.0, auto_trade=True))
        yellow = make_opportunity(0.30, 0.315)
        green = make_opportunity(0.30, 0.33)
        assert yellow.tier is Tier.YELLOW and green.tier is Tier.GREEN

        record = await session.auto_trade_cycle([yellow, green])
        assert record is not None
        assert record.pair_key == green.pair_key
        assert record.sell_price == green.sell_price

    @pytest.mark.asyncio
    async def test_no_green_no_trade(self, build_session, make_opportunity):
        session = build_session(settings=TradeSettings(trade_size=100.0, auto_trade=True))
        assert await session.auto_trade_cycle([make_opportunity(0.30, 0.315)]) is None

    @pytest.mark.asyncio
    async def test_rejection_is_swallowed(self, build_session, make_opportunity):
        session = build_session(settings=TradeSettings(trade_size=100.0, auto_trade=True), balance=5.0)
        assert await session.auto_trade_cycle([make_opportunity()]) is None
        assert len(session.ledger) == 0

    def test_toggle_auto_trade(self, build_session):
        session = build_session()
        assert session.toggle_auto_trade().auto_trade is True
        assert session.toggle_auto_trade().auto_trade is False


class TestSettings:
    def test_risk_level_applies_spread_preset(self, build_session):
        session = build_session()
        settings = session.update_settings(risk_level="conservative")

        assert settings.risk_level is RiskLevel.CONSERVATIVE
        assert settings.min_spread_pct == 5.0

    def test_explicit_spread_wins(self, build_session):
        session = build_session()
        settings = session.update_settings(risk_level="aggressive", min_spread_pct=0.5)
        assert settings.min_spread_pct == 0.5

    def test_invalid_update_keeps_snapshot(self, build_session):
        session = build_session()
        with pytest.raises(InvalidSettingsError):
            session.update_settings(risk_level="yolo")
        assert session.settings.risk_level is RiskLevel.MODERATE


class FailingBalance(StaticBalanceSource):
    async def get_balance(self) -> float:
        raise ConnectionError("indexer down")


@pytest.mark.asyncio
async def test_balance_outage_is_a_rejection(build_session, make_opportunity):
    session = build_session()
    session.balance = FailingBalance(0.0)

    with pytest.raises(TradeRejected) as exc_info:
        await session.execute_trade(make_opportunity())

    assert "Balance unavailable" in exc_info.value.reason
    assert not session.is_busy
    assert len(session.ledger) == 0


class BrokenLedgerStore(InMemoryLedgerStore):
    async def append(self, record):
        raise OSError("read-only file system")


@pytest.mark.asyncio
async def test_ledger_failure_disables_auto_trade(build_session, make_opportunity):
    session = build_session(settings=TradeSettings(trade_size=100.0, auto_trade=True))
    session.ledger = TradeLedger(BrokenLedgerStore())

    record = await session.auto_trade_cycle([make_opportunity()])

    assert record is not None
    assert record.status is TradeStatus.DRY_RUN
    assert len(session.ledger) == 0
    assert session.settings.auto_trade is False
    assert session.last_decision.startswith("Ledger unavailable")
    assert not session.is_busy
