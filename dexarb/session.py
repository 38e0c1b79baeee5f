# dexarb/session.py
import logging
import time
from typing import Callable, Optional, Sequence

from .config import RISK_LEVEL_MIN_SPREAD
from .errors import ExecutionInProgress, KillSwitchEngaged, TradeRejected
from .execution import CancelToken, ExecutionOrchestrator, StatusCallback
from .gateway import BalanceSource, NotificationSink
from .ledger import TradeLedger
from .models import (
    DailyPnL, ExecutionState, Opportunity, Tier, TradeRecord, TradeSettings, coerce_risk_level,
)
from .risk_engine import RiskEngine, validate_opportunity
from .storage import SettingsStore


class TradingSession:
    """
    Owns the single-flight invariant for one wallet: gates an opportunity
    through the risk policy, runs it on the orchestrator, records the outcome
    in the ledger and notifies.

    Only one TradingSession may drive a given wallet.
    """
    def __init__(self, orchestrator: ExecutionOrchestrator, risk: RiskEngine, ledger: TradeLedger,
                 settings_store: SettingsStore, balance: BalanceSource,
                 notifier: Optional[NotificationSink] = None, logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        self.orchestrator = orchestrator
        self.risk = risk
        self.ledger = ledger
        self.settings_store = settings_store
        self.balance = balance
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.last_decision: Optional[str] = None
        self._in_flight = False
        self._cancel: Optional[CancelToken] = None
        self._kill_guard_until = 0.0

    # --- STATE ---

    @property
    def settings(self) -> TradeSettings:
        return self.settings_store.get()

    @property
    def status(self) -> ExecutionState:
        return self.orchestrator.state

    @property
    def is_busy(self) -> bool:
        return self._in_flight

    @property
    def active_trade(self) -> Optional[TradeRecord]:
        return self.orchestrator.active_trade

    def daily_pnl(self) -> DailyPnL:
        return self.ledger.daily_pnl(self.clock())

    def update_settings(self, **changes) -> TradeSettings:
        """Choosing a risk level without an explicit spread applies that level's spread preset."""
        if "risk_level" in changes and "min_spread_pct" not in changes:
            level = coerce_risk_level(changes["risk_level"])
            changes.update(risk_level=level, min_spread_pct=RISK_LEVEL_MIN_SPREAD[level])
        return self.settings_store.update(**changes)

    def toggle_auto_trade(self) -> TradeSettings:
        return self.settings_store.update(auto_trade=not self.settings.auto_trade)

    # --- EXECUTION ---

    async def execute_trade(self, opp: Opportunity, on_status: Optional[StatusCallback] = None) -> TradeRecord:
        """
        Raises TradeRejected (or a subclass) when the trade may not start; no
        ledger entry is written in that case. Otherwise returns the terminal
        record, already appended to the ledger.
        """
        now = self.clock()
        if now < self._kill_guard_until:
            raise KillSwitchEngaged()
        if self._in_flight:
            raise ExecutionInProgress()

        # Claim the slot before the first await.
        self._in_flight = True
        try:
            validate_opportunity(opp)
            settings = self.settings
            try:
                balance = await self.balance.get_balance()
            except Exception as e:
                self.last_decision = f"Cannot trade: balance unavailable ({e})"
                raise TradeRejected(f"Balance unavailable: {e}") from e

            decision = self.risk.pre_trade_check(
                opp, settings, balance, self.ledger.daily_pnl(now), self.ledger.last_trade_at(), now,
            )
            if not decision:
                self.last_decision = f"Cannot trade: {decision.reason}"
                raise TradeRejected(decision.reason)

            self._cancel = CancelToken()
            record = await self.orchestrator.execute(
                opp, settings, self.risk.trade_amount(settings), self._cancel, on_status,
            )
            self.last_decision = record.error_message or f"{record.status.value}: {record.net_profit:+.2f}"
            try:
                await self.ledger.append(record)
            except OSError as e:
                # Limits read the ledger; without it auto-trading cannot be gated.
                self.logger.error(f"LEDGER WRITE FAILURE for {record.id}: {e}")
                self.settings_store.update(auto_trade=False)
                self.last_decision = f"Ledger unavailable, auto-trade disabled: {e}"
            await self._notify(record)
            return record
        finally:
            self._cancel = None
            self._in_flight = False
            if self.orchestrator.state is not ExecutionState.IDLE:
                self.orchestrator.reset(self.orchestrator.detail)

    async def _notify(self, record: TradeRecord):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(record)
        except Exception as e:
            self.logger.warning(f"Notification failed for {record.id}: {e}")

    def kill_switch(self):
        """
        Stops trading: cancels the in-flight orchestration at its next
        suspension point, forces IDLE, disables auto-trade and refuses new
        executions for the guard window. An already-broadcast transaction is
        not (and cannot be) cancelled.
        """
        if self._cancel is not None:
            self._cancel.cancel("kill switch engaged")
        self._kill_guard_until = self.clock() + self.risk.limits.kill_guard_seconds
        self.orchestrator.reset("KILLED - all trading stopped")
        self.settings_store.update(auto_trade=False)
        self.last_decision = "KILLED - all trading stopped"
        self.logger.critical("⛔ KILL SWITCH ACTIVATED: all trading stopped.")

    # --- AUTO TRADE ---

    @staticmethod
    def best_candidate(opps: Sequence[Opportunity]) -> Optional[Opportunity]:
        """Highest-ranked green opportunity, if any. Expects engine ordering."""
        for opp in opps:
            if opp.tier is Tier.GREEN:
                return opp
        return None

    async def auto_trade_cycle(self, opps: Sequence[Opportunity]) -> Optional[TradeRecord]:
        if not self.settings.auto_trade or self._in_flight:
            return None
        candidate = self.best_candidate(opps)
        if candidate is None:
            return None
        try:
            return await self.execute_trade(candidate)
        except TradeRejected as e:
            self.logger.info(f"Auto-trade skipped {candidate.id}: {e.reason}")
            return None
