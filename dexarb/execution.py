# dexarb/execution.py
import asyncio
import logging
import time
from typing import Callable, Optional

from .config import ExecutionTimings
from .errors import ConfirmationTimeout, ExecutionCancelled
from .gateway import ConfirmationChecker, Signer, SwapBuilder
from .models import (
    ExecutionState, Exposure, Opportunity, TradeRecord, TradeSettings, TradeStatus,
)

StatusCallback = Callable[[ExecutionState, str], None]


class CancelToken:
    """
    Cancellation scoped to one orchestration. Observed at every suspension
    point; an outstanding sign/submit call is never interrupted.
    """
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "kill switch engaged"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise ExecutionCancelled(self.reason)

    async def sleep(self, seconds: float):
        """Sleeps for `seconds`, waking early (and raising) if cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return
        raise ExecutionCancelled(self.reason)


class _LegFailed(Exception):
    def __init__(self, message: str, exposure: Exposure):
        super().__init__(message)
        self.message = message
        self.exposure = exposure


class ExecutionOrchestrator:
    """
    Drives one two-leg arbitrage through build -> sign/submit -> confirm for
    the buy leg, then the sell leg.

    The two legs are NOT atomic: a failure after the buy leg is broadcast
    leaves the wallet holding the intermediate token. Such failures are
    reported with Exposure.STRANDED and every transaction reference obtained
    so far, so the position can be reconciled by hand. Nothing broadcast-
    adjacent is retried.

    Single-flight is the caller's responsibility.
    """
    def __init__(self, builder: SwapBuilder, signer: Signer, checker: ConfirmationChecker,
                 timings: Optional[ExecutionTimings] = None, logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        self.builder = builder
        self.signer = signer
        self.checker = checker
        self.timings = timings or ExecutionTimings()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.state = ExecutionState.IDLE
        self.detail = ""
        self.active_trade: Optional[TradeRecord] = None
        self._on_status: Optional[StatusCallback] = None

    def reset(self, detail: str = ""):
        """Forces the machine back to IDLE and forgets the in-flight trade."""
        self.state = ExecutionState.IDLE
        self.detail = detail
        self.active_trade = None
        self._on_status = None

    async def execute(self, opp: Opportunity, settings: TradeSettings, amount: float,
                      cancel: Optional[CancelToken] = None,
                      on_status: Optional[StatusCallback] = None) -> TradeRecord:
        """
        Runs the trade to a terminal record. Never raises for collaborator
        failures; they become a FAILED record.
        """
        cancel = cancel or CancelToken()
        record = TradeRecord.open_for(opp, amount, settings.dry_run, now=self.clock())
        self.active_trade = record
        self._on_status = on_status

        # 1. DRY RUN CHECK
        if settings.dry_run:
            await self._simulate(record, opp, cancel)
        else:
            self.logger.info(f"⚡ EXECUTION TRIGGERED: {opp.pair_key} | Buy {opp.buy_venue} -> "
                             f"Sell {opp.sell_venue} | Amt: {amount}")
            try:
                await self._run_live(record, opp, settings, cancel)
            except _LegFailed as failure:
                self._fail(record, failure.message, failure.exposure)

        record.completed_at = self.clock()
        return record

    async def _simulate(self, record: TradeRecord, opp: Opportunity, cancel: CancelToken):
        self._transition(record, ExecutionState.BUILDING_BUY, "Simulating trade (dry run)...")
        try:
            await cancel.sleep(self.timings.dry_run_delay_seconds)
        except ExecutionCancelled as e:
            self._fail(record, f"No funds moved: dry run cancelled ({e}).", Exposure.NONE)
            return

        record.fees = self.timings.dry_run_fee(record.amount)
        record.net_profit = opp.net_profit
        record.status = TradeStatus.DRY_RUN
        self.state = ExecutionState.COMPLETED
        self.logger.info(f"🔵 DRY RUN: Trade Simulated | Est. Profit: {opp.net_profit:.4f}")
        self._emit(ExecutionState.COMPLETED, "Dry run recorded")

    async def _run_live(self, record: TradeRecord, opp: Opportunity, settings: TradeSettings,
                        cancel: CancelToken):
        base, token = opp.base_symbol, opp.quote_symbol
        slippage = settings.max_slippage_pct

        # 2. BUY LEG: nothing has moved until the signer broadcasts.
        try:
            cancel.raise_if_cancelled()
            self._transition(record, ExecutionState.BUILDING_BUY,
                             f"Building swap: {record.amount} {base} -> {token} on {opp.buy_venue}")
            buy_build = await self.builder.build_swap(base, token, record.amount, slippage, opp.buy_venue)

            cancel.raise_if_cancelled()
            self._transition(record, ExecutionState.SIGNING_BUY, "Waiting for wallet signature (buy)...")
            record.buy_tx_ref = await self.signer.sign_and_submit(buy_build.unsigned_tx)
        except Exception as e:
            raise _LegFailed(f"No funds moved: buy leg aborted before broadcast ({e}).", Exposure.NONE) from e

        self._transition(record, ExecutionState.CONFIRMING_BUY,
                         f"Buy tx submitted: {record.buy_tx_ref[:16]}... Waiting for confirmation...")
        try:
            buy_fee = await self._await_confirmation(record.buy_tx_ref, cancel)
        except (ConfirmationTimeout, ExecutionCancelled) as e:
            raise _LegFailed(
                f"Position may be stuck: buy tx {record.buy_tx_ref} was broadcast but not confirmed ({e}). "
                f"Check whether the wallet now holds {token} and reconcile before trading again.",
                Exposure.STRANDED,
            ) from e
        record.fees = buy_fee

        # 3. SELL LEG: from here on the wallet holds the intermediate token.
        tokens_held = buy_build.estimated_output or record.amount / opp.buy_price
        try:
            cancel.raise_if_cancelled()
            self._transition(record, ExecutionState.BUILDING_SELL,
                             f"Buy confirmed! Building sell: {token} -> {base} on {opp.sell_venue}")
            sell_build = await self.builder.build_swap(token, base, tokens_held, slippage, opp.sell_venue)

            cancel.raise_if_cancelled()
            self._transition(record, ExecutionState.SIGNING_SELL, "Waiting for wallet signature (sell)...")
            record.sell_tx_ref = await self.signer.sign_and_submit(sell_build.unsigned_tx)
        except Exception as e:
            raise _LegFailed(
                f"Position may be stuck: sell leg failed ({e}). Wallet now holds ~{tokens_held:.6f} {token} "
                f"bought on {opp.buy_venue} (buy tx {record.buy_tx_ref}).",
                Exposure.STRANDED,
            ) from e

        self._transition(record, ExecutionState.CONFIRMING_SELL,
                         f"Sell tx submitted: {record.sell_tx_ref[:16]}... Waiting for confirmation...")
        try:
            sell_fee = await self._await_confirmation(record.sell_tx_ref, cancel)
        except (ConfirmationTimeout, ExecutionCancelled) as e:
            record.fees = buy_fee + self.timings.default_leg_fee
            raise _LegFailed(
                f"Position may be stuck: sell tx {record.sell_tx_ref} was broadcast but not confirmed ({e}). "
                f"Wallet may still hold {token}.",
                Exposure.STRANDED,
            ) from e

        # 4. COMPLETED
        record.fees = buy_fee + sell_fee
        record.net_profit = opp.net_profit - record.fees
        record.status = TradeStatus.COMPLETED
        self.state = ExecutionState.COMPLETED
        self.logger.info(f"✅ SUCCESS: Buy {record.buy_tx_ref} | Sell {record.sell_tx_ref} | "
                         f"Net {record.net_profit:.4f}")
        self._emit(ExecutionState.COMPLETED,
                   f"Arbitrage completed! Buy: {record.buy_tx_ref[:8]}... Sell: {record.sell_tx_ref[:8]}...")

    async def _await_confirmation(self, tx_ref: str, cancel: CancelToken) -> float:
        """
        Polls until confirmed, the wait budget runs out, or the token is cancelled.
        Returns the realized fee. Poll errors are read-only and are polled through.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timings.max_confirmation_wait_seconds

        while True:
            cancel.raise_if_cancelled()
            try:
                conf = await self.checker.check_confirmed(tx_ref)
            except Exception as e:
                self.logger.warning(f"Confirmation check for {tx_ref[:16]} failed: {e}")
            else:
                if conf.confirmed:
                    return conf.fee_paid if conf.fee_paid is not None else self.timings.default_leg_fee

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConfirmationTimeout(
                    f"not confirmed within {self.timings.max_confirmation_wait_seconds:.0f}s"
                )
            await cancel.sleep(min(self.timings.poll_interval_seconds, remaining))

    def _transition(self, record: TradeRecord, state: ExecutionState, detail: str):
        self.state = state
        record.status = TradeStatus(state.value)
        self._emit(state, detail)

    def _emit(self, state: ExecutionState, detail: str):
        self.detail = detail
        self.logger.info(f"[{state.value}] {detail}")
        if self._on_status is None:
            return
        try:
            self._on_status(state, detail)
        except Exception:
            self.logger.exception("Status callback failed")

    def _fail(self, record: TradeRecord, message: str, exposure: Exposure):
        record.status = TradeStatus.FAILED
        record.error_message = message
        record.exposure = exposure
        record.net_profit = 0.0
        self.state = ExecutionState.FAILED

        if exposure is Exposure.STRANDED:
            self.logger.critical(f"🚨 {message}")
        else:
            self.logger.warning(f"⚠️ FAILED: {message}")
        self._emit(ExecutionState.FAILED, message)
