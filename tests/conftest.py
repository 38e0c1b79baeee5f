"""Shared builders and collaborator fakes."""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from dexarb.config import ExecutionTimings, FeeModel, TierThresholds
from dexarb.errors import ConfirmationError, SigningError, SwapBuildError
from dexarb.gateway import (
    Confirmation, ConfirmationChecker, NotificationSink, Signer, SwapBuild, SwapBuilder,
)
from dexarb.models import Exposure, Opportunity, Quote, TradeRecord, TradeStatus
from dexarb.opportunity_engine import price_direct

T0 = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_quote():
    def _make(venue: str, symbol: str, price: float, depth: float = 50_000.0,
              observed_at: float = T0, base: str = "ADA") -> Quote:
        return Quote(venue, base, symbol, price, depth, observed_at)

    return _make


@pytest.fixture
def make_opportunity():
    """A priced direct opportunity; MIN bought at 0.30 on Minswap, sold at 0.33 on SundaeSwap."""

    def _make(buy_price: float = 0.30, sell_price: float = 0.33, trade_size: float = 200.0,
              buy_venue: str = "Minswap", sell_venue: str = "SundaeSwap", symbol: str = "MIN") -> Opportunity:
        buy = Quote(buy_venue, "ADA", symbol, buy_price, 50_000.0, T0)
        sell = Quote(sell_venue, "ADA", symbol, sell_price, 50_000.0, T0)
        return price_direct(buy, sell, trade_size, FeeModel(), TierThresholds())

    return _make


@pytest.fixture
def make_record():
    counter = iter(range(1, 10_000))

    def _make(net_profit: float = 1.0, created_at: float = T0, status: TradeStatus = TradeStatus.COMPLETED,
              completed_at: float | None = None, **overrides) -> TradeRecord:
        fields = dict(
            id=f"trade-{next(counter)}",
            created_at=created_at,
            pair_key="ADA/MIN",
            buy_venue="Minswap",
            sell_venue="SundaeSwap",
            amount=100.0,
            buy_price=0.30,
            sell_price=0.33,
            fees=0.4,
            net_profit=net_profit,
            status=status,
            exposure=Exposure.NONE,
            completed_at=completed_at,
        )
        fields.update(overrides)
        return TradeRecord(**fields)

    return _make


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeBuilder(SwapBuilder):
    """Records every build call; raises `fail_with` on the call numbered `fail_on` (1-based)."""

    def __init__(self, estimated_output: float | None = None, fail_on: int | None = None,
                 fail_with: Exception | None = None):
        self.calls = []
        self.estimated_output = estimated_output
        self.fail_on = fail_on
        self.fail_with = fail_with or SwapBuildError("aggregator returned HTTP 500")

    async def build_swap(self, from_symbol, to_symbol, amount, max_slippage_pct, venue_hint=None):
        self.calls.append((from_symbol, to_symbol, amount, venue_hint))
        if self.fail_on == len(self.calls):
            raise self.fail_with
        return SwapBuild(unsigned_tx=f"unsigned-{len(self.calls)}", estimated_output=self.estimated_output)


class FakeSigner(Signer):
    def __init__(self, fail_on: int | None = None):
        self.calls = []
        self.fail_on = fail_on

    async def sign_and_submit(self, unsigned_tx: str) -> str:
        self.calls.append(unsigned_tx)
        if self.fail_on == len(self.calls):
            raise SigningError("user declined to sign")
        return f"{len(self.calls):064x}"


class FakeChecker(ConfirmationChecker):
    """Confirms after `pending_polls` unconfirmed answers; never confirms when `pending_polls` is None."""

    def __init__(self, pending_polls: int | None = 0, fee: float | None = 0.17, errors: int = 0):
        self.pending_polls = pending_polls
        self.fee = fee
        self.errors = errors
        self.polls = {}

    async def check_confirmed(self, tx_ref: str) -> Confirmation:
        count = self.polls.get(tx_ref, 0) + 1
        self.polls[tx_ref] = count
        if count <= self.errors:
            raise ConfirmationError("indexer unreachable")
        if self.pending_polls is None or count <= self.errors + self.pending_polls:
            return Confirmation(confirmed=False)
        return Confirmation(confirmed=True, fee_paid=self.fee)


class RecordingNotifier(NotificationSink):
    def __init__(self, fail: bool = False):
        self.records = []
        self.fail = fail

    async def notify(self, record) -> None:
        self.records.append(record)
        if self.fail:
            raise RuntimeError("webhook down")


FAST = ExecutionTimings(
    poll_interval_seconds=0.01,
    max_confirmation_wait_seconds=0.2,
    dry_run_delay_seconds=0.0,
    default_leg_fee=0.2,
)


@asynccontextmanager
async def serve(*routes):
    """Runs an in-process HTTP server for `routes`; yields its base URL."""
    app = web.Application()
    app.add_routes(routes)
    async with TestServer(app) as server:
        yield str(server.make_url("")).rstrip("/")
