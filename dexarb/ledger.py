# dexarb/ledger.py
"""
Append-only trade history and the aggregates derived from it.

Aggregates are recomputed from the stored records on every call; there are no
running counters to drift.
"""
from bisect import insort
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
import logging
import time

from .errors import ArbError
from .models import DailyPnL, LedgerStats, TradeRecord
from .storage import LedgerStore


def start_of_local_day(now: Optional[float] = None) -> float:
    now = time.time() if now is None else now
    midnight = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.timestamp()


def daily_pnl(records: Iterable[TradeRecord], now: Optional[float] = None) -> DailyPnL:
    """Completed and dry-run trades created since local midnight."""
    day_start = start_of_local_day(now)
    today = [r for r in records if r.created_at >= day_start and r.status.counts_toward_pnl]

    profit = sum(r.net_profit for r in today if r.net_profit > 0)
    loss = sum(-r.net_profit for r in today if r.net_profit < 0)
    return DailyPnL(profit=profit, loss=loss, net=profit - loss, count=len(today))


def ledger_stats(records: Iterable[TradeRecord]) -> LedgerStats:
    settled = [r for r in records if r.status.counts_toward_pnl]
    if not settled:
        return LedgerStats()

    total_profit = sum(r.net_profit for r in settled)
    wins = sum(1 for r in settled if r.net_profit > 0)
    return LedgerStats(
        total=len(settled),
        total_profit=total_profit,
        wins=wins,
        win_rate_pct=wins / len(settled) * 100,
        avg_profit=total_profit / len(settled),
    )


class TradeLedger:
    """
    Single-writer, in-process view of the trade history on top of a LedgerStore.
    Records are kept ordered by creation time.
    """
    def __init__(self, store: LedgerStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self._records: List[TradeRecord] = []
        self._ids = set()

    async def open(self) -> "TradeLedger":
        loaded = await self.store.load()
        self._records = sorted(loaded, key=lambda r: r.created_at)
        self._ids = {r.id for r in self._records}
        self.logger.info(f"Ledger loaded: {len(self._records)} trades")
        return self

    async def append(self, record: TradeRecord) -> None:
        if not record.is_terminal:
            raise ArbError(f"Trade {record.id} is still {record.status.value}; only terminal trades are recorded")
        if record.id in self._ids:
            raise ArbError(f"Trade {record.id} already recorded")

        # Memory only follows a successful store write.
        await self.store.append(record)
        insort(self._records, record, key=lambda r: r.created_at)
        self._ids.add(record.id)

    @property
    def records(self) -> Tuple[TradeRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def recent(self, limit: int = 50) -> List[TradeRecord]:
        """Newest first."""
        return list(reversed(self._records[-limit:])) if limit > 0 else []

    def last_trade_at(self) -> Optional[float]:
        if not self._records:
            return None
        return max(r.finished_at for r in self._records)

    def daily_pnl(self, now: Optional[float] = None) -> DailyPnL:
        return daily_pnl(self._records, now)

    def stats(self) -> LedgerStats:
        return ledger_stats(self._records)
