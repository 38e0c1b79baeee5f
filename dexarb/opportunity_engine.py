# dexarb/opportunity_engine.py
"""
Opportunity detection over a snapshot of per-venue quotes.

Pure functions: no I/O and no shared state, so they can run concurrently over
immutable snapshots. The only non-determinism is the triangular leg jitter,
which is injectable.
"""
from collections import defaultdict
from itertools import combinations, permutations
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import logging
import random
import time

from .config import FeeModel, TierThresholds, TriangularConfig
from .models import (
    Opportunity, OpportunityStats, Quote, Tier, TriangularLeg, TriangularOpportunity,
)

logger = logging.getLogger(__name__)

# Returns a relative perturbation, e.g. 0.004 == +0.4%.
JitterSource = Callable[[], float]


def uniform_jitter(amplitude: float = 0.01, rng: Optional[random.Random] = None) -> JitterSource:
    """Uniform jitter in [-amplitude, +amplitude]. Pass a seeded `rng` for reproducible output."""
    rng = rng or random.Random()

    def draw() -> float:
        return (rng.random() - 0.5) * 2 * amplitude

    return draw


def constant_jitter(value: float = 0.0) -> JitterSource:
    return lambda: value


def classify_tier(net_profit: float, thresholds: Optional[TierThresholds] = None) -> Tier:
    return (thresholds or TierThresholds()).classify(net_profit)


def fresh_quotes(quotes: Iterable[Quote], max_age_seconds: float, now: Optional[float] = None) -> List[Quote]:
    """
    Drops quotes older than `max_age_seconds` and quotes with a non-positive price.
    Stale data leads to phantom spreads.
    """
    now = time.time() if now is None else now
    return [q for q in quotes if q.price > 0 and q.age(now) <= max_age_seconds]


def _group_by_pair(quotes: Iterable[Quote]) -> Dict[str, Dict[str, Quote]]:
    # (venue, pair_key) is the uniqueness key; a later quote replaces an earlier one.
    by_pair: Dict[str, Dict[str, Quote]] = defaultdict(dict)
    for q in quotes:
        by_pair[q.pair_key][q.venue] = q
    return by_pair


def price_direct(buy: Quote, sell: Quote, trade_size: float, fees: FeeModel,
                 tiers: TierThresholds) -> Opportunity:
    """Fee-adjusted profit of buying `trade_size` worth on `buy` and selling on `sell`."""
    tokens_acquired = trade_size / buy.price
    gross_proceeds = tokens_acquired * sell.price
    buy_leg_fees = fees.leg_fee(buy.venue, trade_size)
    sell_leg_fees = fees.leg_fee(sell.venue, gross_proceeds)
    net_profit = gross_proceeds - trade_size - buy_leg_fees - sell_leg_fees

    return Opportunity(
        id=f"{buy.pair_key}-{buy.venue}-{sell.venue}",
        pair_key=buy.pair_key,
        base_symbol=buy.base_symbol,
        quote_symbol=buy.quote_symbol,
        buy_venue=buy.venue,
        sell_venue=sell.venue,
        buy_price=buy.price,
        sell_price=sell.price,
        spread_pct=(sell.price - buy.price) / buy.price * 100,
        gross_profit=gross_proceeds - trade_size,
        net_profit=net_profit,
        buy_depth=buy.depth,
        sell_depth=sell.depth,
        observed_at=min(buy.observed_at, sell.observed_at),
        tier=classify_tier(net_profit, tiers),
    )


def find_direct_opportunities(
    quotes: Sequence[Quote],
    trade_size: float,
    min_spread_pct: float = 0.0,
    fees: Optional[FeeModel] = None,
    tiers: Optional[TierThresholds] = None,
) -> List[Opportunity]:
    """
    Cross-venue candidates for every pair quoted by at least two venues,
    ranked by fee-adjusted net profit (highest first).
    """
    fees = fees or FeeModel()
    tiers = tiers or TierThresholds()
    opps: List[Opportunity] = []

    for pair_key, venues in _group_by_pair(quotes).items():
        if len(venues) < 2:
            continue

        for a, b in combinations(venues.values(), 2):
            buy, sell = (a, b) if a.price < b.price else (b, a)
            if buy.price <= 0:
                continue

            spread_pct = (sell.price - buy.price) / buy.price * 100
            if spread_pct < min_spread_pct:
                continue

            opps.append(price_direct(buy, sell, trade_size, fees, tiers))

    opps.sort(key=lambda o: o.net_profit, reverse=True)
    logger.debug("Direct scan: %d quotes -> %d opportunities", len(quotes), len(opps))
    return opps


def find_triangular_opportunities(
    quotes: Sequence[Quote],
    trade_size: float,
    base_symbol: str = "ADA",
    fees: Optional[FeeModel] = None,
    config: Optional[TriangularConfig] = None,
    jitter: Optional[JitterSource] = None,
) -> List[TriangularOpportunity]:
    """
    Models base -> X -> Y -> base round trips on each venue.

    Only base-quoted pairs are observed, so the X -> Y price is derived as
    price(base/X) / price(base/Y) and perturbed by `jitter` to approximate an
    unobserved pool. Results are an approximation, not executable quotes.
    """
    fees = fees or FeeModel()
    config = config or TriangularConfig()
    jitter = jitter or uniform_jitter(config.jitter_amplitude)

    by_venue: Dict[str, Dict[str, Quote]] = defaultdict(dict)
    for q in quotes:
        if q.base_symbol == base_symbol:
            by_venue[q.venue][q.quote_symbol] = q

    results: List[TriangularOpportunity] = []
    for venue, book in by_venue.items():
        # Three swaps, each charged a fixed and a percentage fee on the round-trip amount.
        round_trip_fees = 3 * fees.leg_fee(venue, trade_size)

        for x, y in permutations(book.keys(), 2):
            first, last = book[x], book[y]
            if first.price <= 0 or last.price <= 0:
                continue

            cross_price = first.price / last.price * (1 + jitter())
            x_amount = trade_size / first.price
            y_amount = x_amount * cross_price
            returned = y_amount * last.price

            net_profit = returned - trade_size - round_trip_fees
            profit_pct = net_profit / trade_size * 100
            if not config.min_profit_pct < profit_pct < config.max_profit_pct:
                continue

            results.append(TriangularOpportunity(
                id=f"tri-{venue}-{base_symbol}-{x}-{y}",
                venue=venue,
                route=(base_symbol, x, y, base_symbol),
                legs=(
                    TriangularLeg(base_symbol, x, first.price),
                    TriangularLeg(x, y, cross_price),
                    TriangularLeg(y, base_symbol, last.price),
                ),
                profit_pct=profit_pct,
                net_profit=net_profit,
                observed_at=min(first.observed_at, last.observed_at),
            ))

    results.sort(key=lambda t: t.profit_pct, reverse=True)
    return results[:config.max_results]


def summarize_opportunities(opps: Sequence[Opportunity]) -> OpportunityStats:
    if not opps:
        return OpportunityStats(total=0, avg_spread_pct=0.0, best_spread_pct=0.0)
    spreads = [o.spread_pct for o in opps]
    return OpportunityStats(
        total=len(opps),
        avg_spread_pct=sum(spreads) / len(spreads),
        best_spread_pct=max(spreads),
    )
