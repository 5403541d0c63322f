"""
edgescan/detector.py - EdgeScan
=================================
Head-to-head opportunity detection. No API calls, no file I/O.

Responsibilities:
- Sport-aware outcome count validation (2-way vs 3-way markets)
- Best price per outcome across bookmakers
- Arb / near-arb classification from the implied probability sum
- Value bets against a leave-one-out consensus fair probability
- Best odds summary per event
- Book vs exchange (back/lay) arbs

RULES:
1. Implied probability = 1 / decimal odds.
2. implied_sum < 1 -> "arb". (implied_sum - 1) * 100 <= near_arb_threshold -> "near-arb".
3. profit_percentage = (1 / implied_sum - 1) * 100 for both classes.
4. Value bets need >= 3 bookmakers on the event and >= 3 prices on the side.
5. Results sorted by profit / value descending.

Everything here is a pure function of its inputs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from edgescan.config import NEAR_ARB_THRESHOLD, VALUE_THRESHOLD
from edgescan.models import (
    BestOdds,
    BestOutcomeOdds,
    BookVsBookArb,
    BookVsExchangeArb,
    EventOdds,
    LayOutcome,
    Outcome,
    ScanStats,
    ValueBet,
)

logger = logging.getLogger(__name__)

MIN_VALUE_BOOKMAKERS: int = 3

# Draw never offered
ALWAYS_TWO_WAY_SPORTS: tuple[str, ...] = (
    "tennis",
    "basketball",
    "baseball",
    "americanfootball",
    "aussierules",
)

# Either 2-way or 3-way depending on the bookmaker
FLEXIBLE_SPORTS: tuple[str, ...] = (
    "icehockey",
    "mma",
    "boxing",
    "cricket",
    "rugbyleague",
    "rugbyunion",
)


@dataclass
class DetectionResult:
    arbs: list[BookVsBookArb] = field(default_factory=list)
    value_bets: list[ValueBet] = field(default_factory=list)
    best_odds: list[BestOdds] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def implied_probability(odds: float) -> float:
    """
    Implied probability of decimal odds.

    >>> implied_probability(2.0)
    0.5
    """
    if odds <= 1.0:
        raise ValueError(f"Decimal odds must be > 1.0, got {odds}")
    return 1.0 / odds


def classify_implied_sum(implied_sum: float, near_arb_threshold: float) -> Optional[str]:
    """
    Return "arb", "near-arb" or None for an implied probability sum.

    >>> classify_implied_sum(0.964, 2.0)
    'arb'
    >>> classify_implied_sum(1.01, 2.0)
    'near-arb'
    >>> classify_implied_sum(1.0526, 2.0) is None
    True
    """
    if implied_sum < 1.0:
        return "arb"
    if (implied_sum - 1.0) * 100.0 <= near_arb_threshold:
        return "near-arb"
    return None


def profit_percentage(implied_sum: float) -> float:
    return (1.0 / implied_sum - 1.0) * 100.0


def exchange_profit_percentage(back_odds: float, lay_odds: float, commission: float) -> float:
    """
    Guaranteed profit, as % of total outlay (back stake + lay liability),
    when the lay stake equalises both results.

    Per unit back stake: lay = back_odds / (lay_odds - commission),
    profit = lay * (1 - commission) - 1, outlay = 1 + lay * (lay_odds - 1).

    >>> round(exchange_profit_percentage(2.2, 2.1, 0.05), 3)
    0.895
    >>> exchange_profit_percentage(2.0, 2.1, 0.05) < 0
    True
    """
    lay_stake = back_odds / (lay_odds - commission)
    profit = lay_stake * (1.0 - commission) - 1.0
    outlay = 1.0 + lay_stake * (lay_odds - 1.0)
    return profit / outlay * 100.0


def expected_outcome_counts(sport_key: str) -> tuple[int, ...]:
    """
    Allowed number of distinct H2H outcomes for a sport.

    >>> expected_outcome_counts("basketball_nba")
    (2,)
    >>> expected_outcome_counts("soccer_epl")
    (3,)
    >>> expected_outcome_counts("mma_mixed_martial_arts")
    (2, 3)
    """
    key = sport_key.lower()
    if any(s in key for s in ALWAYS_TWO_WAY_SPORTS):
        return (2,)
    if "soccer" in key:
        return (3,)
    # Flexible and unknown sports accept either
    return (2, 3)


def _collect_h2h(event_odds: EventOdds) -> tuple[dict[str, list[Outcome]], dict[str, datetime]]:
    """Group H2H prices by outcome name, preserving first-seen order."""
    by_name: dict[str, list[Outcome]] = {}
    updated: dict[str, datetime] = {}
    for bm in event_odds.bookmakers:
        market = bm.market("h2h")
        if market is None:
            continue
        for o in market.outcomes:
            if o.price <= 1.0:
                continue
            by_name.setdefault(o.name, []).append(
                Outcome(name=o.name, bookmaker=bm.title, bookmaker_key=bm.key.lower(), odds=o.price)
            )
            updated[f"{o.name}|{bm.key.lower()}"] = market.last_update
    return by_name, updated


def _best(prices: list[Outcome]) -> Outcome:
    # First bookmaker wins ties
    best = prices[0]
    for p in prices[1:]:
        if p.odds > best.odds:
            best = p
    return best


# ---------------------------------------------------------------------------
# Arbs
# ---------------------------------------------------------------------------

def find_arbitrage_in_event(
    event_odds: EventOdds,
    near_arb_threshold: float = NEAR_ARB_THRESHOLD,
) -> Optional[BookVsBookArb]:
    """
    Best-price arb / near-arb for one event's H2H market, or None.

    Needs at least two bookmakers. The outcome count must match the sport
    (see expected_outcome_counts); mismatches are skipped, not errors.
    """
    if len(event_odds.bookmakers) < 2:
        return None

    by_name, updated = _collect_h2h(event_odds)
    n_outcomes = len(by_name)
    if n_outcomes not in expected_outcome_counts(event_odds.event.sport_key):
        logger.debug(
            "Skipping %s: %d h2h outcomes for %s",
            event_odds.event.matchup, n_outcomes, event_odds.event.sport_key,
        )
        return None

    legs = [_best(prices) for prices in by_name.values()]
    implied_sum = sum(1.0 / leg.odds for leg in legs)
    arb_type = classify_implied_sum(implied_sum, near_arb_threshold)
    if arb_type is None:
        return None

    last_updated = max(updated[f"{leg.name}|{leg.bookmaker_key}"] for leg in legs)
    return BookVsBookArb(
        type=arb_type,
        event=event_odds.event,
        market_type="h2h" if n_outcomes == 2 else "h2h-3way",
        outcome1=legs[0],
        outcome2=legs[1],
        outcome3=legs[2] if n_outcomes == 3 else None,
        implied_probability_sum=implied_sum,
        profit_percentage=profit_percentage(implied_sum),
        last_updated=last_updated,
    )


# ---------------------------------------------------------------------------
# Value bets
# ---------------------------------------------------------------------------

def find_value_bets(
    event_odds: EventOdds,
    value_threshold: float = VALUE_THRESHOLD,
) -> list[ValueBet]:
    """
    Value bets for one event.

    For every bookmaker price on a side, the fair probability is the mean
    implied probability of the OTHER bookmakers on that side, so an outlier
    never dilutes its own consensus. A bet is flagged when
    (odds * fair - 1) * 100 >= value_threshold.
    """
    if len(event_odds.bookmakers) < MIN_VALUE_BOOKMAKERS:
        return []

    by_name, updated = _collect_h2h(event_odds)
    bets: list[ValueBet] = []

    for prices in by_name.values():
        if len(prices) < MIN_VALUE_BOOKMAKERS:
            continue
        all_odds = tuple(sorted(prices, key=lambda o: o.odds, reverse=True))
        total_prob = sum(1.0 / p.odds for p in prices)
        total_odds = sum(p.odds for p in prices)
        n_others = len(prices) - 1

        for p in prices:
            fair = (total_prob - 1.0 / p.odds) / n_others
            edge = p.odds * fair - 1.0
            value_pct = edge * 100.0
            if value_pct < value_threshold:
                continue
            bets.append(ValueBet(
                event=event_odds.event,
                market_type="h2h",
                outcome=p,
                market_average=(total_odds - p.odds) / n_others,
                fair_probability=fair,
                value_percentage=value_pct,
                all_odds=all_odds,
                last_updated=updated[f"{p.name}|{p.bookmaker_key}"],
            ))
    return bets


# ---------------------------------------------------------------------------
# Best odds
# ---------------------------------------------------------------------------

def find_best_odds(event_odds: EventOdds) -> Optional[BestOdds]:
    """Best price and market average per H2H outcome. None without bookmakers."""
    if not event_odds.bookmakers:
        return None

    by_name, _ = _collect_h2h(event_odds)
    outcomes = []
    for name, prices in by_name.items():
        best = _best(prices)
        outcomes.append(BestOutcomeOdds(
            name=name,
            best_odds=best.odds,
            best_bookmaker=best.bookmaker,
            best_bookmaker_key=best.bookmaker_key,
            market_average=sum(p.odds for p in prices) / len(prices),
            all_odds=tuple(sorted(prices, key=lambda o: o.odds, reverse=True)),
        ))
    return BestOdds(event=event_odds.event, outcomes=tuple(outcomes))


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def detect_all_opportunities(
    events: list[EventOdds],
    near_arb_threshold: float = NEAR_ARB_THRESHOLD,
    value_threshold: float = VALUE_THRESHOLD,
) -> DetectionResult:
    """
    Run arb, value and best-odds detection over a batch of events.

    Args:
        events:             Parsed odds snapshots (one per event).
        near_arb_threshold: % over breakeven still reported as near-arb.
        value_threshold:    Minimum edge % over consensus for a value bet.

    Returns:
        DetectionResult with arbs sorted by profit_percentage descending,
        value bets by value_percentage descending, and batch ScanStats.
    """
    result = DetectionResult()
    stats = result.stats

    for event_odds in events:
        stats.total_events += 1
        stats.sport_keys.add(event_odds.event.sport_key)
        stats.bookmaker_keys.update(bm.key.lower() for bm in event_odds.bookmakers)
        if len(event_odds.bookmakers) >= 2:
            stats.events_with_multiple_bookmakers += 1

        arb = find_arbitrage_in_event(event_odds, near_arb_threshold)
        if arb is not None:
            result.arbs.append(arb)

        result.value_bets.extend(find_value_bets(event_odds, value_threshold))

        best = find_best_odds(event_odds)
        if best is not None:
            result.best_odds.append(best)

    result.arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    result.value_bets.sort(key=lambda v: v.value_percentage, reverse=True)

    stats.arbs_found = sum(1 for a in result.arbs if a.type == "arb")
    stats.near_arbs_found = sum(1 for a in result.arbs if a.type == "near-arb")
    stats.value_bets_found = len(result.value_bets)

    logger.debug("Detector stats: %s", stats.to_dict())
    return result


def detect_book_vs_exchange_arbs(
    events: list[EventOdds],
    lay_odds: dict[str, tuple[float, float]],
    commission: float = 0.05,
) -> list[BookVsExchangeArb]:
    """
    Back-at-bookmaker vs lay-at-exchange arbs.

    Args:
        events:     Parsed odds snapshots.
        lay_odds:   "{event_id}-{outcome_name}" -> (lay_odds, available_liquidity).
        commission: Exchange commission on net winnings (0.05 = 5%).

    An arb exists when (back_odds - 1) * (1 - commission) > lay_odds - 1.
    profit_percentage is the equal-profit return on total outlay
    (see exchange_profit_percentage).
    """
    arbs: list[BookVsExchangeArb] = []

    for event_odds in events:
        event = event_odds.event
        for bm in event_odds.bookmakers:
            market = bm.market("h2h")
            if market is None:
                continue
            for o in market.outcomes:
                lay = lay_odds.get(f"{event.id}-{o.name}")
                if lay is None:
                    continue
                lay_price, liquidity = lay
                if o.price <= 1.0 or lay_price <= 1.0:
                    continue
                profit = exchange_profit_percentage(o.price, lay_price, commission)
                if profit <= 0:
                    continue
                arbs.append(BookVsExchangeArb(
                    event=event,
                    market_type="h2h",
                    back_outcome=Outcome(
                        name=o.name, bookmaker=bm.title,
                        bookmaker_key=bm.key.lower(), odds=o.price,
                    ),
                    lay_outcome=LayOutcome(name=o.name, odds=lay_price, available_liquidity=liquidity),
                    profit_percentage=profit,
                    commission=commission,
                    last_updated=market.last_update,
                ))

    arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    return arbs
