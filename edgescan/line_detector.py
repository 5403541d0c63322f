"""
edgescan/line_detector.py - EdgeScan
======================================
Spread / totals arbitrage and middle detection. No API calls, no file I/O.

Spreads are keyed by |point|: a leg pairs only with the opposite sign at the
same absolute line. Totals are keyed by point with Over/Under sides.
Classification matches detector.classify_implied_sum().

Middles:
  spreads -> favourite at the LOWER line, underdog at the HIGHER line
  totals  -> Over at the LOWER line, Under at the HIGHER line
  Both legs win when the margin/total lands in the integer window
  floor(low)+1 .. ceil(high)-1. Empty window -> no middle.

MIDDLE_PROBABILITY_SCALING is a policy table, not a calibrated model.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from edgescan.config import (
    MIDDLE_MAX_LOSS,
    MIDDLE_MIN_EV,
    MIDDLE_PROBABILITY_SCALING,
    MIDDLE_REFERENCE_STAKE,
    NEAR_ARB_THRESHOLD,
)
from edgescan.detector import classify_implied_sum, profit_percentage
from edgescan.models import (
    Event,
    EventOdds,
    LineStats,
    MiddleOpportunity,
    MiddleRange,
    Outcome,
    SpreadArb,
    TotalsArb,
)

logger = logging.getLogger(__name__)


@dataclass
class LineDetectionResult:
    spread_arbs: list[SpreadArb] = field(default_factory=list)
    totals_arbs: list[TotalsArb] = field(default_factory=list)
    middles: list[MiddleOpportunity] = field(default_factory=list)
    stats: LineStats = field(default_factory=LineStats)


@dataclass
class _Quote:
    outcome: Outcome
    last_update: datetime


def _best(quotes: list[_Quote]) -> Optional[_Quote]:
    best = None
    for q in quotes:
        if best is None or q.outcome.odds > best.outcome.odds:
            best = q
    return best


# ---------------------------------------------------------------------------
# Middle math
# ---------------------------------------------------------------------------

def middle_window(low: float, high: float) -> Optional[tuple[int, int]]:
    """
    Integer results for which both legs of a middle win, or None.

    >>> middle_window(3.5, 7.5)
    (4, 7)
    >>> middle_window(3, 5)
    (4, 4)
    >>> middle_window(3, 4) is None
    True
    """
    first = math.floor(low) + 1
    last = math.ceil(high) - 1
    if first > last:
        return None
    return first, last


def middle_probability(market_type: str, gap: float) -> float:
    """
    Heuristic probability (%) that the result lands inside the middle.

    >>> middle_probability("spreads", 4)
    20.0
    >>> middle_probability("totals", 10)
    25.0
    """
    scale = MIDDLE_PROBABILITY_SCALING[market_type]
    return min(scale["cap"], gap * scale["per_point"])


def middle_economics(odds1: float, odds2: float, probability: float) -> tuple[float, float, float]:
    """
    (potential_profit, guaranteed_loss, expected_value) with a reference
    stake on each side.

    guaranteed_loss is the worst-case miss, where the LOWER-priced leg is the
    one that wins.
    """
    stake = MIDDLE_REFERENCE_STAKE
    total = stake * 2
    potential_profit = stake * odds1 + stake * odds2 - total
    guaranteed_loss = total - stake * min(odds1, odds2)
    p = probability / 100.0
    expected_value = p * potential_profit - (1.0 - p) * guaranteed_loss
    return potential_profit, guaranteed_loss, expected_value


def _worth_keeping(expected_value: float, guaranteed_loss: float) -> bool:
    return expected_value > MIDDLE_MIN_EV or guaranteed_loss < MIDDLE_MAX_LOSS


def _build_middle(
    event: Event,
    market_type: str,
    side1: Outcome,
    side2: Outcome,
    low: float,
    high: float,
    description: str,
) -> Optional[MiddleOpportunity]:
    if middle_window(low, high) is None:
        return None
    probability = middle_probability(market_type, high - low)
    potential, loss, ev = middle_economics(side1.odds, side2.odds, probability)
    if not _worth_keeping(ev, loss):
        return None
    return MiddleOpportunity(
        event=event,
        market_type=market_type,
        side1=side1,
        side2=side2,
        middle_range=MiddleRange(low=low, high=high, description=description),
        middle_probability=probability,
        expected_value=ev,
        guaranteed_loss=loss,
        potential_profit=potential,
    )


def _fmt_line(value: float) -> str:
    return f"{value:g}"


# ---------------------------------------------------------------------------
# Spreads
# ---------------------------------------------------------------------------

def find_spread_opportunities(
    event_odds: EventOdds,
    near_arb_threshold: float = NEAR_ARB_THRESHOLD,
) -> tuple[list[SpreadArb], list[MiddleOpportunity], bool]:
    """
    Spread arbs and middles for one event.

    Returns (arbs, middles, has_spread_data).
    """
    event = event_odds.event
    # abs(line) -> team -> quotes
    by_line: dict[float, dict[str, list[_Quote]]] = {}
    has_data = False

    for bm in event_odds.bookmakers:
        market = bm.market("spreads")
        if market is None:
            continue
        has_data = True
        for o in market.outcomes:
            if o.point is None or o.price <= 1.0:
                continue
            quote = _Quote(
                Outcome(name=o.name, bookmaker=bm.title, bookmaker_key=bm.key.lower(),
                        odds=o.price, point=o.point),
                market.last_update,
            )
            by_line.setdefault(abs(o.point), {}).setdefault(o.name, []).append(quote)

    arbs: list[SpreadArb] = []
    for line, teams in by_line.items():
        if len(teams) != 2:
            continue
        best1, best2 = (_best(q) for q in teams.values())
        p1, p2 = best1.outcome.point, best2.outcome.point
        # Opposite sides of the same line only
        if p1 * p2 >= 0:
            continue
        implied_sum = 1.0 / best1.outcome.odds + 1.0 / best2.outcome.odds
        arb_type = classify_implied_sum(implied_sum, near_arb_threshold)
        if arb_type is None:
            continue
        favorite, underdog = (best1, best2) if p1 < 0 else (best2, best1)
        arbs.append(SpreadArb(
            type=arb_type,
            event=event,
            line=line,
            favorite=favorite.outcome,
            underdog=underdog.outcome,
            implied_probability_sum=implied_sum,
            profit_percentage=profit_percentage(implied_sum),
            last_updated=max(best1.last_update, best2.last_update),
        ))

    middles: list[MiddleOpportunity] = []
    lines = sorted(by_line)
    for i, low in enumerate(lines):
        favorites = [q for quotes in by_line[low].values() for q in quotes if q.outcome.point < 0]
        fav = _best(favorites)
        if fav is None:
            continue
        for high in lines[i + 1:]:
            underdogs = [
                q for quotes in by_line[high].values() for q in quotes
                if q.outcome.point > 0 and q.outcome.name != fav.outcome.name
            ]
            dog = _best(underdogs)
            if dog is None:
                continue
            window = middle_window(low, high)
            description = (
                f"{fav.outcome.name} wins by {window[0]} to {window[1]}" if window else ""
            )
            middle = _build_middle(event, "spreads", fav.outcome, dog.outcome, low, high, description)
            if middle is not None:
                middles.append(middle)

    return arbs, middles, has_data


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------

def find_totals_opportunities(
    event_odds: EventOdds,
    near_arb_threshold: float = NEAR_ARB_THRESHOLD,
) -> tuple[list[TotalsArb], list[MiddleOpportunity], bool]:
    """
    Totals arbs and middles for one event.

    Returns (arbs, middles, has_totals_data).
    """
    event = event_odds.event
    # line -> {"over": [...], "under": [...]}
    by_line: dict[float, dict[str, list[_Quote]]] = {}
    has_data = False

    for bm in event_odds.bookmakers:
        market = bm.market("totals")
        if market is None:
            continue
        has_data = True
        for o in market.outcomes:
            if o.point is None or o.price <= 1.0:
                continue
            side = "over" if "over" in o.name.lower() else "under"
            quote = _Quote(
                Outcome(name=o.name, bookmaker=bm.title, bookmaker_key=bm.key.lower(),
                        odds=o.price, point=o.point),
                market.last_update,
            )
            sides = by_line.setdefault(o.point, {"over": [], "under": []})
            sides[side].append(quote)

    arbs: list[TotalsArb] = []
    for line, sides in by_line.items():
        over, under = _best(sides["over"]), _best(sides["under"])
        if over is None or under is None:
            continue
        implied_sum = 1.0 / over.outcome.odds + 1.0 / under.outcome.odds
        arb_type = classify_implied_sum(implied_sum, near_arb_threshold)
        if arb_type is None:
            continue
        arbs.append(TotalsArb(
            type=arb_type,
            event=event,
            line=line,
            over=over.outcome,
            under=under.outcome,
            implied_probability_sum=implied_sum,
            profit_percentage=profit_percentage(implied_sum),
            last_updated=max(over.last_update, under.last_update),
        ))

    middles: list[MiddleOpportunity] = []
    lines = sorted(by_line)
    for i, low in enumerate(lines):
        over = _best(by_line[low]["over"])
        if over is None:
            continue
        for high in lines[i + 1:]:
            under = _best(by_line[high]["under"])
            if under is None:
                continue
            side1 = Outcome(
                name=f"Over {_fmt_line(low)}", bookmaker=over.outcome.bookmaker,
                bookmaker_key=over.outcome.bookmaker_key, odds=over.outcome.odds, point=low,
            )
            side2 = Outcome(
                name=f"Under {_fmt_line(high)}", bookmaker=under.outcome.bookmaker,
                bookmaker_key=under.outcome.bookmaker_key, odds=under.outcome.odds, point=high,
            )
            description = f"Total lands between {_fmt_line(low)} and {_fmt_line(high)}"
            middle = _build_middle(event, "totals", side1, side2, low, high, description)
            if middle is not None:
                middles.append(middle)

    return arbs, middles, has_data


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def detect_line_opportunities(
    events: list[EventOdds],
    near_arb_threshold: float = NEAR_ARB_THRESHOLD,
) -> LineDetectionResult:
    """
    Run spread and totals detection over a batch of events.

    Returns:
        LineDetectionResult with arbs sorted by profit_percentage descending,
        middles by expected_value descending, plus batch LineStats.
    """
    result = LineDetectionResult()
    stats = result.stats

    for event_odds in events:
        stats.total_events += 1

        spread_arbs, spread_middles, has_spreads = find_spread_opportunities(
            event_odds, near_arb_threshold
        )
        totals_arbs, totals_middles, has_totals = find_totals_opportunities(
            event_odds, near_arb_threshold
        )
        if has_spreads:
            stats.events_with_spreads += 1
        if has_totals:
            stats.events_with_totals += 1

        result.spread_arbs.extend(spread_arbs)
        result.totals_arbs.extend(totals_arbs)
        result.middles.extend(spread_middles)
        result.middles.extend(totals_middles)

    result.spread_arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    result.totals_arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    result.middles.sort(key=lambda m: m.expected_value, reverse=True)

    stats.spread_arbs_found = sum(1 for a in result.spread_arbs if a.type == "arb")
    stats.totals_arbs_found = sum(1 for a in result.totals_arbs if a.type == "arb")
    stats.near_arbs_found = (
        sum(1 for a in result.spread_arbs if a.type == "near-arb")
        + sum(1 for a in result.totals_arbs if a.type == "near-arb")
    )
    stats.middles_found = len(result.middles)

    logger.debug("Line detector stats: %s", stats.to_dict())
    return result
