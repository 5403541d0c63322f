"""
edgescan/calculator.py - EdgeScan
===================================
Stake splitting for detected opportunities. No API calls, no file I/O.

Composable pure transforms:
  proportional_stakes()  -> base split, equal profit whichever leg wins
  favour_stakes()        -> non-favoured legs break even, favoured leg takes the margin
  middle_stakes()        -> equal halves
  stealth.naturalize_split() (separate module) rounds any split to human amounts

Stakes are rounded to cents. Per-leg profits are computed from the
unrounded stakes so they stay equal across legs.
"""

from dataclasses import dataclass
from typing import Optional, Union

from edgescan.detector import exchange_profit_percentage
from edgescan.models import BookVsBookArb, BookVsExchangeArb


@dataclass(frozen=True)
class StakeSplit:
    total_stake: float
    odds: tuple[float, ...]
    stakes: tuple[float, ...]       # cent-rounded
    returns: tuple[float, ...]      # stake_i * odds_i
    profits: tuple[float, ...]      # return_i - total_stake
    guaranteed_profit: float        # min(profits), cent-rounded
    profit_percentage: float        # guaranteed / total * 100, 2dp
    favoured_index: Optional[int] = None


@dataclass(frozen=True)
class ExchangeStakes:
    back_stake: float
    lay_stake: float
    lay_liability: float
    commission: float
    profit_if_back_wins: float
    profit_if_lay_wins: float
    guaranteed_profit: float
    profit_percentage: float        # of total outlay (back stake + liability)


@dataclass(frozen=True)
class ArbValidation:
    is_valid: bool
    profit_percentage: float
    implied_sum: Optional[float] = None


def round_cents(value: float) -> float:
    return round(value, 2)


def _validate_odds(odds: tuple[float, ...]) -> None:
    if len(odds) < 2:
        raise ValueError("At least two legs are required")
    for o in odds:
        if o <= 1.0:
            raise ValueError(f"Decimal odds must be > 1.0, got {o}")


def _split(total: float, odds: tuple[float, ...], raw: list[float],
           favoured_index: Optional[int] = None) -> StakeSplit:
    returns = tuple(s * o for s, o in zip(raw, odds))
    profits = tuple(r - total for r in returns)
    guaranteed = min(profits)
    return StakeSplit(
        total_stake=total,
        odds=odds,
        stakes=tuple(round_cents(s) for s in raw),
        returns=tuple(round_cents(r) for r in returns),
        profits=profits,
        guaranteed_profit=round_cents(guaranteed),
        profit_percentage=round(guaranteed / total * 100.0, 2) if total else 0.0,
        favoured_index=favoured_index,
    )


# ---------------------------------------------------------------------------
# Base splits
# ---------------------------------------------------------------------------

def proportional_stakes(odds: list[float], total: float) -> StakeSplit:
    """
    Split `total` so every leg returns the same amount.

    stake_i = total * (1/odds_i) / sum(1/odds_j)

    >>> split = proportional_stakes([2.10, 2.05], 100)
    >>> split.stakes
    (49.4, 50.6)
    """
    legs = tuple(float(o) for o in odds)
    _validate_odds(legs)
    if total < 0:
        raise ValueError("Total stake cannot be negative")
    weights = [1.0 / o for o in legs]
    weight_sum = sum(weights)
    raw = [total * w / weight_sum for w in weights]
    return _split(total, legs, raw)


def favour_stakes(odds: list[float], total: float, favoured_index: int) -> StakeSplit:
    """
    Favour one leg: every other leg stakes exactly enough to break even
    (stake_nf * odds_nf == total) and the favoured leg takes the rest.

    Raises:
        ValueError: if the break-even legs already need more than `total`
                    (no arbitrage margin to favour).
    """
    legs = tuple(float(o) for o in odds)
    _validate_odds(legs)
    if not 0 <= favoured_index < len(legs):
        raise ValueError(f"favoured_index {favoured_index} out of range")

    raw = [total / o for o in legs]
    remainder = total - sum(s for i, s in enumerate(raw) if i != favoured_index)
    if remainder < 0:
        raise ValueError("Odds do not leave a margin to favour one leg")
    raw[favoured_index] = remainder
    return _split(total, legs, raw, favoured_index=favoured_index)


def middle_stakes(total: float) -> tuple[float, float]:
    """
    Equal halves for a middle.

    >>> middle_stakes(101)
    (50.5, 50.5)
    """
    half = round_cents(total / 2.0)
    return half, half


def arb_stakes(arb: BookVsBookArb, total: float,
               favoured_index: Optional[int] = None) -> StakeSplit:
    """Proportional (or favoured) split for a book-vs-book arb's legs."""
    odds = [leg.odds for leg in arb.legs]
    if favoured_index is None:
        return proportional_stakes(odds, total)
    return favour_stakes(odds, total, favoured_index)


# ---------------------------------------------------------------------------
# Back / lay
# ---------------------------------------------------------------------------

def exchange_stakes(
    back_odds: float,
    lay_odds: float,
    back_stake: float,
    commission: float = 0.05,
) -> ExchangeStakes:
    """
    Lay stake that equalises profit between the back and lay outcomes.

    lay_stake = back_stake * back_odds / (lay_odds - commission)
    liability = lay_stake * (lay_odds - 1)
    """
    if back_odds <= 1.0 or lay_odds <= 1.0:
        raise ValueError("Decimal odds must be > 1.0")
    lay_stake = back_stake * back_odds / (lay_odds - commission)
    liability = lay_stake * (lay_odds - 1.0)
    profit_back = back_stake * (back_odds - 1.0) - liability
    profit_lay = lay_stake * (1.0 - commission) - back_stake
    guaranteed = min(profit_back, profit_lay)
    outlay = back_stake + liability
    return ExchangeStakes(
        back_stake=round_cents(back_stake),
        lay_stake=round_cents(lay_stake),
        lay_liability=round_cents(liability),
        commission=commission,
        profit_if_back_wins=round_cents(profit_back),
        profit_if_lay_wins=round_cents(profit_lay),
        guaranteed_profit=round_cents(guaranteed),
        profit_percentage=round(guaranteed / outlay * 100.0, 2) if outlay else 0.0,
    )


def exchange_stakes_from_total(
    back_odds: float,
    lay_odds: float,
    total_outlay: float,
    commission: float = 0.05,
) -> ExchangeStakes:
    """Back and lay stakes such that back_stake + liability == total_outlay."""
    lay_factor = back_odds * (lay_odds - 1.0) / (lay_odds - commission)
    back_stake = total_outlay / (1.0 + lay_factor)
    return exchange_stakes(back_odds, lay_odds, back_stake, commission)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_arbitrage(*odds: float) -> ArbValidation:
    """
    Is a set of best prices still an arb?

    >>> validate_arbitrage(2.10, 2.05).is_valid
    True
    >>> validate_arbitrage(1.90, 1.90).is_valid
    False
    """
    implied_sum = sum(1.0 / o for o in odds)
    is_valid = implied_sum < 1.0
    profit = (1.0 / implied_sum - 1.0) * 100.0 if is_valid else 0.0
    return ArbValidation(
        is_valid=is_valid,
        profit_percentage=round(profit, 2),
        implied_sum=round(implied_sum, 4),
    )


def validate_exchange_arbitrage(back_odds: float, lay_odds: float,
                                commission: float = 0.05) -> ArbValidation:
    profit = exchange_profit_percentage(back_odds, lay_odds, commission)
    is_valid = profit > 0
    profit = profit if is_valid else 0.0
    return ArbValidation(is_valid=is_valid, profit_percentage=round(profit, 2))


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_arb_as_text(
    arb: Union[BookVsBookArb, BookVsExchangeArb],
    stakes: Union[StakeSplit, ExchangeStakes],
) -> str:
    """Plain-text summary of an arb and its stakes for copy/paste sharing."""
    event = arb.event
    lines = []

    if isinstance(arb, BookVsExchangeArb):
        lines += [
            "Back/Lay Arbitrage Opportunity",
            f"Event: {event.matchup}",
            f"Sport: {event.sport_title}",
            "",
            f"BACK: {arb.back_outcome.name} @ {arb.back_outcome.odds:.2f} ({arb.back_outcome.bookmaker})",
            f"Stake: ${stakes.back_stake:.2f}",
            f"LAY: {arb.lay_outcome.name} @ {arb.lay_outcome.odds:.2f}",
            f"Stake: ${stakes.lay_stake:.2f}",
            f"Liability: ${stakes.lay_liability:.2f}",
            "",
            f"Commission: {stakes.commission * 100:.1f}%",
        ]
    else:
        lines += [
            "Arbitrage Opportunity",
            f"Event: {event.matchup}",
            f"Sport: {event.sport_title}",
            "",
        ]
        for i, (leg, stake) in enumerate(zip(arb.legs, stakes.stakes), start=1):
            lines.append(f"Bet {i}: {leg.name} @ {leg.odds:.2f} ({leg.bookmaker})")
            lines.append(f"Stake: ${stake:.2f}")
        lines += ["", f"Total Stake: ${stakes.total_stake:.2f}"]

    lines.append(
        f"Guaranteed Profit: ${stakes.guaranteed_profit:.2f} ({stakes.profit_percentage:.2f}%)"
    )
    return "\n".join(lines)
