"""
edgescan/stealth.py - EdgeScan
================================
Stake naturalization: replace calculator-precise stakes ($47.83) with
amounts a recreational bettor would plausibly type ($50).

Responsibilities:
- Bookmaker risk profiles -> stake strategy tier
- Tier-specific candidate lists scaled to stake magnitude
- Nearest candidate within max_deviation, escalation beyond it only on request
- Optional jitter, only when an rng is injected
- Split-level naturalization with capital impact summary
- Heuristic "does this stake look calculated" check

RULES:
1. Never returns a negative stake.
2. Deviation stays within max_deviation unless result.escalated is True.
3. Idempotent: naturalizing an already-natural stake returns it unchanged.
4. Without an rng the output is deterministic.
"""

import logging
import math
import random
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from edgescan.calculator import StakeSplit

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEVIATION: float = 10.0    # %
ESCALATION_FACTOR: float = 1.5         # rounding up may reach 1.5x the bound
SOFT_CAP_PERCENT: float = 15.0         # warn above this

JITTER_CHANCE: dict[str, float] = {
    "conservative": 0.0,
    "moderate": 0.3,
    "aggressive": 0.6,
}
MIN_JITTER_STAKE: float = 20.0

# Every jitter step that _variations() can produce
_ALL_VARIATIONS: tuple[int, ...] = (1, 2, 3, 5, 10, 15, 25)


# ---------------------------------------------------------------------------
# Bookmaker profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BookmakerProfile:
    key: str
    name: str
    risk_level: str         # "low" | "medium" | "high" | "extreme"
    stake_strategy: str     # "conservative" | "moderate" | "aggressive"


BOOKMAKER_PROFILES: dict[str, BookmakerProfile] = {
    p.key: p for p in (
        # Extreme: limits within days
        BookmakerProfile("bet365_au", "Bet365 AU", "extreme", "conservative"),
        BookmakerProfile("ladbrokes_au", "Ladbrokes", "extreme", "conservative"),
        BookmakerProfile("neds", "Neds", "extreme", "conservative"),
        # High
        BookmakerProfile("sportsbet", "SportsBet", "high", "moderate"),
        BookmakerProfile("pointsbetau", "PointsBet AU", "high", "moderate"),
        BookmakerProfile("unibet", "Unibet", "high", "moderate"),
        # Medium
        BookmakerProfile("tab", "TAB", "medium", "moderate"),
        BookmakerProfile("tabtouch", "TABtouch", "medium", "moderate"),
        BookmakerProfile("betr_au", "Betr", "medium", "moderate"),
        BookmakerProfile("betright", "Bet Right", "medium", "moderate"),
        BookmakerProfile("playup", "PlayUp", "medium", "moderate"),
        BookmakerProfile("boombet", "BoomBet", "medium", "moderate"),
        BookmakerProfile("dabble_au", "Dabble AU", "medium", "moderate"),
        # Low: exchange, never limits
        BookmakerProfile("betfair_ex_au", "Betfair Exchange", "low", "aggressive"),
    )
}

BOOKMAKER_ALIASES: dict[str, str] = {
    "bet365": "bet365_au",
    "ladbrokes": "ladbrokes_au",
    "pointsbet": "pointsbetau",
    "betfair": "betfair_ex_au",
    "betfairexchange": "betfair_ex_au",
    "betr": "betr_au",
    "dabble": "dabble_au",
    "tabwa": "tabtouch",
}


def _normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9_]", "", name.lower())


def get_bookmaker_profile(name: str) -> Optional[BookmakerProfile]:
    """
    Look a bookmaker up by API key, alias or display name.

    >>> get_bookmaker_profile("Bet365").key
    'bet365_au'
    >>> get_bookmaker_profile("unknown_book") is None
    True
    """
    normalized = _normalize_name(name)
    if not normalized:
        return None
    if normalized in BOOKMAKER_PROFILES:
        return BOOKMAKER_PROFILES[normalized]

    compact = normalized.replace("_", "")
    if compact in BOOKMAKER_ALIASES:
        return BOOKMAKER_PROFILES[BOOKMAKER_ALIASES[compact]]
    for suffixed in (f"{normalized}_au", f"{compact}au"):
        if suffixed in BOOKMAKER_PROFILES:
            return BOOKMAKER_PROFILES[suffixed]

    for profile in BOOKMAKER_PROFILES.values():
        if _normalize_name(profile.name).replace("_", "") == compact:
            return profile
    return None


def stake_strategy_for(bookmaker: str) -> str:
    """Stake strategy tier for a bookmaker. Unknown bookmakers are 'moderate'."""
    profile = get_bookmaker_profile(bookmaker)
    return profile.stake_strategy if profile else "moderate"


# ---------------------------------------------------------------------------
# Candidate amounts
# ---------------------------------------------------------------------------

def rounding_targets(stake: float, strategy: str) -> list[int]:
    """Natural-looking amounts around `stake` for a strategy tier, ascending."""
    conservative = strategy == "conservative"
    if stake <= 30:
        if conservative:
            return [5, 10, 15, 20, 25, 30]
        return [5, 8, 10, 12, 15, 18, 20, 22, 25, 28, 30]
    if stake <= 100:
        if conservative:
            return [30, 40, 50, 60, 70, 75, 80, 90, 100]
        return list(range(30, 101, 5))
    if stake <= 500:
        if conservative:
            return list(range(100, 501, 50))
        return [100, 120, 125, 150, 175, 200, 220, 250, 275, 300,
                325, 350, 375, 400, 425, 450, 475, 500]
    step, headroom = (100, 200) if conservative else (50, 100)
    upper = math.ceil(stake / step) * step + headroom
    return list(range(500, upper + 1, step))


def friendly_odd_round(stake: float, strategy: str) -> float:
    """
    Round to an amount that looks hand-picked rather than computed.

    Never returns 0 for a positive stake.

    >>> friendly_odd_round(47, "moderate")
    48
    >>> friendly_odd_round(29, "conservative")
    30
    >>> friendly_odd_round(137, "moderate")
    135
    """
    if stake < 50:
        endings = (0, 5) if strategy == "conservative" else (0, 2, 5, 8)
        tens = int(stake // 10)
        candidates = [
            t * 10 + e
            for t in (tens - 1, tens, tens + 1)
            for e in endings
            if t * 10 + e > 0
        ]
        return min(candidates, key=lambda c: (abs(c - stake), c))
    if stake < 200:
        return 5 * round(stake / 5)
    interval = 25 if strategy == "conservative" else 10
    return interval * round(stake / interval)


def _variations(stake: float) -> tuple[int, ...]:
    if stake <= 50:
        return (-3, -2, -1, 1, 2, 3)
    if stake <= 100:
        return (-5, -3, -2, 2, 3, 5)
    if stake <= 300:
        return (-10, -5, 5, 10)
    return (-25, -15, -10, 10, 15, 25)


def _is_round_amount(stake: float, strategy: str) -> bool:
    return stake in rounding_targets(stake, strategy) or friendly_odd_round(stake, strategy) == stake


def is_natural_stake(stake: float, strategy: str) -> bool:
    """
    True when `stake` is something naturalize_stake() could have produced:
    a whole amount that is a tier target, a friendly odd round, or one of
    those shifted by a jitter step.
    """
    if stake <= 0 or abs(stake - round(stake)) > 1e-9:
        return False
    whole = int(round(stake))
    if _is_round_amount(whole, strategy):
        return True
    if strategy == "conservative":
        return False
    for v in _ALL_VARIATIONS:
        for base in (whole - v, whole + v):
            if base > 0 and _is_round_amount(base, strategy):
                return True
    return False


# ---------------------------------------------------------------------------
# Single stake
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NaturalizedStake:
    original: float
    naturalized: float
    difference: float
    difference_percent: float
    strategy: str                 # human description of the rounding applied
    warning: Optional[str] = None
    escalated: bool = False       # deviation allowed past max_deviation


def _fmt(stake: float) -> str:
    return f"${stake:.0f}" if float(stake).is_integer() else f"${stake:.2f}"


def _deviation(candidate: float, target: float) -> float:
    return abs(candidate - target) / target * 100.0


def naturalize_stake(
    target: float,
    bookmaker: str = "",
    max_deviation: float = DEFAULT_MAX_DEVIATION,
    allow_higher: bool = True,
    allow_escalation: bool = True,
    rng: Optional[random.Random] = None,
) -> NaturalizedStake:
    """
    Replace `target` with the nearest natural amount for the bookmaker's tier.

    Args:
        target:           Computed stake.
        bookmaker:        API key or display name; selects the strategy tier.
        max_deviation:    Allowed deviation in % of target.
        allow_higher:     Allow rounding up (uses more capital).
        allow_escalation: When nothing fits the bound, allow rounding up to
                          1.5x the bound, then a friendly odd round.
        rng:              Source for jitter. None -> no jitter, deterministic.

    Raises:
        ValueError: on a negative target.
    """
    if target < 0:
        raise ValueError(f"Stake cannot be negative: {target}")
    strategy = stake_strategy_for(bookmaker)
    if target == 0:
        return NaturalizedStake(0.0, 0.0, 0.0, 0.0, "Zero stake")
    if is_natural_stake(target, strategy):
        return NaturalizedStake(target, target, 0.0, 0.0, f"Already natural at {_fmt(target)}")

    targets = rounding_targets(target, strategy)
    below = [t for t in targets if t <= target]
    above = [t for t in targets if t >= target]
    best_below = below[-1] if below else None
    best_above = above[0] if above else None
    dev_below = _deviation(best_below, target) if best_below is not None else math.inf
    dev_above = _deviation(best_above, target) if best_above is not None else math.inf

    escalated = False
    if allow_higher and dev_above <= max_deviation and dev_above < dev_below:
        naturalized, description = best_above, f"Rounded up to {_fmt(best_above)}"
    elif dev_below <= max_deviation:
        naturalized, description = best_below, f"Rounded down to {_fmt(best_below)}"
    elif allow_escalation and allow_higher and dev_above <= max_deviation * ESCALATION_FACTOR:
        naturalized = best_above
        description = f"Rounded up to {_fmt(best_above)} (slight over-deviation)"
        escalated = True
    else:
        friendly = friendly_odd_round(target, strategy)
        if _deviation(friendly, target) <= max_deviation or allow_escalation:
            naturalized = friendly
            description = f"Friendly odd round to {_fmt(friendly)}"
            escalated = _deviation(friendly, target) > max_deviation
        else:
            naturalized = round(target, 2)
            description = f"No natural amount within {max_deviation:g}%"

    chance = JITTER_CHANCE.get(strategy, 0.0)
    if rng is not None and chance > 0 and naturalized >= MIN_JITTER_STAKE and rng.random() < chance:
        jittered = naturalized + rng.choice(_variations(naturalized))
        if (
            jittered > 0
            and _deviation(jittered, target) <= max_deviation
            and (allow_higher or jittered <= target)
        ):
            naturalized = jittered
            description += " + variation"

    difference = naturalized - target
    difference_percent = difference / target * 100.0

    warning = None
    if abs(difference_percent) > SOFT_CAP_PERCENT:
        warning = f"Large deviation ({difference_percent:.1f}%) may significantly affect profit"
    elif naturalized > target * 1.1:
        warning = f"Rounding up increases stake by {difference_percent:.1f}%"
    elif description.startswith("No natural"):
        warning = description

    return NaturalizedStake(
        original=target,
        naturalized=round(naturalized, 2),
        difference=round(difference, 2),
        difference_percent=round(difference_percent, 2),
        strategy=description,
        warning=warning,
        escalated=escalated,
    )


# ---------------------------------------------------------------------------
# Whole split
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NaturalizedSplit:
    stakes: tuple[NaturalizedStake, ...]
    total_stake: float
    total_naturalized: float
    total_difference: float
    profit_impact: str


def naturalize_split(
    split: Union[StakeSplit, Sequence[float]],
    bookmakers: Sequence[str],
    total_stake: Optional[float] = None,
    max_deviation: float = DEFAULT_MAX_DEVIATION,
    allow_escalation: bool = True,
    rng: Optional[random.Random] = None,
) -> NaturalizedSplit:
    """
    Naturalize every leg of a split (arb legs or middle halves).

    `split` is a StakeSplit or a plain sequence of stakes; with a plain
    sequence the total defaults to their sum.
    """
    if isinstance(split, StakeSplit):
        stakes = list(split.stakes)
        total = split.total_stake if total_stake is None else total_stake
    else:
        stakes = list(split)
        total = sum(stakes) if total_stake is None else total_stake
    if len(stakes) != len(bookmakers):
        raise ValueError("One bookmaker is required per stake")

    legs = tuple(
        naturalize_stake(s, b, max_deviation=max_deviation,
                         allow_escalation=allow_escalation, rng=rng)
        for s, b in zip(stakes, bookmakers)
    )
    total_naturalized = round(sum(leg.naturalized for leg in legs), 2)
    total_difference = round(total_naturalized - total, 2)

    impact_pct = total_difference / total * 100.0 if total else 0.0
    if abs(impact_pct) < 1:
        impact = "Minimal impact on profit"
    elif impact_pct > 0:
        impact = f"Using {impact_pct:.1f}% more capital"
    else:
        impact = f"Using {abs(impact_pct):.1f}% less capital (may affect returns)"

    return NaturalizedSplit(
        stakes=legs,
        total_stake=total,
        total_naturalized=total_naturalized,
        total_difference=total_difference,
        profit_impact=impact,
    )


def is_suspicious_stake(stake: float) -> list[str]:
    """
    Reasons a stake looks calculator-generated. Empty list = looks natural.

    >>> is_suspicious_stake(50)
    []
    >>> len(is_suspicious_stake(47.83)) > 0
    True
    """
    reasons: list[str] = []
    cents_total = round(stake * 100)
    if abs(stake * 100 - cents_total) > 1e-6:
        reasons.append("More than 2 decimal places")
    elif cents_total % 100 != 0 and cents_total % 25 != 0:
        reasons.append("Unusual cents value (not .00, .25, .50, .75)")

    cents = cents_total % 100
    if stake > 10 and cents != 0 and cents not in (25, 50, 75, 20, 80):
        reasons.append(f"Unusual amount: ${stake:.2f} looks calculated")

    if 20 < stake < 1000 and cents != 0:
        reasons.append("Non-round amount in typical betting range")
    return reasons
