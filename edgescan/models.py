"""
edgescan/models.py - EdgeScan
===============================
Domain dataclasses. No API calls, no math, no file I/O.

Opportunities are frozen: they are recomputed on every scan and replaced,
never mutated. Subscriber state (ScanState) is mutable and owned by exactly
one subscriber's processing step.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


# ---------------------------------------------------------------------------
# Raw odds snapshot (as returned by the odds provider, parsed)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """One sporting event. Identity is `id`."""
    id: str
    sport_key: str
    sport_title: str
    home_team: str
    away_team: str
    commence_time: datetime

    @property
    def matchup(self) -> str:
        return f"{self.home_team} vs {self.away_team}"


@dataclass(frozen=True)
class PriceOutcome:
    name: str
    price: float                     # decimal odds
    point: Optional[float] = None    # spread / total line


@dataclass(frozen=True)
class Market:
    key: str                         # "h2h", "spreads", "totals"
    last_update: datetime
    outcomes: tuple[PriceOutcome, ...]


@dataclass(frozen=True)
class BookmakerOdds:
    key: str
    title: str
    last_update: datetime
    markets: tuple[Market, ...]

    def market(self, key: str) -> Optional[Market]:
        return next((m for m in self.markets if m.key == key), None)


@dataclass(frozen=True)
class EventOdds:
    """An event plus every bookmaker quoting it."""
    event: Event
    bookmakers: tuple[BookmakerOdds, ...]


# ---------------------------------------------------------------------------
# Derived opportunities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Outcome:
    """A single priced leg: outcome name at a bookmaker."""
    name: str
    bookmaker: str          # display title
    bookmaker_key: str      # canonical, lower-case
    odds: float             # decimal, > 1.0
    point: Optional[float] = None


@dataclass(frozen=True)
class BookVsBookArb:
    type: str                        # "arb" | "near-arb"
    event: Event
    market_type: str                 # "h2h" | "h2h-3way"
    outcome1: Outcome
    outcome2: Outcome
    implied_probability_sum: float
    profit_percentage: float
    last_updated: datetime
    outcome3: Optional[Outcome] = None
    mode: str = "book-vs-book"

    @property
    def legs(self) -> list[Outcome]:
        legs = [self.outcome1, self.outcome2]
        if self.outcome3 is not None:
            legs.append(self.outcome3)
        return legs


@dataclass(frozen=True)
class LayOutcome:
    name: str
    odds: float
    available_liquidity: float


@dataclass(frozen=True)
class BookVsExchangeArb:
    """Back at a bookmaker, lay the same outcome at an exchange."""
    event: Event
    market_type: str
    back_outcome: Outcome
    lay_outcome: LayOutcome
    profit_percentage: float
    commission: float
    last_updated: datetime
    type: str = "arb"
    mode: str = "book-vs-exchange"

    @property
    def legs(self) -> list[Outcome]:
        return [self.back_outcome]


ArbOpportunity = Union[BookVsBookArb, BookVsExchangeArb]


@dataclass(frozen=True)
class ValueBet:
    event: Event
    market_type: str
    outcome: Outcome
    market_average: float       # mean odds of the other bookmakers
    fair_probability: float     # leave-one-out consensus of 1/odds
    value_percentage: float     # (odds * fair_probability - 1) * 100
    all_odds: tuple[Outcome, ...]
    last_updated: datetime
    type: str = "value-bet"


@dataclass(frozen=True)
class BestOutcomeOdds:
    name: str
    best_odds: float
    best_bookmaker: str
    best_bookmaker_key: str
    market_average: float
    all_odds: tuple[Outcome, ...]


@dataclass(frozen=True)
class BestOdds:
    event: Event
    outcomes: tuple[BestOutcomeOdds, ...]


@dataclass(frozen=True)
class SpreadArb:
    type: str
    event: Event
    line: float                 # absolute spread value
    favorite: Outcome           # negative point
    underdog: Outcome           # positive point
    implied_probability_sum: float
    profit_percentage: float
    last_updated: datetime
    market_type: str = "spreads"

    @property
    def legs(self) -> list[Outcome]:
        return [self.favorite, self.underdog]


@dataclass(frozen=True)
class TotalsArb:
    type: str
    event: Event
    line: float
    over: Outcome
    under: Outcome
    implied_probability_sum: float
    profit_percentage: float
    last_updated: datetime
    market_type: str = "totals"

    @property
    def legs(self) -> list[Outcome]:
        return [self.over, self.under]


@dataclass(frozen=True)
class MiddleRange:
    low: float
    high: float
    description: str


@dataclass(frozen=True)
class MiddleOpportunity:
    event: Event
    market_type: str            # "spreads" | "totals"
    side1: Outcome
    side2: Outcome
    middle_range: MiddleRange
    middle_probability: float   # heuristic, 0-100
    expected_value: float
    guaranteed_loss: float      # worst-case loss if the middle misses
    potential_profit: float     # profit if both legs win
    type: str = "middle"

    @property
    def legs(self) -> list[Outcome]:
        return [self.side1, self.side2]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass
class ScanStats:
    """H2H counters, accumulated within one scan and discarded after."""
    total_events: int = 0
    events_with_multiple_bookmakers: int = 0
    arbs_found: int = 0
    near_arbs_found: int = 0
    value_bets_found: int = 0
    bookmaker_keys: set[str] = field(default_factory=set)
    sport_keys: set[str] = field(default_factory=set)

    @property
    def total_bookmakers(self) -> int:
        return len(self.bookmaker_keys)

    @property
    def sports_scanned(self) -> int:
        return len(self.sport_keys)

    def merge(self, other: "ScanStats") -> None:
        self.total_events += other.total_events
        self.events_with_multiple_bookmakers += other.events_with_multiple_bookmakers
        self.arbs_found += other.arbs_found
        self.near_arbs_found += other.near_arbs_found
        self.value_bets_found += other.value_bets_found
        self.bookmaker_keys |= other.bookmaker_keys
        self.sport_keys |= other.sport_keys

    def to_dict(self) -> dict:
        return {
            "total_events": self.total_events,
            "events_with_multiple_bookmakers": self.events_with_multiple_bookmakers,
            "total_bookmakers": self.total_bookmakers,
            "arbs_found": self.arbs_found,
            "near_arbs_found": self.near_arbs_found,
            "value_bets_found": self.value_bets_found,
            "sports_scanned": self.sports_scanned,
        }


@dataclass
class LineStats:
    """Spread/totals counters."""
    total_events: int = 0
    events_with_spreads: int = 0
    events_with_totals: int = 0
    spread_arbs_found: int = 0
    totals_arbs_found: int = 0
    middles_found: int = 0
    near_arbs_found: int = 0

    def merge(self, other: "LineStats") -> None:
        for f in dataclasses.fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


# ---------------------------------------------------------------------------
# Persisted scan output
# ---------------------------------------------------------------------------

@dataclass
class RegionScanSnapshot:
    """Authoritative full result set for one region, replaced on every master scan."""
    region: str
    scanned_at: datetime
    opportunities: list[BookVsBookArb] = field(default_factory=list)
    value_bets: list[ValueBet] = field(default_factory=list)
    spread_arbs: list[SpreadArb] = field(default_factory=list)
    totals_arbs: list[TotalsArb] = field(default_factory=list)
    middles: list[MiddleOpportunity] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    line_stats: LineStats = field(default_factory=LineStats)
    remaining_requests: Optional[int] = None

    def to_dict(self) -> dict:
        data = to_jsonable(self)
        data["stats"] = self.stats.to_dict()
        return data


@dataclass
class SubscriberScanResult:
    """A subscriber's latest scan, all scanned regions combined."""
    subscriber_id: str
    regions: list[str]
    scanned_at: datetime
    opportunities: list[BookVsBookArb] = field(default_factory=list)
    value_bets: list[ValueBet] = field(default_factory=list)
    spread_arbs: list[SpreadArb] = field(default_factory=list)
    totals_arbs: list[TotalsArb] = field(default_factory=list)
    middles: list[MiddleOpportunity] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    line_stats: LineStats = field(default_factory=LineStats)

    @classmethod
    def combine(cls, subscriber_id: str, scanned_at: datetime,
                snapshots: list[RegionScanSnapshot]) -> "SubscriberScanResult":
        result = cls(subscriber_id=subscriber_id,
                     regions=[s.region for s in snapshots], scanned_at=scanned_at)
        for snapshot in snapshots:
            result.opportunities.extend(snapshot.opportunities)
            result.value_bets.extend(snapshot.value_bets)
            result.spread_arbs.extend(snapshot.spread_arbs)
            result.totals_arbs.extend(snapshot.totals_arbs)
            result.middles.extend(snapshot.middles)
            result.stats.merge(snapshot.stats)
            result.line_stats.merge(snapshot.line_stats)
        result.opportunities.sort(key=lambda a: a.profit_percentage, reverse=True)
        result.value_bets.sort(key=lambda v: v.value_percentage, reverse=True)
        return result

    def to_dict(self) -> dict:
        data = to_jsonable(self)
        data["stats"] = self.stats.to_dict()
        data["line_stats"] = self.line_stats.to_dict()
        return data


@dataclass
class ProgressBatch:
    """Incremental results streamed to the progress sink while a region scans."""
    region: str
    scan_id: str
    batch_index: int
    phase: str                   # "h2h" | "lines" | "complete"
    sport_keys: list[str] = field(default_factory=list)
    opportunities: list[BookVsBookArb] = field(default_factory=list)
    value_bets: list[ValueBet] = field(default_factory=list)
    spread_arbs: list[SpreadArb] = field(default_factory=list)
    totals_arbs: list[TotalsArb] = field(default_factory=list)
    middles: list[MiddleOpportunity] = field(default_factory=list)
    stats: dict = field(default_factory=dict)    # running totals at this point
    is_last_batch: bool = False

    def to_dict(self) -> dict:
        return to_jsonable(self)


# ---------------------------------------------------------------------------
# Subscriber state
# ---------------------------------------------------------------------------

class ScanPhase(str, Enum):
    IDLE = "idle"
    ELIGIBLE = "eligible"
    SCANNING = "scanning"
    COOLING = "cooling"


@dataclass
class AlertRecord:
    alerted_at: datetime
    profit_percent: float


@dataclass
class ScanState:
    last_scan_at: Optional[datetime] = None
    scan_started_at: Optional[datetime] = None
    credits_used_this_month: int = 0
    alerted_arbs: dict[str, AlertRecord] = field(default_factory=dict)
    last_alert_at: Optional[datetime] = None
    last_scan_credits_remaining: Optional[int] = None


@dataclass
class AlertSettings:
    enabled: bool = True
    min_profit_percent: float = 4.0
    high_value_threshold: float = 10.0
    enable_high_value_reminders: bool = True
    alert_cooldown_minutes: int = 5
    regions: list[str] = field(default_factory=lambda: ["AU"])


@dataclass
class Subscriber:
    id: str
    email: str
    odds_api_key: Optional[str] = None
    phone_number: Optional[str] = None
    subscription_status: str = "inactive"      # "active" | "inactive" | "cancelled"
    subscription_ends_at: Optional[datetime] = None
    auto_scan_enabled: bool = False
    credit_tier: str = "20k"
    regions: list[str] = field(default_factory=lambda: ["AU"])
    alerts: AlertSettings = field(default_factory=AlertSettings)
    state: ScanState = field(default_factory=ScanState)

    def has_active_subscription(self, now: datetime) -> bool:
        if self.subscription_status != "active":
            return False
        return self.subscription_ends_at is None or self.subscription_ends_at > now


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def to_jsonable(obj: Any) -> Any:
    """
    Convert dataclasses, datetimes, enums and sets into JSON-serializable values.

    Dataclass properties are not included, only fields.

    >>> to_jsonable({"a": {1, 2}})
    {'a': [1, 2]}
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        return sorted(to_jsonable(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    return obj
