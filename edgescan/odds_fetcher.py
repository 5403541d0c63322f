"""
edgescan/odds_fetcher.py - EdgeScan
=====================================
All Odds API calls live here. No detection math, no persistence.

Responsibilities:
- Authenticate with The Odds API (key per subscriber, or ODDS_API_KEY env)
- List active sports
- Fetch odds sport by sport, in priority order, streaming sport batches
- Track API quota from response headers
- Exponential backoff on failures (max 3 tries)
- Parse raw JSON into EventOdds

API base URL: https://api.the-odds-api.com/v4/sports
Format: decimal odds, ISO dates.

NEVER hardcode API keys. Use os.environ.get("ODDS_API_KEY") or the
subscriber's stored key.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import requests

from edgescan.config import REQUEST_TIMEOUT_SECONDS, SPORTS_PER_BATCH
from edgescan.errors import ProviderError
from edgescan.models import BookmakerOdds, Event, EventOdds, Market, PriceOutcome

logger = logging.getLogger(__name__)

BASE_URL = "https://api.the-odds-api.com/v4/sports"

# Fetched first: these carry the most arbs. Prefix match on sport key.
PRIORITY_SPORTS: tuple[str, ...] = (
    "tennis_atp", "tennis_wta", "tennis_itf_men", "tennis_itf_women",
    "basketball_nba", "basketball_nbl", "basketball_euroleague", "basketball_ncaab",
    "americanfootball_nfl", "americanfootball_ncaaf",
    "mma_mixed_martial_arts", "boxing_boxing",
    "baseball_mlb",
    "icehockey_nhl",
    "aussierules_afl", "rugbyleague_nrl",
)

# Sports whose bookmakers post spreads/totals
LINE_SPORT_PREFIXES: tuple[str, ...] = (
    "basketball", "americanfootball", "baseball", "icehockey", "aussierules", "rugby",
)

H2H_MARKETS = "h2h"
LINE_MARKETS = "spreads,totals"

# Stop fetching when fewer requests than this remain
QUOTA_STOP_THRESHOLD = 10


# ---------------------------------------------------------------------------
# Quota tracker
# ---------------------------------------------------------------------------

class QuotaTracker:
    """Track API usage from x-requests-* response headers."""

    def __init__(self) -> None:
        self.used: int = 0
        self.remaining: Optional[int] = None
        self.last_cost: int = 0

    def update(self, headers) -> None:
        try:
            self.remaining = int(headers.get("x-requests-remaining", self.remaining or 0))
            self.used = int(headers.get("x-requests-used", self.used))
            self.last_cost = int(headers.get("x-requests-last", 0))
        except (ValueError, TypeError):
            pass

    def report(self) -> str:
        return (
            f"API quota | used={self.used} "
            f"remaining={self.remaining} "
            f"last_call={self.last_cost}"
        )

    def is_low(self, threshold: int = QUOTA_STOP_THRESHOLD) -> bool:
        """True if remaining quota is known and below threshold."""
        if self.remaining is None:
            return False
        return self.remaining < threshold


# ---------------------------------------------------------------------------
# API key loader
# ---------------------------------------------------------------------------

def get_api_key() -> Optional[str]:
    """Fallback Odds API key from the environment. None if unset."""
    return os.environ.get("ODDS_API_KEY") or None


# ---------------------------------------------------------------------------
# HTTP fetch with exponential backoff
# ---------------------------------------------------------------------------

def _pause(seconds: float, deadline=None) -> None:
    """Sleep, but never past the deadline."""
    if deadline is not None:
        seconds = min(seconds, deadline.remaining())
    if seconds > 0:
        time.sleep(seconds)


def _fetch_with_backoff(
    url: str,
    params: dict,
    session=None,
    max_retries: int = 3,
    base_delay: float = 1.0,
    deadline=None,
) -> Optional[requests.Response]:
    """
    GET with exponential backoff.

    Returns the response on 200, None after max_retries failures, on a
    permanent 404/422, or once `deadline` has expired. With a deadline, each
    request timeout and each backoff sleep is capped at deadline.remaining().

    Raises:
        ProviderError: on 401 (bad key). Retrying cannot fix it.
    """
    requester = session or requests
    delay = base_delay
    for attempt in range(1, max_retries + 1):
        timeout = REQUEST_TIMEOUT_SECONDS
        if deadline is not None:
            if deadline.expired():
                logger.warning("Scan deadline reached: giving up on %s", url)
                return None
            timeout = min(timeout, deadline.remaining())
        try:
            response = requester.get(url, params=params, timeout=timeout)
            if response.status_code == 200:
                return response
            elif response.status_code in (404, 422):
                logger.warning("%d for %s: not retrying", response.status_code, url)
                return None
            elif response.status_code == 401:
                logger.error("401 Unauthorized: check the odds API key")
                raise ProviderError("Odds API rejected the key (401)")
            elif response.status_code == 429:
                logger.warning("429 Rate limited. Waiting %.1fs before retry.", delay * 2)
                _pause(delay * 2, deadline)
            else:
                logger.warning(
                    "Attempt %d/%d: HTTP %d for %s",
                    attempt, max_retries, response.status_code, url
                )
        except requests.exceptions.Timeout:
            logger.warning("Attempt %d/%d: Timeout for %s", attempt, max_retries, url)
        except requests.exceptions.ConnectionError:
            logger.warning("Attempt %d/%d: Connection error for %s", attempt, max_retries, url)
        except requests.exceptions.RequestException as exc:
            logger.warning("Attempt %d/%d: Request error: %s", attempt, max_retries, exc)

        if attempt < max_retries:
            _pause(delay, deadline)
            delay *= 2

    logger.error("All %d attempts failed for %s", max_retries, url)
    return None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_event(raw: dict) -> EventOdds:
    """
    Convert one raw Odds API event into EventOdds.

    Raises:
        KeyError / ValueError: on a malformed event (callers skip it).
    """
    event = Event(
        id=raw["id"],
        sport_key=raw["sport_key"],
        sport_title=raw.get("sport_title", raw["sport_key"]),
        home_team=raw.get("home_team", ""),
        away_team=raw.get("away_team", ""),
        commence_time=_parse_time(raw["commence_time"]),
    )
    bookmakers = []
    for b in raw.get("bookmakers", []):
        if not b.get("markets"):
            continue
        markets = tuple(
            Market(
                key=m["key"],
                last_update=_parse_time(m.get("last_update") or b["last_update"]),
                outcomes=tuple(
                    PriceOutcome(name=o["name"], price=float(o["price"]), point=o.get("point"))
                    for o in m.get("outcomes", [])
                ),
            )
            for m in b["markets"]
        )
        bookmakers.append(BookmakerOdds(
            key=b["key"],
            title=b.get("title", b["key"]),
            last_update=_parse_time(b["last_update"]),
            markets=markets,
        ))
    return EventOdds(event=event, bookmakers=tuple(bookmakers))


# ---------------------------------------------------------------------------
# Sport selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Sport:
    key: str
    title: str
    group: str
    active: bool
    has_outrights: bool


def sort_by_priority(sport_keys: list[str]) -> list[str]:
    """
    Priority sports first (in PRIORITY_SPORTS order), then the rest as given.

    >>> sort_by_priority(["soccer_epl", "basketball_nba", "tennis_atp_dubai"])
    ['tennis_atp_dubai', 'basketball_nba', 'soccer_epl']
    """
    def rank(key: str) -> int:
        for i, prefix in enumerate(PRIORITY_SPORTS):
            if key.startswith(prefix):
                return i
        return len(PRIORITY_SPORTS)

    return sorted(sport_keys, key=rank)


def h2h_sport_keys(sports: list[Sport]) -> list[str]:
    """Sports with match markets (outright-only sports are skipped)."""
    return [s.key for s in sports if s.active and not s.has_outrights]


def line_sport_keys(sports: list[Sport]) -> list[str]:
    """
    Sports that carry spreads/totals.

    >>> line_sport_keys([Sport("basketball_nba", "NBA", "Basketball", True, False),
    ...                  Sport("tennis_atp_dubai", "ATP", "Tennis", True, False)])
    ['basketball_nba']
    """
    return [
        key for key in h2h_sport_keys(sports)
        if key.startswith(LINE_SPORT_PREFIXES)
    ]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

BatchCallback = Callable[[list[str], list[EventOdds]], None]


@dataclass
class OddsResult:
    events: list[EventOdds] = field(default_factory=list)
    remaining_requests: Optional[int] = None
    used_requests: Optional[int] = None
    errors: list[str] = field(default_factory=list)


class OddsApiClient:
    """
    The Odds API v4 client bound to one API key.

    Args:
        api_key: Subscriber key. Falls back to ODDS_API_KEY.
        session: Optional requests.Session (test injection).
    """

    def __init__(self, api_key: Optional[str] = None, session=None) -> None:
        self.api_key = api_key or get_api_key()
        self.session = session
        self.quota = QuotaTracker()

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderError("No odds API key configured")
        return self.api_key

    def list_sports(self, deadline=None) -> list[Sport]:
        """
        Active sports on the provider.

        Raises:
            ProviderError: on missing key or failed request.
        """
        api_key = self._require_key()
        response = _fetch_with_backoff(f"{BASE_URL}/", {"apiKey": api_key}, self.session,
                                      deadline=deadline)
        if response is None:
            raise ProviderError("Could not list sports")
        self.quota.update(response.headers)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"Sports list is not JSON: {exc}") from exc

        sports = [
            Sport(
                key=s.get("key", ""),
                title=s.get("title", ""),
                group=s.get("group", ""),
                active=bool(s.get("active", False)),
                has_outrights=bool(s.get("has_outrights", False)),
            )
            for s in data
            if s.get("active") and s.get("key")
        ]
        logger.info("Active sports: %d", len(sports))
        return sports

    def fetch_sport_odds(
        self, sport_key: str, markets: str, regions: str, deadline=None,
    ) -> Optional[list[EventOdds]]:
        """
        Odds for one sport. None when the fetch failed; [] when there are no events.
        Malformed events are skipped with a warning.
        """
        api_key = self._require_key()
        params = {
            "apiKey": api_key,
            "regions": regions,
            "markets": markets,
            "oddsFormat": "decimal",
            "dateFormat": "iso",
        }
        response = _fetch_with_backoff(f"{BASE_URL}/{sport_key}/odds", params, self.session,
                                       deadline=deadline)
        if response is None:
            return None

        self.quota.update(response.headers)
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("JSON parse error for %s: %s", sport_key, exc)
            return None
        if not isinstance(data, list):
            logger.warning("Unexpected response format for %s: %s", sport_key, type(data))
            return None

        events = []
        for raw in data:
            try:
                events.append(parse_event(raw))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed event in %s: %s", sport_key, exc)
        logger.debug("Fetched %s: %d events | %s", sport_key, len(events), self.quota.report())
        return events

    def fetch_odds(
        self,
        sport_keys: list[str],
        markets: str,
        regions: str,
        on_batch: Optional[BatchCallback] = None,
        deadline=None,
        batch_size: int = SPORTS_PER_BATCH,
    ) -> OddsResult:
        """
        Fetch odds for many sports, priority sports first.

        Sports are grouped into batches of `batch_size`; after each batch,
        on_batch(batch_sport_keys, batch_events) is called so the caller can
        run detection while later sports are still being fetched.

        Args:
            sport_keys: Provider sport keys.
            markets:    "h2h" or "spreads,totals".
            regions:    Provider region codes, e.g. "au" or "us,us2".
            on_batch:   Optional per-batch callback.
            deadline:   Optional object with expired() -> bool (pipeline.Deadline).
                        Fetching stops once it has expired, and it also
                        caps request timeouts and retry sleeps.
            batch_size: Sports per streamed batch.

        Returns:
            OddsResult with all events, quota figures and per-sport errors.

        Raises:
            ProviderError: on a missing/rejected key, or when every sport failed.
        """
        self._require_key()
        result = OddsResult()
        ordered = sort_by_priority(sport_keys)
        attempted = 0
        failed = 0

        for start in range(0, len(ordered), batch_size):
            batch = ordered[start:start + batch_size]
            batch_events: list[EventOdds] = []
            fetched_keys: list[str] = []
            stop = False

            for sport_key in batch:
                if self.quota.is_low():
                    logger.warning(
                        "Quota critically low (%s remaining): stopping before %s",
                        self.quota.remaining, sport_key,
                    )
                    stop = True
                    break
                if deadline is not None and deadline.expired():
                    logger.warning("Scan deadline reached: stopping before %s", sport_key)
                    stop = True
                    break

                events = self.fetch_sport_odds(sport_key, markets, regions, deadline=deadline)
                if events is None and deadline is not None and deadline.expired():
                    logger.warning("Scan deadline reached while fetching %s", sport_key)
                    stop = True
                    break
                attempted += 1
                if events is None:
                    failed += 1
                    result.errors.append(f"{sport_key}: fetch failed")
                    continue
                fetched_keys.append(sport_key)
                batch_events.extend(events)

            result.events.extend(batch_events)
            if on_batch is not None and fetched_keys:
                on_batch(fetched_keys, batch_events)
            if stop:
                break

        result.remaining_requests = self.quota.remaining
        result.used_requests = self.quota.used
        if attempted and failed == attempted:
            raise ProviderError(f"All {attempted} sport fetches failed ({markets}, {regions})")

        logger.info(
            "Fetched %d events from %d sports (%s) | %s",
            len(result.events), attempted - failed, markets, self.quota.report(),
        )
        return result
