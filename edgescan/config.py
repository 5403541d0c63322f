"""
edgescan/config.py - EdgeScan
===============================
Static configuration tables and environment-driven settings.

Responsibilities:
- Region catalogue (user regions -> provider region codes -> bookmakers)
- Detection filter defaults (near-arb / value thresholds, start-time window)
- Credit cost table and subscription credit tiers
- Region rotation and pipeline timing constants
- Middle probability scaling table (policy, not a calibrated model)
- Settings loaded from environment variables

NEVER hardcode API keys or Twilio credentials. Use os.environ.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Regions
# ---------------------------------------------------------------------------

REGIONS: tuple[str, ...] = ("AU", "UK", "US", "EU")

# User region -> Odds API region codes
API_REGIONS: dict[str, list[str]] = {
    "US": ["us", "us2", "us_dfs", "us_ex"],
    "EU": ["eu", "fr", "se"],
    "UK": ["uk"],
    "AU": ["au"],
}

BOOKMAKERS_BY_REGION: dict[str, list[str]] = {
    "AU": [
        "betfair_ex_au", "betr_au", "betright", "bet365_au", "boombet", "dabble_au",
        "ladbrokes_au", "neds", "playup", "pointsbetau", "sportsbet", "tab",
        "tabtouch", "unibet",
    ],
    "UK": [
        "sport888", "betfair_ex_uk", "betfair_sb_uk", "betvictor", "betway",
        "boylesports", "casumo", "coral", "grosvenor", "ladbrokes_uk", "leovegas",
        "livescorebet", "matchbook", "paddypower", "skybet", "smarkets",
        "unibet_uk", "virginbet", "williamhill",
    ],
    "US": [
        "betonlineag", "betmgm", "betrivers", "betus", "bovada", "williamhill_us",
        "draftkings", "fanatics", "fanduel", "lowvig", "mybookieag",
        # us2
        "ballybet", "betanysports", "betparx", "espnbet", "fliff", "hardrockbet",
        "rebet",
        # us_dfs
        "betr_us_dfs", "pick6", "prizepicks", "underdog",
        # us_ex
        "betopenly", "kalshi", "novig", "polymarket", "prophetx",
    ],
    "EU": [
        "onexbet", "sport888", "betclic_fr", "betanysports", "betfair_ex_eu",
        "betonlineag", "betsson", "codere_it", "betvictor", "coolbet", "everygame",
        "gtbets", "leovegas_se", "marathonbet", "matchbook", "mybookieag",
        "nordicbet", "parionssport_fr", "pinnacle", "pmu_fr", "suprabets",
        "tipico_de", "unibet_fr", "unibet_it", "unibet_nl", "unibet_se",
        "williamhill", "winamax_de", "winamax_fr",
        # fr / se
        "netbet_fr", "atg_se", "mrgreen_se", "svenskaspel_se",
    ],
}

BOOKMAKER_NAMES: dict[str, str] = {
    "betfair_ex_au": "Betfair", "betr_au": "Betr", "betright": "BetRight",
    "bet365_au": "Bet365", "boombet": "BoomBet", "dabble_au": "Dabble",
    "ladbrokes_au": "Ladbrokes", "neds": "Neds", "playup": "PlayUp",
    "pointsbetau": "PointsBet", "sportsbet": "SportsBet", "tab": "TAB",
    "tabtouch": "TABtouch", "unibet": "Unibet",
    "sport888": "888sport", "betfair_ex_uk": "Betfair UK", "betfair_sb_uk": "Betfair SB",
    "betvictor": "BetVictor", "betway": "Betway", "boylesports": "BoyleSports",
    "casumo": "Casumo", "coral": "Coral", "grosvenor": "Grosvenor",
    "ladbrokes_uk": "Ladbrokes UK", "leovegas": "LeoVegas", "livescorebet": "LiveScore Bet",
    "matchbook": "Matchbook", "paddypower": "Paddy Power", "skybet": "Sky Bet",
    "smarkets": "Smarkets", "unibet_uk": "Unibet UK", "virginbet": "Virgin Bet",
    "williamhill": "William Hill",
    "betonlineag": "BetOnline", "betmgm": "BetMGM", "betrivers": "BetRivers",
    "betus": "BetUS", "bovada": "Bovada", "draftkings": "DraftKings",
    "fanduel": "FanDuel", "lowvig": "LowVig", "mybookieag": "MyBookie",
    "williamhill_us": "Caesars", "fanatics": "Fanatics",
    "ballybet": "Bally Bet", "betanysports": "BetAnything", "betparx": "betPARX",
    "espnbet": "theScore Bet", "fliff": "Fliff", "hardrockbet": "Hard Rock Bet",
    "rebet": "ReBet", "betr_us_dfs": "Betr Picks", "pick6": "DraftKings Pick6",
    "prizepicks": "PrizePicks", "underdog": "Underdog Fantasy",
    "betopenly": "BetOpenly", "kalshi": "Kalshi", "novig": "Novig",
    "polymarket": "Polymarket", "prophetx": "ProphetX",
    "onexbet": "1xBet", "betclic_fr": "Betclic FR", "betfair_ex_eu": "Betfair EU",
    "betsson": "Betsson", "codere_it": "Codere IT", "coolbet": "Coolbet",
    "everygame": "Everygame", "gtbets": "GTbets", "leovegas_se": "LeoVegas SE",
    "marathonbet": "Marathonbet", "nordicbet": "NordicBet",
    "parionssport_fr": "Parions Sport", "pinnacle": "Pinnacle", "pmu_fr": "PMU",
    "suprabets": "Suprabets", "tipico_de": "Tipico DE", "unibet_fr": "Unibet FR",
    "unibet_it": "Unibet IT", "unibet_nl": "Unibet NL", "unibet_se": "Unibet SE",
    "winamax_de": "Winamax DE", "winamax_fr": "Winamax FR", "netbet_fr": "NetBet FR",
    "atg_se": "ATG SE", "mrgreen_se": "Mr Green SE", "svenskaspel_se": "Svenska Spel",
}


def api_regions_for(regions: list[str]) -> str:
    """
    Comma-separated Odds API region string for a list of user regions.

    Order-preserving and de-duplicated.

    >>> api_regions_for(["AU"])
    'au'
    >>> api_regions_for(["UK", "AU", "UK"])
    'uk,au'
    """
    codes: list[str] = []
    for region in regions:
        for code in API_REGIONS.get(region, []):
            if code not in codes:
                codes.append(code)
    return ",".join(codes)


def bookmaker_keys_for(regions: list[str]) -> frozenset[str]:
    """Lower-cased bookmaker keys that belong to any of the given regions."""
    keys: set[str] = set()
    for region in regions:
        keys.update(k.lower() for k in BOOKMAKERS_BY_REGION.get(region, []))
    return frozenset(keys)


def bookmaker_name(key: str) -> str:
    """Display name for a bookmaker key, falling back to the key itself."""
    return BOOKMAKER_NAMES.get(key, key)


# ---------------------------------------------------------------------------
# Detection filters
# ---------------------------------------------------------------------------

NEAR_ARB_THRESHOLD: float = 2.0     # % over breakeven still reported as near-arb
VALUE_THRESHOLD: float = 5.0        # minimum edge % over consensus for a value bet
MAX_HOURS_UNTIL_START: int = 72     # opportunities further out are dropped

# Middle probability scaling: gap (points) -> probability %, capped.
# Empirical policy carried from production; NOT a calibrated model.
MIDDLE_PROBABILITY_SCALING: dict[str, dict[str, float]] = {
    "spreads": {"per_point": 5.0, "cap": 30.0},
    "totals":  {"per_point": 8.0, "cap": 25.0},
}
MIDDLE_REFERENCE_STAKE: float = 100.0   # per side, for EV / loss figures
MIDDLE_MIN_EV: float = -10.0            # keep middles with EV above this...
MIDDLE_MAX_LOSS: float = 10.0           # ...or a worst-case loss below this


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

# Approximate Odds API credits per region scan (H2H + lines)
CREDITS_PER_SCAN: dict[str, int] = {
    "AU": 170,
    "UK": 180,
    "US": 240,
    "EU": 200,
}

# Unknown regions are charged the most expensive known region, never 0
DEFAULT_REGION_CREDITS: int = max(CREDITS_PER_SCAN.values())


# ---------------------------------------------------------------------------
# Region rotation
# ---------------------------------------------------------------------------

BASE_REGION: str = "AU"
ROTATION_ORDER: tuple[str, ...] = ("UK", "US", "EU")
BASE_ONLY_SCANS_BETWEEN_ROTATIONS: int = 3


# ---------------------------------------------------------------------------
# Pipeline timing
# ---------------------------------------------------------------------------

DELAY_BETWEEN_REGIONS_SECONDS: float = 0.5
DELAY_BETWEEN_MARKET_TYPES_SECONDS: float = 0.3
SCAN_BUDGET_SECONDS: float = 60.0
PROGRESS_GRACE_SECONDS: float = 2.0
SPORTS_PER_BATCH: int = 6
REQUEST_TIMEOUT_SECONDS: float = 15.0
PROGRESS_TTL_SECONDS: int = 300

# Alerts
ALERT_HISTORY_HOURS: int = 24
MAX_ALERTS_PER_CYCLE: int = 5
ALERT_REFERENCE_STAKE: float = 100.0


# ---------------------------------------------------------------------------
# Environment settings
# ---------------------------------------------------------------------------

DEFAULT_DB_PATH = os.path.join(
    os.path.dirname(__file__), "..", "data", "edgescan.db"
)


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from the environment."""
    db_path: str
    master_subscriber_email: Optional[str]
    scan_interval_minutes: int
    twilio_account_sid: Optional[str]
    twilio_auth_token: Optional[str]
    twilio_from_number: Optional[str]

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


def load_settings() -> Settings:
    """
    Build Settings from os.environ.

    EDGESCAN_DB_PATH                 SQLite file (default data/edgescan.db)
    MASTER_SCAN_USER_EMAIL           subscriber whose scans populate the region cache
    EDGESCAN_SCAN_INTERVAL_MINUTES   scheduler interval (default 1)
    TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_PHONE_NUMBER
    """
    raw_interval = os.environ.get("EDGESCAN_SCAN_INTERVAL_MINUTES", "1")
    try:
        interval = max(1, int(raw_interval))
    except ValueError:
        logger.warning("Invalid EDGESCAN_SCAN_INTERVAL_MINUTES=%r, using 1", raw_interval)
        interval = 1

    return Settings(
        db_path=os.environ.get("EDGESCAN_DB_PATH") or DEFAULT_DB_PATH,
        master_subscriber_email=os.environ.get("MASTER_SCAN_USER_EMAIL") or None,
        scan_interval_minutes=interval,
        twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID") or None,
        twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN") or None,
        twilio_from_number=os.environ.get("TWILIO_PHONE_NUMBER") or None,
    )
