"""
edgescan/governor.py - EdgeScan
=================================
Per-subscriber credit and cadence gate.

A subscriber may scan when:
  1. auto-scan is enabled
  2. an odds API key is configured
  3. the subscription is active and unexpired
  4. now - last_scan_at >= tier.scan_interval_seconds
  5. credits_used_this_month + estimated_credits(regions) <= tier.monthly_credit_cap

Ineligibility is not an error: check_should_scan() returns scan=False with a
reason and a SkipReason code, and the caller moves on. credits_used_this_month
is only ever incremented here; the monthly reset is an external process.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from edgescan import store
from edgescan.config import CREDITS_PER_SCAN, DEFAULT_REGION_CREDITS
from edgescan.models import ScanPhase, Subscriber

logger = logging.getLogger(__name__)

# A scan marker older than this is a crashed run, not a live scan
SCAN_MARKER_STALE_AFTER = timedelta(minutes=5)


@dataclass(frozen=True)
class CreditTierConfig:
    label: str
    scan_interval_seconds: int
    monthly_credit_cap: int


CREDIT_TIER_CONFIG: dict[str, CreditTierConfig] = {
    "20k":  CreditTierConfig("20K credits / month",  scan_interval_seconds=6 * 3600, monthly_credit_cap=20_000),
    "100k": CreditTierConfig("100K credits / month", scan_interval_seconds=3600,     monthly_credit_cap=100_000),
    "5m":   CreditTierConfig("5M credits / month",   scan_interval_seconds=120,      monthly_credit_cap=5_000_000),
    "15m":  CreditTierConfig("15M credits / month",  scan_interval_seconds=60,       monthly_credit_cap=15_000_000),
}
DEFAULT_TIER = "20k"


class SkipReason(str, Enum):
    OK = "ok"
    AUTO_SCAN_DISABLED = "auto_scan_disabled"
    NO_API_KEY = "no_api_key"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    INTERVAL_NOT_REACHED = "interval_not_reached"
    CREDIT_CAP_REACHED = "credit_cap_reached"


@dataclass(frozen=True)
class Eligibility:
    scan: bool
    reason: str
    estimated_credits: int = 0
    code: SkipReason = SkipReason.OK


def tier_config(tier: str) -> CreditTierConfig:
    """Config for a tier key. Unknown tiers get the most restrictive tier."""
    config = CREDIT_TIER_CONFIG.get(tier)
    if config is None:
        logger.warning("Unknown credit tier %r, using %s", tier, DEFAULT_TIER)
        return CREDIT_TIER_CONFIG[DEFAULT_TIER]
    return config


def estimated_credits(regions: list[str]) -> int:
    """
    Credits one scan of `regions` is expected to cost.

    >>> estimated_credits(["AU"])
    170
    >>> estimated_credits(["AU", "UK"])
    350
    >>> estimated_credits(["XX"])
    240
    """
    return sum(CREDITS_PER_SCAN.get(r, DEFAULT_REGION_CREDITS) for r in regions)


def check_should_scan(
    subscriber: Subscriber,
    now: datetime,
    regions: Optional[list[str]] = None,
) -> Eligibility:
    """
    Decide whether `subscriber` may scan `regions` (default: their own regions) now.

    Returns:
        Eligibility(scan, reason, estimated_credits, code). reason is "ok"
        when scan is True, otherwise a human-readable explanation. code is
        the machine-readable SkipReason.
    """
    regions = regions if regions is not None else subscriber.regions
    estimate = estimated_credits(regions)

    if not subscriber.auto_scan_enabled:
        return Eligibility(False, "auto-scan disabled", estimate,
                           SkipReason.AUTO_SCAN_DISABLED)
    if not subscriber.odds_api_key:
        return Eligibility(False, "no odds API key configured", estimate,
                           SkipReason.NO_API_KEY)
    if not subscriber.has_active_subscription(now):
        return Eligibility(False, "subscription not active", estimate,
                           SkipReason.SUBSCRIPTION_INACTIVE)

    tier = tier_config(subscriber.credit_tier)
    state = subscriber.state

    if state.last_scan_at is not None:
        elapsed = (now - state.last_scan_at).total_seconds()
        if elapsed < tier.scan_interval_seconds:
            wait = int(tier.scan_interval_seconds - elapsed)
            return Eligibility(False, f"scan interval not reached ({wait}s remaining)",
                               estimate, SkipReason.INTERVAL_NOT_REACHED)

    if state.credits_used_this_month + estimate > tier.monthly_credit_cap:
        return Eligibility(
            False,
            f"monthly credit cap reached ({state.credits_used_this_month}"
            f" + {estimate} > {tier.monthly_credit_cap})",
            estimate,
            SkipReason.CREDIT_CAP_REACHED,
        )

    return Eligibility(True, "ok", estimate)


def scan_phase(subscriber: Subscriber, now: datetime) -> ScanPhase:
    """
    Current governor state for observability.

    SCANNING  live scan marker present
    ELIGIBLE  check_should_scan() passes
    COOLING   last scan too recent for the tier interval
    IDLE      anything else (disabled, no key, inactive, over cap)
    """
    started = subscriber.state.scan_started_at
    if started is not None and now - started < SCAN_MARKER_STALE_AFTER:
        return ScanPhase.SCANNING

    eligibility = check_should_scan(subscriber, now)
    if eligibility.scan:
        return ScanPhase.ELIGIBLE
    if eligibility.code is SkipReason.INTERVAL_NOT_REACHED:
        return ScanPhase.COOLING
    return ScanPhase.IDLE


class CreditGovernor:
    """
    Persists the Scanning transition and the credit charge for a subscriber.

    Usage:
        governor = CreditGovernor(db_path)
        governor.begin_scan(subscriber, now)
        ...scan...
        governor.finish_scan(subscriber, finished_at, success=True, credits_used=170)
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path

    def begin_scan(self, subscriber: Subscriber, now: datetime) -> None:
        subscriber.state.scan_started_at = now
        store.mark_scan_started(subscriber.id, now, self.db_path)

    def finish_scan(
        self,
        subscriber: Subscriber,
        finished_at: datetime,
        success: bool,
        credits_used: int = 0,
        credits_remaining: Optional[int] = None,
    ) -> None:
        """
        Clear the scan marker. On success also charge credits and set
        last_scan_at. A failed scan costs nothing and does not reset the interval.
        """
        state = subscriber.state
        state.scan_started_at = None
        if not success:
            store.clear_scan_marker(subscriber.id, self.db_path)
            logger.info("Scan failed for %s: no credits charged", subscriber.email)
            return

        store.record_scan_completed(
            subscriber.id, finished_at, credits_used, credits_remaining, self.db_path
        )
        state.last_scan_at = finished_at
        state.credits_used_this_month += credits_used
        if credits_remaining is not None:
            state.last_scan_credits_remaining = credits_remaining
        logger.info(
            "Scan recorded for %s: +%d credits (month total %d)",
            subscriber.email, credits_used, state.credits_used_this_month,
        )
