"""
tests/test_governor.py - EdgeScan
===================================
Unit tests for edgescan/governor.py (credit and cadence gate).

check_should_scan() is pure. CreditGovernor tests use a temp SQLite file.
Run: pytest tests/test_governor.py -v
"""

import pytest
import sys
import os
from datetime import datetime, timezone, timedelta
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from edgescan import store
from edgescan.governor import (
    CREDIT_TIER_CONFIG,
    CreditGovernor,
    Eligibility,
    SkipReason,
    check_should_scan,
    estimated_credits,
    scan_phase,
    tier_config,
)
from edgescan.models import ScanPhase, ScanState, Subscriber


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _subscriber(**overrides):
    fields = dict(
        id="sub-1",
        email="pro@example.com",
        odds_api_key="key-123",
        subscription_status="active",
        subscription_ends_at=NOW + timedelta(days=30),
        auto_scan_enabled=True,
        credit_tier="100k",
        regions=["AU"],
    )
    fields.update(overrides)
    return Subscriber(**fields)


# ---------------------------------------------------------------------------
# Tier config and estimates
# ---------------------------------------------------------------------------

class TestTierConfig:
    def test_known_tiers(self):
        assert tier_config("20k").scan_interval_seconds == 6 * 3600
        assert tier_config("100k").scan_interval_seconds == 3600
        assert tier_config("5m").scan_interval_seconds == 120
        assert tier_config("15m").monthly_credit_cap == 15_000_000

    def test_unknown_tier_falls_back_to_most_restrictive(self):
        assert tier_config("gold") == CREDIT_TIER_CONFIG["20k"]


class TestEstimatedCredits:
    def test_single_region(self):
        assert estimated_credits(["AU"]) == 170

    def test_multiple_regions(self):
        assert estimated_credits(["AU", "UK", "US", "EU"]) == 170 + 180 + 240 + 200

    def test_unknown_region_uses_highest_cost(self):
        assert estimated_credits(["XX"]) == 240


# ---------------------------------------------------------------------------
# check_should_scan
# ---------------------------------------------------------------------------

class TestCheckShouldScan:
    def test_first_scan_allowed(self):
        result = check_should_scan(_subscriber(), NOW)
        assert result.scan is True
        assert result.reason == "ok"
        assert result.code is SkipReason.OK
        assert result.estimated_credits == 170

    def test_auto_scan_disabled(self):
        result = check_should_scan(_subscriber(auto_scan_enabled=False), NOW)
        assert result.scan is False
        assert result.reason == "auto-scan disabled"
        assert result.code is SkipReason.AUTO_SCAN_DISABLED

    def test_missing_key(self):
        assert check_should_scan(_subscriber(odds_api_key=None), NOW).reason == "no odds API key configured"

    def test_expired_subscription(self):
        sub = _subscriber(subscription_ends_at=NOW - timedelta(seconds=1))
        assert check_should_scan(sub, NOW).reason == "subscription not active"

    def test_inactive_subscription(self):
        sub = _subscriber(subscription_status="cancelled")
        assert check_should_scan(sub, NOW).scan is False

    def test_interval_not_reached(self):
        sub = _subscriber(state=ScanState(last_scan_at=NOW - timedelta(minutes=30)))
        result = check_should_scan(sub, NOW)
        assert result.scan is False
        assert result.reason == "scan interval not reached (1800s remaining)"
        assert result.code is SkipReason.INTERVAL_NOT_REACHED

    def test_interval_exactly_reached(self):
        sub = _subscriber(state=ScanState(last_scan_at=NOW - timedelta(hours=1)))
        assert check_should_scan(sub, NOW).scan is True

    def test_cap_boundary_allowed(self):
        sub = _subscriber(state=ScanState(credits_used_this_month=100_000 - 170))
        assert check_should_scan(sub, NOW).scan is True

    def test_cap_exceeded(self):
        sub = _subscriber(state=ScanState(credits_used_this_month=100_000 - 169))
        result = check_should_scan(sub, NOW)
        assert result.scan is False
        assert result.reason.startswith("monthly credit cap reached")
        assert result.code is SkipReason.CREDIT_CAP_REACHED

    def test_explicit_regions_override(self):
        sub = _subscriber(state=ScanState(credits_used_this_month=100_000 - 300))
        assert check_should_scan(sub, NOW).scan is True
        assert check_should_scan(sub, NOW, ["AU", "UK"]).scan is False


class TestScanPhase:
    def test_eligible(self):
        assert scan_phase(_subscriber(), NOW) == ScanPhase.ELIGIBLE

    def test_scanning_with_fresh_marker(self):
        sub = _subscriber(state=ScanState(scan_started_at=NOW - timedelta(seconds=30)))
        assert scan_phase(sub, NOW) == ScanPhase.SCANNING

    def test_stale_marker_ignored(self):
        sub = _subscriber(state=ScanState(scan_started_at=NOW - timedelta(minutes=10)))
        assert scan_phase(sub, NOW) == ScanPhase.ELIGIBLE

    def test_cooling(self):
        sub = _subscriber(state=ScanState(last_scan_at=NOW - timedelta(minutes=5)))
        assert scan_phase(sub, NOW) == ScanPhase.COOLING

    def test_idle(self):
        assert scan_phase(_subscriber(auto_scan_enabled=False), NOW) == ScanPhase.IDLE

    def test_phase_follows_code_not_reason_text(self):
        eligibility = Eligibility(False, "waiting", 170, SkipReason.INTERVAL_NOT_REACHED)
        with patch("edgescan.governor.check_should_scan", return_value=eligibility):
            assert scan_phase(_subscriber(), NOW) == ScanPhase.COOLING

    def test_over_cap_is_idle(self):
        sub = _subscriber(state=ScanState(credits_used_this_month=100_000))
        assert scan_phase(sub, NOW) == ScanPhase.IDLE


# ---------------------------------------------------------------------------
# CreditGovernor (persistence)
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    path = str(tmp_path / "governor.db")
    store.init_db(path)
    return path


class TestCreditGovernor:
    def test_begin_sets_marker(self, db):
        sub = _subscriber()
        store.upsert_subscriber(sub, db)
        CreditGovernor(db).begin_scan(sub, NOW)
        assert store.get_subscriber(sub.id, db).state.scan_started_at == NOW
        assert sub.state.scan_started_at == NOW

    def test_success_charges_credits(self, db):
        sub = _subscriber(state=ScanState(credits_used_this_month=1000))
        store.upsert_subscriber(sub, db)
        governor = CreditGovernor(db)
        governor.begin_scan(sub, NOW)
        governor.finish_scan(sub, NOW, success=True, credits_used=170, credits_remaining=4500)

        saved = store.get_subscriber(sub.id, db)
        assert saved.state.credits_used_this_month == 1170
        assert saved.state.last_scan_at == NOW
        assert saved.state.scan_started_at is None
        assert saved.state.last_scan_credits_remaining == 4500
        assert sub.state.credits_used_this_month == 1170

    def test_failure_charges_nothing(self, db):
        sub = _subscriber()
        store.upsert_subscriber(sub, db)
        governor = CreditGovernor(db)
        governor.begin_scan(sub, NOW)
        governor.finish_scan(sub, NOW, success=False, credits_used=170)

        saved = store.get_subscriber(sub.id, db)
        assert saved.state.credits_used_this_month == 0
        assert saved.state.last_scan_at is None
        assert saved.state.scan_started_at is None
