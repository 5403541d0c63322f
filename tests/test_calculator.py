"""
tests/test_calculator.py - EdgeScan
=====================================
Unit tests for edgescan/calculator.py.

Run: pytest tests/test_calculator.py -v
"""

import pytest
import sys
import os
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from edgescan.calculator import (
    arb_stakes,
    exchange_stakes,
    exchange_stakes_from_total,
    favour_stakes,
    format_arb_as_text,
    middle_stakes,
    proportional_stakes,
    validate_arbitrage,
    validate_exchange_arbitrage,
)
from edgescan.models import BookVsBookArb, Event, Outcome


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _arb(odds1=2.10, odds2=2.05):
    implied = 1 / odds1 + 1 / odds2
    return BookVsBookArb(
        type="arb",
        event=Event("evt1", "basketball_nba", "NBA", "Lakers", "Celtics", NOW),
        market_type="h2h",
        outcome1=Outcome("Lakers", "SportsBet", "sportsbet", odds1),
        outcome2=Outcome("Celtics", "TAB", "tab", odds2),
        implied_probability_sum=implied,
        profit_percentage=(1 / implied - 1) * 100,
        last_updated=NOW,
    )


# ---------------------------------------------------------------------------
# Proportional split
# ---------------------------------------------------------------------------

class TestProportionalStakes:
    def test_known_split(self):
        split = proportional_stakes([2.10, 2.05], 100)
        assert split.stakes == (49.4, 50.6)

    def test_equal_profit_on_every_leg(self):
        split = proportional_stakes([2.10, 2.05], 100)
        assert split.profits[0] == pytest.approx(split.profits[1], abs=1e-9)

    def test_three_way_equal_profit(self):
        split = proportional_stakes([3.0, 3.9, 3.2], 250)
        assert split.profits[0] == pytest.approx(split.profits[1], abs=1e-9)
        assert split.profits[1] == pytest.approx(split.profits[2], abs=1e-9)
        assert sum(split.stakes) == pytest.approx(250, abs=0.02)

    def test_profit_percentage_matches_implied_sum(self):
        split = proportional_stakes([2.10, 2.05], 100)
        implied = 1 / 2.10 + 1 / 2.05
        assert split.profit_percentage == pytest.approx((1 / implied - 1) * 100, abs=0.01)

    def test_losing_book_has_negative_profit(self):
        split = proportional_stakes([1.90, 1.90], 100)
        assert split.guaranteed_profit < 0

    def test_zero_total(self):
        split = proportional_stakes([2.0, 2.0], 0)
        assert split.stakes == (0.0, 0.0)
        assert split.profit_percentage == 0.0

    def test_rejects_single_leg(self):
        with pytest.raises(ValueError):
            proportional_stakes([2.0], 100)

    def test_rejects_invalid_odds(self):
        with pytest.raises(ValueError):
            proportional_stakes([2.0, 1.0], 100)

    def test_rejects_negative_total(self):
        with pytest.raises(ValueError):
            proportional_stakes([2.0, 2.1], -5)


# ---------------------------------------------------------------------------
# Favoured split
# ---------------------------------------------------------------------------

class TestFavourStakes:
    def test_other_leg_breaks_even(self):
        split = favour_stakes([2.10, 2.05], 100, favoured_index=0)
        assert split.stakes == (51.22, 48.78)
        assert split.profits[1] == pytest.approx(0.0, abs=1e-9)
        assert split.profits[0] > 0
        assert split.favoured_index == 0

    def test_favoured_profit_exceeds_proportional(self):
        base = proportional_stakes([2.10, 2.05], 100)
        favoured = favour_stakes([2.10, 2.05], 100, favoured_index=0)
        assert favoured.profits[0] > base.profits[0]

    def test_no_margin_raises(self):
        with pytest.raises(ValueError):
            favour_stakes([1.5, 1.5, 1.5], 100, favoured_index=0)

    def test_bad_index_raises(self):
        with pytest.raises(ValueError):
            favour_stakes([2.1, 2.05], 100, favoured_index=2)


class TestMiddleAndArbHelpers:
    def test_middle_halves(self):
        assert middle_stakes(200) == (100.0, 100.0)
        assert middle_stakes(101) == (50.5, 50.5)

    def test_arb_stakes_uses_legs(self):
        split = arb_stakes(_arb(), 100)
        assert split.odds == (2.10, 2.05)
        assert split.stakes == (49.4, 50.6)

    def test_arb_stakes_favoured(self):
        split = arb_stakes(_arb(), 100, favoured_index=1)
        assert split.profits[0] == pytest.approx(0.0, abs=1e-9)


# ---------------------------------------------------------------------------
# Back / lay
# ---------------------------------------------------------------------------

class TestExchangeStakes:
    def test_profit_equalised(self):
        stakes = exchange_stakes(2.2, 2.1, 100, commission=0.05)
        assert stakes.profit_if_back_wins == pytest.approx(stakes.profit_if_lay_wins, abs=0.01)
        assert stakes.guaranteed_profit > 0

    def test_lay_stake_and_liability(self):
        stakes = exchange_stakes(2.2, 2.1, 100, commission=0.05)
        assert stakes.lay_stake == pytest.approx(107.32, abs=0.01)
        assert stakes.lay_liability == pytest.approx(118.05, abs=0.01)
        assert stakes.guaranteed_profit == pytest.approx(1.95, abs=0.01)

    def test_from_total(self):
        stakes = exchange_stakes_from_total(2.2, 2.1, 500, commission=0.05)
        assert stakes.back_stake + stakes.lay_liability == pytest.approx(500, abs=0.02)

    def test_rejects_invalid_odds(self):
        with pytest.raises(ValueError):
            exchange_stakes(1.0, 2.0, 100)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid_arb(self):
        result = validate_arbitrage(2.10, 2.05)
        assert result.is_valid
        assert result.profit_percentage == pytest.approx(3.73, abs=0.01)
        assert result.implied_sum == pytest.approx(0.964, abs=1e-3)

    def test_invalid_arb(self):
        result = validate_arbitrage(1.90, 1.90)
        assert not result.is_valid
        assert result.profit_percentage == 0.0

    def test_exchange(self):
        assert validate_exchange_arbitrage(2.2, 2.1, 0.05).is_valid
        assert not validate_exchange_arbitrage(2.12, 2.1, 0.05).is_valid


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

class TestFormatArbAsText:
    def test_book_vs_book(self):
        arb = _arb()
        text = format_arb_as_text(arb, arb_stakes(arb, 100))
        assert "Event: Lakers vs Celtics" in text
        assert "Bet 1: Lakers @ 2.10 (SportsBet)" in text
        assert "Stake: $49.40" in text
        assert "Bet 2: Celtics @ 2.05 (TAB)" in text
        assert "Guaranteed Profit:" in text
