"""
tests/test_rotation.py - EdgeScan
===================================
Unit tests for edgescan/rotation.py.

Run: pytest tests/test_rotation.py -v
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from edgescan import store
from edgescan.rotation import regions_for_scan, regions_for_this_invocation


class TestRegionsForScan:
    def test_first_twelve_invocations(self):
        expected = [
            ["AU", "UK"], ["AU"], ["AU"], ["AU"],
            ["AU", "US"], ["AU"], ["AU"], ["AU"],
            ["AU", "EU"], ["AU"], ["AU"], ["AU"],
        ]
        assert [regions_for_scan(c) for c in range(12)] == expected

    def test_cycle_wraps(self):
        assert regions_for_scan(12) == ["AU", "UK"]

    def test_base_region_always_first(self):
        for counter in range(40):
            assert regions_for_scan(counter)[0] == "AU"

    def test_negative_counter(self):
        with pytest.raises(ValueError):
            regions_for_scan(-1)

    def test_empty_rotation_order(self):
        assert regions_for_scan(0, rotation_order=()) == ["AU"]

    def test_rotation_skips_base_region(self):
        assert regions_for_scan(0, rotation_order=("AU",)) == ["AU"]

    def test_no_base_only_cycles(self):
        assert regions_for_scan(1, base_only_cycles=0) == ["AU", "US"]


class TestRegionsForThisInvocation:
    def test_counter_advances_once_per_call(self, tmp_path):
        db = str(tmp_path / "rotation.db")
        store.init_db(db)

        first = regions_for_this_invocation(db)
        second = regions_for_this_invocation(db)

        assert first == (0, ["AU", "UK"])
        assert second == (1, ["AU"])
        assert store.peek_rotation(db) == 2

    def test_counter_survives_reconnect(self, tmp_path):
        db = str(tmp_path / "rotation.db")
        store.init_db(db)
        for _ in range(4):
            regions_for_this_invocation(db)
        store.init_db(db)
        assert regions_for_this_invocation(db) == (4, ["AU", "US"])
