"""
tests/test_scheduler.py - Unit tests for edgescan/scheduler.py

All APScheduler and scan-cycle I/O is mocked.
Tests use reset_state() to guarantee isolation between test cases.
"""

import sys
import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import edgescan.scheduler as sched_mod
from edgescan.pipeline import CycleSummary
from edgescan.scheduler import (
    JOB_ID,
    get_status,
    is_running,
    reset_state,
    start_scheduler,
    stop_scheduler,
    trigger_scan_now,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def isolate():
    """Reset all module-level state before/after every test."""
    reset_state()
    yield
    reset_state()


def _summary(**kwargs):
    fields = dict(processed=2, scanned=1, alerts_sent=1, regions_scanned=["AU"],
                  started_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    fields.update(kwargs)
    return CycleSummary(**fields)


# ---------------------------------------------------------------------------
# start_scheduler
# ---------------------------------------------------------------------------
class TestStartScheduler:
    def test_starts_successfully(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            start_scheduler()
            instance.start.assert_called_once()

    def test_idempotent_when_already_running(self):
        """Calling start twice must not create a second scheduler."""
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            start_scheduler()
            start_scheduler()
            assert MockSched.call_count == 1

    def test_calls_init_db(self):
        with patch("edgescan.scheduler.init_db") as mock_init, \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            MockSched.return_value.running = True
            start_scheduler(db_path="/tmp/test.db")
            mock_init.assert_called_once_with("/tmp/test.db")

    def test_adds_scan_cycle_job(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            start_scheduler()
            add_job_call = instance.add_job.call_args_list[0]
            assert add_job_call.kwargs["id"] == JOB_ID
            assert add_job_call.kwargs["minutes"] == 1
            assert add_job_call.kwargs["max_instances"] == 1
            assert add_job_call.kwargs["coalesce"] is True
            assert add_job_call.kwargs["kwargs"] == {"db_path": None}

    def test_custom_interval(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            start_scheduler(interval_minutes=5)
            assert instance.add_job.call_args_list[0].kwargs["minutes"] == 5

    def test_stores_db_path(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            MockSched.return_value.running = True
            start_scheduler(db_path="/tmp/x.db")
            assert sched_mod._db_path == "/tmp/x.db"


# ---------------------------------------------------------------------------
# stop_scheduler / is_running
# ---------------------------------------------------------------------------
class TestStopScheduler:
    def test_stops_running_scheduler(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            start_scheduler()
            stop_scheduler()
            instance.shutdown.assert_called_once_with(wait=False)
            assert sched_mod._scheduler is None

    def test_safe_when_not_running(self):
        stop_scheduler()

    def test_safe_when_already_stopped(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            MockSched.return_value.running = True
            start_scheduler()
            stop_scheduler()
            stop_scheduler()


class TestIsRunning:
    def test_false_before_start(self):
        assert is_running() is False

    def test_true_after_start(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            MockSched.return_value.running = True
            start_scheduler()
            assert is_running() is True

    def test_false_after_stop(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            MockSched.return_value.running = True
            start_scheduler()
            stop_scheduler()
            assert is_running() is False


# ---------------------------------------------------------------------------
# get_status
# ---------------------------------------------------------------------------
class TestGetStatus:
    def test_initial_state(self):
        status = get_status()
        assert status["running"] is False
        assert status["last_cycle_time"] is None
        assert status["last_cycle_summary"] == {}
        assert status["cycle_error_count"] == 0
        assert status["recent_errors"] == []
        assert status["next_run_time"] is None

    def test_next_run_time_from_job(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched:
            instance = MockSched.return_value
            instance.running = True
            when = datetime(2026, 3, 1, 12, 1, tzinfo=timezone.utc)
            instance.get_job.return_value.next_run_time = when
            start_scheduler()
            assert get_status()["next_run_time"] == when
            instance.get_job.assert_called_with(JOB_ID)

    def test_returns_copy_not_reference(self):
        """Mutating returned dict must not affect internal state."""
        status = get_status()
        status["last_cycle_summary"]["scanned"] = 999
        assert "scanned" not in sched_mod._last_cycle_summary


# ---------------------------------------------------------------------------
# _run_cycle (tested via trigger_scan_now)
# ---------------------------------------------------------------------------
class TestRunCycle:
    def test_successful_cycle_updates_state(self):
        with patch("edgescan.scheduler.run_scan_cycle", return_value=_summary()):
            trigger_scan_now()
        assert sched_mod._last_cycle_time is not None
        assert sched_mod._last_cycle_summary["scanned"] == 1
        assert sched_mod._cycle_error_count == 0

    def test_summary_errors_recorded(self):
        summary = _summary(errors=["pro@example.com AU: provider down"])
        with patch("edgescan.scheduler.run_scan_cycle", return_value=summary):
            trigger_scan_now()
        assert len(sched_mod._cycle_errors) == 1
        assert sched_mod._cycle_errors[0].endswith("pro@example.com AU: provider down")
        assert sched_mod._cycle_error_count == 0

    def test_exception_increments_error_count(self):
        with patch("edgescan.scheduler.run_scan_cycle", side_effect=RuntimeError("db locked")):
            trigger_scan_now()
        assert sched_mod._cycle_error_count == 1
        assert len(sched_mod._cycle_errors) == 1

    def test_error_list_capped_at_10(self):
        with patch("edgescan.scheduler.run_scan_cycle", side_effect=RuntimeError("fail")):
            for _ in range(15):
                trigger_scan_now()
        assert len(sched_mod._cycle_errors) == 10
        assert sched_mod._cycle_error_count == 15

    def test_exception_does_not_raise(self):
        """Errors must be swallowed so APScheduler keeps running."""
        with patch("edgescan.scheduler.run_scan_cycle", side_effect=Exception("boom")):
            trigger_scan_now()


# ---------------------------------------------------------------------------
# trigger_scan_now
# ---------------------------------------------------------------------------
class TestTriggerScanNow:
    def test_returns_summary_dict(self):
        with patch("edgescan.scheduler.run_scan_cycle", return_value=_summary()):
            result = trigger_scan_now()
        assert result["processed"] == 2
        assert result["regions_scanned"] == ["AU"]
        assert result["started_at"] == "2026-03-01T12:00:00+00:00"

    def test_uses_db_path_override(self):
        with patch("edgescan.scheduler.run_scan_cycle", return_value=_summary()) as mock_run:
            trigger_scan_now(db_path="/tmp/override.db")
        assert mock_run.call_args.args[0] == "/tmp/override.db"

    def test_falls_back_to_started_db_path(self):
        with patch("edgescan.scheduler.init_db"), \
             patch("edgescan.scheduler.BackgroundScheduler") as MockSched, \
             patch("edgescan.scheduler.run_scan_cycle", return_value=_summary()) as mock_run:
            MockSched.return_value.running = True
            start_scheduler(db_path="/tmp/started.db")
            trigger_scan_now()
        assert mock_run.call_args.args[0] == "/tmp/started.db"

    def test_returns_empty_on_error(self):
        with patch("edgescan.scheduler.run_scan_cycle", side_effect=RuntimeError("fail")):
            assert trigger_scan_now() == {}
