"""
edgescan/scheduler.py - EdgeScan
==================================
APScheduler in-process trigger for the scan cycle.

Runs run_scan_cycle() every N minutes (default 1). The interval is the
trigger cadence; each subscriber's own tier interval is enforced by the
governor inside the cycle.

One cycle at a time: max_instances=1 and coalesce=True, so a slow cycle
delays the next fire instead of overlapping it.

Usage:
    from edgescan.scheduler import start_scheduler, stop_scheduler, get_status
    start_scheduler(db_path, interval_minutes=1)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler

from edgescan.config import Settings
from edgescan.pipeline import run_scan_cycle
from edgescan.store import init_db

logger = logging.getLogger(__name__)

JOB_ID = "scan_cycle"

# ---------------------------------------------------------------------------
# Module-level state (one scheduler per process)
# ---------------------------------------------------------------------------
_scheduler: Optional[BackgroundScheduler] = None
_last_cycle_time: Optional[datetime] = None
_last_cycle_summary: dict = {}
_cycle_error_count: int = 0
_cycle_errors: list = []        # last N error strings (capped at 10)
_db_path: Optional[str] = None
_settings: Optional[Settings] = None


# ---------------------------------------------------------------------------
# Internal job
# ---------------------------------------------------------------------------
def _record_error(message: str) -> None:
    _cycle_errors.append(f"{datetime.now(timezone.utc).isoformat()} {message}")
    if len(_cycle_errors) > 10:
        _cycle_errors.pop(0)


def _run_cycle(db_path: Optional[str] = None) -> None:
    """
    Called by APScheduler on every interval.

    Per-subscriber errors are already inside the summary; anything that
    escapes run_scan_cycle is counted here and never re-raised.
    """
    global _last_cycle_time, _last_cycle_summary, _cycle_error_count

    effective_db = db_path or _db_path
    try:
        summary = run_scan_cycle(effective_db, settings=_settings)
        _last_cycle_time = datetime.now(timezone.utc)
        _last_cycle_summary = summary.to_dict()
        for err in summary.errors:
            _record_error(err)
        logger.info(
            "Cycle complete: processed=%d scanned=%d alerts=%d errors=%d",
            summary.processed, summary.scanned, summary.alerts_sent, len(summary.errors),
        )
    except Exception as exc:  # noqa: BLE001
        _cycle_error_count += 1
        _record_error(str(exc))
        logger.error("Cycle error #%d: %s", _cycle_error_count, exc)


def _on_job_event(event) -> None:
    """Log APScheduler job events for observability."""
    if event.exception:
        logger.error("Job %s raised: %s", event.job_id, event.exception)
    else:
        logger.debug("Job %s executed OK", event.job_id)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def start_scheduler(
    db_path: Optional[str] = None,
    interval_minutes: int = 1,
    settings: Optional[Settings] = None,
) -> None:
    """
    Start the background scheduler. Returns immediately if already running.

    Args:
        db_path:          Override default SQLite path (useful for testing).
        interval_minutes: Trigger cadence. Default 1.
        settings:         Passed through to run_scan_cycle (default: from env).
    """
    global _scheduler, _db_path, _settings

    if _scheduler is not None and _scheduler.running:
        logger.debug("Scheduler already running, skipping re-init")
        return

    _db_path = db_path
    _settings = settings
    init_db(db_path)

    _scheduler = BackgroundScheduler(
        job_defaults={"misfire_grace_time": 60, "coalesce": True, "max_instances": 1},
        timezone="UTC",
    )
    _scheduler.add_listener(_on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
    _scheduler.add_job(
        _run_cycle,
        trigger="interval",
        minutes=interval_minutes,
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"db_path": db_path},
    )
    _scheduler.start()
    logger.info("Scheduler started (interval=%dm)", interval_minutes)


def stop_scheduler() -> None:
    """Shut down the scheduler. Safe to call even if not running."""
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None


def trigger_scan_now(db_path: Optional[str] = None) -> dict:
    """
    Run one cycle immediately, outside the schedule.

    Returns:
        The cycle summary as a dict ({} if the cycle itself failed).
    """
    _run_cycle(db_path or _db_path)
    return dict(_last_cycle_summary)


def get_status() -> dict:
    """
    Scheduler observability state.

    Returns:
        {
            "running": bool,
            "last_cycle_time": datetime | None,
            "last_cycle_summary": dict,
            "cycle_error_count": int,
            "recent_errors": [str],
            "next_run_time": datetime | None,
        }
    """
    next_run = None
    if _scheduler is not None and _scheduler.running:
        job = _scheduler.get_job(JOB_ID)
        next_run = job.next_run_time if job is not None else None
    return {
        "running": is_running(),
        "last_cycle_time": _last_cycle_time,
        "last_cycle_summary": dict(_last_cycle_summary),
        "cycle_error_count": _cycle_error_count,
        "recent_errors": list(_cycle_errors),
        "next_run_time": next_run,
    }


def is_running() -> bool:
    return _scheduler is not None and _scheduler.running


def reset_state() -> None:
    """
    Reset all module-level state.
    Intended for testing only.
    """
    global _scheduler, _last_cycle_time, _last_cycle_summary
    global _cycle_error_count, _cycle_errors, _db_path, _settings

    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)

    _scheduler = None
    _last_cycle_time = None
    _last_cycle_summary = {}
    _cycle_error_count = 0
    _cycle_errors = []
    _db_path = None
    _settings = None
