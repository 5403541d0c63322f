"""
app.py - EdgeScan entry point

Runs the scan orchestrator: either one cycle (--once) or the in-process
APScheduler trigger until interrupted.

Run:
    python app.py --once          # single cycle, prints the summary as JSON
    python app.py                 # scheduler, every EDGESCAN_SCAN_INTERVAL_MINUTES
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# ---------------------------------------------------------------------------
# Path setup: allow 'from edgescan.xxx import' regardless of cwd
# ---------------------------------------------------------------------------
ROOT = Path(__file__).parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edgescan.config import load_settings  # noqa: E402
from edgescan.pipeline import run_scan_cycle  # noqa: E402
from edgescan.scheduler import get_status, start_scheduler, stop_scheduler  # noqa: E402
from edgescan.store import init_db  # noqa: E402

# ---------------------------------------------------------------------------
# Logging setup: write to logs/error.log and stderr
# ---------------------------------------------------------------------------
LOG_DIR = ROOT / "logs"


def _configure_logging(verbose: bool = False) -> None:
    LOG_DIR.mkdir(exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "error.log"),
            logging.StreamHandler(),
        ],
    )


logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="EdgeScan scan orchestrator")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--db", default=None, help="SQLite path (default: EDGESCAN_DB_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)
    settings = load_settings()
    db_path = args.db or settings.db_path

    if args.once:
        init_db(db_path)
        summary = run_scan_cycle(db_path, settings=settings)
        print(json.dumps(summary.to_dict(), indent=2))
        return 0 if not summary.errors else 1

    start_scheduler(db_path, interval_minutes=settings.scan_interval_minutes, settings=settings)
    try:
        while True:
            time.sleep(60)
            status = get_status()
            logger.debug("Scheduler status: running=%s errors=%d",
                         status["running"], status["cycle_error_count"])
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        stop_scheduler()
    return 0


if __name__ == "__main__":
    sys.exit(main())
