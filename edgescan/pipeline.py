"""
edgescan/pipeline.py - EdgeScan
=================================
One scan cycle: rotation -> per-subscriber governor check -> per-region
fetch + detect (streamed) -> authoritative region cache -> alerts.

Responsibilities:
- Scan regions one at a time (never in parallel) with fixed pauses between
  regions and between market types
- Run detection on every streamed sport batch and hand partial results to a
  non-blocking progress writer (master scan only)
- Write the authoritative per-region cache after the subscriber's regions
  complete (awaited; failures are reported, never swallowed)
- Charge credits only for scans that completed at least one region
- Keep each subscriber's latest combined result (all scanned regions)
- Evaluate alerts for subscribers whose alert regions were scanned
- Give outstanding progress writes a bounded grace period, then return

Failures are caught per region and per subscriber and reported in the
CycleSummary. Nothing here stops the cycle for other subscribers.

DO NOT call the Odds API directly here. Use OddsApiClient.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from edgescan import rotation, store
from edgescan.alerts import SmsAlertGateway, evaluate_alerts
from edgescan.config import (
    BASE_REGION,
    DELAY_BETWEEN_MARKET_TYPES_SECONDS,
    DELAY_BETWEEN_REGIONS_SECONDS,
    MAX_HOURS_UNTIL_START,
    NEAR_ARB_THRESHOLD,
    PROGRESS_GRACE_SECONDS,
    SCAN_BUDGET_SECONDS,
    VALUE_THRESHOLD,
    Settings,
    api_regions_for,
    bookmaker_keys_for,
    load_settings,
)
from edgescan.detector import detect_all_opportunities
from edgescan.errors import AlertGatewayError, PersistenceError, ProviderError
from edgescan.governor import CreditGovernor, check_should_scan
from edgescan.line_detector import detect_line_opportunities
from edgescan.models import (
    EventOdds,
    ProgressBatch,
    RegionScanSnapshot,
    Subscriber,
    SubscriberScanResult,
    to_jsonable,
)
from edgescan.odds_fetcher import LINE_MARKETS, H2H_MARKETS, OddsApiClient, h2h_sport_keys, line_sport_keys

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Time budget
# ---------------------------------------------------------------------------

class Deadline:
    """Wall-clock budget measured on the monotonic clock."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._ends_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._ends_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._ends_at


# ---------------------------------------------------------------------------
# Progress writer (best-effort)
# ---------------------------------------------------------------------------

class ProgressWriter:
    """
    Fire-and-forget progress writes on a small thread pool.

    submit() never blocks the caller. join() waits at most `timeout`
    seconds for what is outstanding, then abandons the rest. Write errors
    are logged and never propagated.
    """

    def __init__(self, db_path: Optional[str] = None, max_workers: int = 2) -> None:
        self.db_path = db_path
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="edgescan-progress")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self.written = 0
        self.failed = 0

    def _on_done(self, future: Future) -> None:
        exc = None if future.cancelled() else future.exception()
        with self._lock:
            self._pending.discard(future)
            if future.cancelled():
                return
            if exc is not None:
                self.failed += 1
            else:
                self.written += 1
        if exc is not None:
            logger.warning("Progress write failed: %s", exc)

    def _submit(self, fn, *args) -> None:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as exc:
            logger.warning("Progress writer closed, dropping write: %s", exc)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)

    def submit(self, batch: ProgressBatch) -> None:
        self._submit(store.write_progress_batch, batch, self.db_path)

    def clear_region(self, region: str, keep_scan_id: str) -> None:
        """Drop batches left over from earlier scans of `region`."""
        self._submit(store.clear_progress, region, keep_scan_id, self.db_path)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def join(self, timeout: float = PROGRESS_GRACE_SECONDS) -> bool:
        """
        Wait up to `timeout` seconds for outstanding writes.

        Returns True if everything settled, False if writes were abandoned.
        """
        with self._lock:
            outstanding = list(self._pending)
        _, not_done = wait(outstanding, timeout=timeout) if outstanding else (set(), set())
        self._executor.shutdown(wait=False, cancel_futures=True)
        if not_done:
            logger.warning("Abandoned %d progress writes after %.1fs grace", len(not_done), timeout)
            return False
        logger.debug("Progress writes settled: %d written, %d failed", self.written, self.failed)
        return True


# ---------------------------------------------------------------------------
# Region scan
# ---------------------------------------------------------------------------

def restrict_events(
    events: list[EventOdds],
    allowed_bookmakers: frozenset[str],
    now: datetime,
    max_hours: int = MAX_HOURS_UNTIL_START,
) -> list[EventOdds]:
    """
    Keep events starting within (now, now + max_hours), each reduced to
    bookmakers from `allowed_bookmakers`. Events left with no bookmaker are dropped.
    """
    latest = now + timedelta(hours=max_hours)
    kept = []
    for event_odds in events:
        start = event_odds.event.commence_time
        if not now < start < latest:
            continue
        books = tuple(b for b in event_odds.bookmakers if b.key.lower() in allowed_bookmakers)
        if books:
            kept.append(replace(event_odds, bookmakers=books))
    return kept


def _running_stats(snapshot: RegionScanSnapshot) -> dict:
    return {"h2h": snapshot.stats.to_dict(), "lines": snapshot.line_stats.to_dict()}


def scan_region(
    client: OddsApiClient,
    region: str,
    scan_id: Optional[str] = None,
    progress: Optional[ProgressWriter] = None,
    deadline: Optional[Deadline] = None,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RegionScanSnapshot:
    """
    Scan one region: H2H, pause, then spreads/totals.

    Every streamed sport batch is filtered to this region's bookmakers and
    the 72 hour start window, run through the detectors and merged into the
    running snapshot. With a progress writer, each batch's opportunities are
    also submitted, followed by a final "complete" batch.

    Raises:
        ProviderError: if sports cannot be listed or a market fetch fails entirely.
    """
    now = now or datetime.now(timezone.utc)
    scan_id = scan_id or f"scan-{region}-{int(time.time() * 1000)}"
    api_regions = api_regions_for([region])
    allowed = bookmaker_keys_for([region])
    snapshot = RegionScanSnapshot(region=region, scanned_at=now)
    batch_index = 0

    if progress is not None:
        progress.clear_region(region, scan_id)

    def emit(phase: str, sport_keys: list[str], **found) -> None:
        nonlocal batch_index
        if progress is None:
            return
        progress.submit(ProgressBatch(
            region=region, scan_id=scan_id, batch_index=batch_index, phase=phase,
            sport_keys=sport_keys, stats=_running_stats(snapshot), **found,
        ))
        batch_index += 1

    def on_h2h_batch(sport_keys: list[str], events: list[EventOdds]) -> None:
        result = detect_all_opportunities(
            restrict_events(events, allowed, now), NEAR_ARB_THRESHOLD, VALUE_THRESHOLD
        )
        snapshot.opportunities.extend(result.arbs)
        snapshot.value_bets.extend(result.value_bets)
        snapshot.stats.merge(result.stats)
        emit("h2h", sport_keys, opportunities=result.arbs, value_bets=result.value_bets)

    def on_lines_batch(sport_keys: list[str], events: list[EventOdds]) -> None:
        result = detect_line_opportunities(restrict_events(events, allowed, now), NEAR_ARB_THRESHOLD)
        snapshot.spread_arbs.extend(result.spread_arbs)
        snapshot.totals_arbs.extend(result.totals_arbs)
        snapshot.middles.extend(result.middles)
        snapshot.line_stats.merge(result.stats)
        emit("lines", sport_keys, spread_arbs=result.spread_arbs,
             totals_arbs=result.totals_arbs, middles=result.middles)

    sports = client.list_sports(deadline=deadline)

    logger.info("Fetching H2H for %s (API regions: %s)", region, api_regions)
    client.fetch_odds(h2h_sport_keys(sports), H2H_MARKETS, api_regions,
                      on_batch=on_h2h_batch, deadline=deadline)

    line_keys = line_sport_keys(sports)
    if line_keys and not (deadline is not None and deadline.expired()):
        sleep(DELAY_BETWEEN_MARKET_TYPES_SECONDS)
        logger.info("Fetching lines for %s (%d sports)", region, len(line_keys))
        client.fetch_odds(line_keys, LINE_MARKETS, api_regions,
                          on_batch=on_lines_batch, deadline=deadline)

    if deadline is not None and deadline.expired():
        logger.warning("Region %s cut short by the scan deadline", region)

    snapshot.opportunities.sort(key=lambda a: a.profit_percentage, reverse=True)
    snapshot.value_bets.sort(key=lambda v: v.value_percentage, reverse=True)
    snapshot.spread_arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    snapshot.totals_arbs.sort(key=lambda a: a.profit_percentage, reverse=True)
    snapshot.middles.sort(key=lambda m: m.expected_value, reverse=True)
    snapshot.remaining_requests = client.quota.remaining

    emit("complete", [], is_last_batch=True)
    logger.info(
        "%s: %d H2H, %d spreads, %d totals, %d middles, %d value bets",
        region, len(snapshot.opportunities), len(snapshot.spread_arbs),
        len(snapshot.totals_arbs), len(snapshot.middles), len(snapshot.value_bets),
    )
    return snapshot


# ---------------------------------------------------------------------------
# Cycle
# ---------------------------------------------------------------------------

@dataclass
class CycleSummary:
    processed: int = 0
    scanned: int = 0
    alerts_sent: int = 0
    regions_scanned: list[str] = field(default_factory=list)
    region_results: dict[str, dict] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    global_cache_updated: bool = False
    rotation_counter: Optional[int] = None
    started_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return to_jsonable(self)


def _region_counts(snapshot: RegionScanSnapshot) -> dict:
    return {
        "h2h": len(snapshot.opportunities),
        "value_bets": len(snapshot.value_bets),
        "spreads": len(snapshot.spread_arbs),
        "totals": len(snapshot.totals_arbs),
        "middles": len(snapshot.middles),
    }


class ScanCycle:
    """
    State for one invocation. Use run_scan_cycle() rather than this directly.
    """

    def __init__(
        self,
        db_path: str,
        settings: Settings,
        now: datetime,
        client_factory: Callable[[str], OddsApiClient],
        gateway: SmsAlertGateway,
        deadline: Deadline,
        sleep: Callable[[float], None],
    ) -> None:
        self.db_path = db_path
        self.settings = settings
        self.now = now
        self.client_factory = client_factory
        self.gateway = gateway
        self.deadline = deadline
        self.sleep = sleep
        self.governor = CreditGovernor(db_path)
        self.progress = ProgressWriter(db_path)
        self.summary = CycleSummary(started_at=now)

    def is_master(self, subscriber: Subscriber) -> bool:
        master = self.settings.master_subscriber_email
        return bool(master) and subscriber.email == master

    def run(self) -> CycleSummary:
        try:
            counter, regions = rotation.regions_for_this_invocation(self.db_path)
            self.summary.rotation_counter = counter
        except PersistenceError as exc:
            logger.error("Rotation counter unavailable, scanning %s only: %s", BASE_REGION, exc)
            self.summary.errors.append(f"Rotation: {exc}")
            regions = [BASE_REGION]
        self.summary.regions_scanned = regions

        try:
            rows = store.list_eligible_subscriber_rows(self.db_path)
        except PersistenceError as exc:
            logger.error("Could not load subscribers: %s", exc)
            self.summary.errors.append(f"Subscribers: {exc}")
            rows = []
        logger.info("Found %d subscribers with auto-scan enabled", len(rows))

        try:
            for row in rows:
                subscriber = None
                try:
                    subscriber = store.subscriber_from_row(row)
                    if not subscriber.has_active_subscription(self.now):
                        logger.debug("Skipping %s: subscription expired", subscriber.email)
                        continue
                    self.summary.processed += 1
                    self.process_subscriber(subscriber, regions)
                except Exception as exc:  # noqa: BLE001
                    if subscriber is None:
                        self.summary.processed += 1
                    label = subscriber.email if subscriber is not None else row.get("id")
                    logger.exception("Error processing %s", label)
                    self.summary.errors.append(f"Error for {label}: {exc}")
                    if subscriber is not None:
                        self._release_marker(subscriber)
        finally:
            self.progress.join(PROGRESS_GRACE_SECONDS)

        logger.info(
            "Cycle complete. Processed: %d, Scanned: %d, Regions: %s, GlobalCache: %s, Alerts: %d",
            self.summary.processed, self.summary.scanned, ",".join(regions),
            self.summary.global_cache_updated, self.summary.alerts_sent,
        )
        return self.summary

    def _release_marker(self, subscriber: Subscriber) -> None:
        subscriber.state.scan_started_at = None
        try:
            store.clear_scan_marker(subscriber.id, self.db_path)
        except sqlite3.Error as exc:
            logger.error("Could not clear scan marker for %s: %s", subscriber.email, exc)

    def process_subscriber(self, subscriber: Subscriber, rotation_regions: list[str]) -> None:
        master = self.is_master(subscriber)
        scan_regions = rotation_regions if master else subscriber.regions

        eligibility = check_should_scan(subscriber, self.now, scan_regions)
        if not eligibility.scan:
            logger.info("Skipping %s: %s", subscriber.email, eligibility.reason)
            return
        if self.deadline.expired():
            logger.warning("Scan deadline reached, skipping %s", subscriber.email)
            self.summary.errors.append(f"Deadline reached before scanning {subscriber.email}")
            return

        logger.info("Scanning for %s: %s", subscriber.email, ", ".join(scan_regions))
        self.governor.begin_scan(subscriber, self.now)
        client = self.client_factory(subscriber.odds_api_key)

        snapshots: dict[str, RegionScanSnapshot] = {}
        for i, region in enumerate(scan_regions):
            if i > 0:
                self.sleep(DELAY_BETWEEN_REGIONS_SECONDS)
            if self.deadline.expired():
                logger.warning("Scan deadline reached before %s for %s", region, subscriber.email)
                self.summary.errors.append(f"{subscriber.email} {region}: deadline reached")
                break
            scan_id = f"scan-{region}-{int(time.time() * 1000)}"
            try:
                snapshots[region] = scan_region(
                    client, region, scan_id,
                    progress=self.progress if master else None,
                    deadline=self.deadline, now=self.now, sleep=self.sleep,
                )
            except ProviderError as exc:
                logger.error("Region %s failed for %s: %s", region, subscriber.email, exc)
                self.summary.errors.append(f"{subscriber.email} {region}: {exc}")

        if not snapshots:
            self.governor.finish_scan(subscriber, self.now, success=False)
            return

        self.summary.scanned += 1
        if master:
            self.write_region_cache(snapshots)

        remaining = next(
            (s.remaining_requests for s in reversed(list(snapshots.values()))
             if s.remaining_requests is not None),
            None,
        )
        self.governor.finish_scan(
            subscriber, self.now, success=True,
            credits_used=eligibility.estimated_credits, credits_remaining=remaining,
        )
        self.write_subscriber_result(subscriber, list(snapshots.values()))

        if set(subscriber.alerts.regions) & set(snapshots):
            arbs = [arb for s in snapshots.values() for arb in s.opportunities]
            try:
                self.summary.alerts_sent += evaluate_alerts(
                    subscriber, arbs, self.now, self.gateway, self.db_path
                )
            except AlertGatewayError as exc:
                logger.error("%s", exc)
                self.summary.errors.append(str(exc))

    def write_region_cache(self, snapshots: dict[str, RegionScanSnapshot]) -> None:
        """Authoritative writes. Each region is attempted; failures are reported."""
        for region, snapshot in snapshots.items():
            try:
                store.write_region_scan(snapshot, self.db_path)
            except PersistenceError as exc:
                logger.error("Region cache write failed for %s: %s", region, exc)
                self.summary.errors.append(f"Cache {region}: {exc}")
                continue
            self.summary.region_results[region] = _region_counts(snapshot)
            self.summary.global_cache_updated = True

    def write_subscriber_result(self, subscriber: Subscriber,
                                snapshots: list[RegionScanSnapshot]) -> None:
        result = SubscriberScanResult.combine(subscriber.id, self.now, snapshots)
        try:
            store.write_subscriber_scan(result, self.db_path)
        except PersistenceError as exc:
            logger.error("Scan result write failed for %s: %s", subscriber.email, exc)
            self.summary.errors.append(f"Cache {subscriber.email}: {exc}")


def run_scan_cycle(
    db_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    client_factory: Callable[[str], OddsApiClient] = OddsApiClient,
    gateway: Optional[SmsAlertGateway] = None,
    budget_seconds: float = SCAN_BUDGET_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleSummary:
    """
    Run one full scan cycle and return its summary.

    Args:
        db_path:        SQLite file (schema must exist; see store.init_db).
        settings:       Defaults to load_settings().
        now:            Cycle timestamp, UTC. Defaults to the current time.
        client_factory: Builds an odds client from a subscriber's API key.
        gateway:        SMS gateway. Defaults to Twilio from settings.
        budget_seconds: Hard wall-clock budget for the cycle.
        sleep:          Pause function (tests pass a no-op).
    """
    settings = settings or load_settings()
    db_path = db_path or settings.db_path
    now = now or datetime.now(timezone.utc)
    started = time.monotonic()

    cycle = ScanCycle(
        db_path=db_path,
        settings=settings,
        now=now,
        client_factory=client_factory,
        gateway=gateway or SmsAlertGateway.from_settings(settings),
        deadline=Deadline(budget_seconds),
        sleep=sleep,
    )
    summary = cycle.run()
    summary.duration_seconds = round(time.monotonic() - started, 3)
    return summary
