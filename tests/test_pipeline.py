"""
tests/test_pipeline.py - EdgeScan
===================================
Tests for edgescan/pipeline.py: region scans and full scan cycles.

The odds provider is replaced by FakeClient (no network), sleeps are no-ops,
and every test gets its own temp SQLite file.
Run: pytest tests/test_pipeline.py -v
"""

import json
import threading
import time

import pytest
import sys
import os
from concurrent.futures import Future
from unittest.mock import MagicMock, patch
from datetime import datetime, timezone, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from edgescan import store
from edgescan.alerts import AlertSendResult
from edgescan.config import Settings
from edgescan.errors import PersistenceError, ProviderError
from edgescan.models import (
    AlertSettings,
    BookmakerOdds,
    Event,
    EventOdds,
    Market,
    PriceOutcome,
    ProgressBatch,
    ScanState,
    Subscriber,
)
from edgescan.odds_fetcher import H2H_MARKETS, OddsResult, QuotaTracker, Sport
from edgescan.pipeline import (
    Deadline,
    ProgressWriter,
    restrict_events,
    run_scan_cycle,
    scan_region,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MASTER = "master@example.com"


def _no_sleep(_seconds):
    pass


def _book(key, lakers, celtics):
    outcomes = (PriceOutcome("Lakers", lakers), PriceOutcome("Celtics", celtics))
    return BookmakerOdds(key=key, title=key.title(), last_update=NOW,
                         markets=(Market("h2h", NOW, outcomes),))


def _event_odds(event_id="evt1", hours_ahead=5, books=None):
    event = Event(event_id, "basketball_nba", "NBA", "Lakers", "Celtics",
                  NOW + timedelta(hours=hours_ahead))
    if books is None:
        books = (
            _book("sportsbet", 2.20, 1.80),
            _book("tab", 1.85, 2.00),
            _book("williamhill", 3.00, 1.30),   # UK book, never part of an AU arb
        )
    return EventOdds(event=event, bookmakers=tuple(books))


class FakeClient:
    """Stands in for OddsApiClient: one sport, canned events per market."""

    def __init__(self, h2h_events=None, line_events=None, fail=False, remaining=4500):
        self.h2h_events = h2h_events if h2h_events is not None else [_event_odds()]
        self.line_events = line_events or []
        self.fail = fail
        self.quota = QuotaTracker()
        self.quota.remaining = remaining
        self.calls = []

    def list_sports(self, deadline=None):
        return [Sport("basketball_nba", "NBA", "Basketball", True, False)]

    def fetch_odds(self, sport_keys, markets, regions, on_batch=None, deadline=None):
        self.calls.append((markets, regions))
        if self.fail:
            raise ProviderError("provider down")
        events = self.h2h_events if markets == H2H_MARKETS else self.line_events
        if on_batch is not None:
            on_batch(list(sport_keys), list(events))
        return OddsResult(events=list(events), remaining_requests=self.quota.remaining)


def _settings(db_path, master=MASTER):
    return Settings(
        db_path=db_path,
        master_subscriber_email=master,
        scan_interval_minutes=1,
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_from_number=None,
    )


def _subscriber(sub_id="sub-1", email="pro@example.com", **overrides):
    fields = dict(
        id=sub_id,
        email=email,
        odds_api_key="key-" + sub_id,
        subscription_status="active",
        subscription_ends_at=NOW + timedelta(days=30),
        auto_scan_enabled=True,
        credit_tier="5m",
        regions=["AU"],
    )
    fields.update(overrides)
    return Subscriber(**fields)


@pytest.fixture
def db(tmp_path):
    path = str(tmp_path / "pipeline.db")
    store.init_db(path)
    return path


def _run(db, client=None, gateway=None, **kwargs):
    client = client or FakeClient()
    return run_scan_cycle(
        db_path=db,
        settings=_settings(db),
        now=NOW,
        client_factory=lambda api_key: client,
        gateway=gateway or MagicMock(),
        sleep=_no_sleep,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class TestDeadline:
    def test_counts_down(self):
        clock = [100.0]
        deadline = Deadline(10, clock=lambda: clock[0])
        assert deadline.remaining() == 10
        clock[0] = 105.0
        assert deadline.remaining() == 5
        assert not deadline.expired()
        clock[0] = 110.0
        assert deadline.expired()
        assert deadline.remaining() == 0

    def test_zero_budget_is_expired(self):
        assert Deadline(0).expired()


class TestRestrictEvents:
    def test_strips_other_region_books(self):
        kept = restrict_events([_event_odds()], frozenset({"sportsbet", "tab"}), NOW)
        assert [b.key for b in kept[0].bookmakers] == ["sportsbet", "tab"]

    def test_drops_events_outside_window(self):
        events = [_event_odds("past", hours_ahead=-1), _event_odds("far", hours_ahead=80),
                  _event_odds("soon", hours_ahead=2)]
        kept = restrict_events(events, frozenset({"sportsbet"}), NOW)
        assert [e.event.id for e in kept] == ["soon"]

    def test_drops_event_without_allowed_books(self):
        assert restrict_events([_event_odds()], frozenset({"pinnacle"}), NOW) == []


class TestProgressWriter:
    def test_writes_in_background(self, db):
        writer = ProgressWriter(db)
        writer.submit(ProgressBatch(region="AU", scan_id="scan-AU-1", batch_index=0, phase="h2h"))
        assert writer.join(timeout=5) is True
        assert len(store.get_progress_since("AU", None, db)) == 1

    def test_join_with_nothing_pending(self, db):
        assert ProgressWriter(db).join(timeout=0.1) is True

    def test_submit_after_join_is_dropped(self, db):
        writer = ProgressWriter(db)
        writer.join(timeout=0.1)
        writer.submit(ProgressBatch(region="AU", scan_id="s", batch_index=0, phase="h2h"))
        assert store.get_progress_since("AU", None, db) == []

    def test_join_abandons_slow_write(self, db):
        release = threading.Event()

        def slow_write(batch, db_path=None):
            release.wait(5)

        writer = ProgressWriter(db)
        try:
            with patch("edgescan.store.write_progress_batch", side_effect=slow_write):
                writer.submit(ProgressBatch(region="AU", scan_id="s", batch_index=0, phase="h2h"))
                started = time.monotonic()
                settled = writer.join(timeout=0.3)
                elapsed = time.monotonic() - started
        finally:
            release.set()

        assert settled is False
        assert 0.25 <= elapsed < 1.5

    def test_counters_consistent_under_concurrent_callbacks(self, db):
        writer = ProgressWriter(db)
        done = Future()
        done.set_result(1)
        failed = Future()
        failed.set_exception(RuntimeError("locked"))

        def settle(future, n):
            for _ in range(n):
                writer._on_done(future)

        threads = [threading.Thread(target=settle, args=(done if i % 2 else failed, 500))
                   for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        writer.join(timeout=0.1)

        assert writer.written == 2000
        assert writer.failed == 2000


class TestScanRegion:
    def test_au_scan(self):
        client = FakeClient()
        snapshot = scan_region(client, "AU", "scan-AU-1", now=NOW, sleep=_no_sleep)

        assert client.calls == [("h2h", "au"), ("spreads,totals", "au")]
        assert len(snapshot.opportunities) == 1
        arb = snapshot.opportunities[0]
        assert {leg.bookmaker_key for leg in arb.legs} == {"sportsbet", "tab"}
        assert snapshot.stats.total_events == 1
        assert snapshot.stats.bookmaker_keys == {"sportsbet", "tab"}
        assert snapshot.remaining_requests == 4500

    def test_region_filter_applies_before_detection(self):
        snapshot = scan_region(FakeClient(), "UK", now=NOW, sleep=_no_sleep)
        assert snapshot.opportunities == []
        assert snapshot.stats.bookmaker_keys == {"williamhill"}

    def test_streams_batches_to_progress(self):
        progress = MagicMock()
        scan_region(FakeClient(), "AU", "scan-AU-1", progress=progress, now=NOW, sleep=_no_sleep)

        progress.clear_region.assert_called_once_with("AU", "scan-AU-1")
        batches = [c.args[0] for c in progress.submit.call_args_list]
        assert [b.phase for b in batches] == ["h2h", "lines", "complete"]
        assert [b.batch_index for b in batches] == [0, 1, 2]
        assert len(batches[0].opportunities) == 1
        assert batches[-1].is_last_batch is True
        assert batches[-1].stats["h2h"]["arbs_found"] == 1

    def test_provider_error_propagates(self):
        with pytest.raises(ProviderError):
            scan_region(FakeClient(fail=True), "AU", now=NOW, sleep=_no_sleep)

    def test_expired_deadline_skips_lines(self):
        client = FakeClient()
        deadline = MagicMock()
        deadline.expired.return_value = True
        scan_region(client, "AU", deadline=deadline, now=NOW, sleep=_no_sleep)
        assert client.calls == [("h2h", "au")]


# ---------------------------------------------------------------------------
# Full cycle
# ---------------------------------------------------------------------------

class TestRunScanCycle:
    def test_master_scan_populates_region_cache(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        client = FakeClient()

        summary = _run(db, client)

        assert summary.rotation_counter == 0
        assert summary.regions_scanned == ["AU", "UK"]
        assert summary.processed == 1
        assert summary.scanned == 1
        assert summary.global_cache_updated is True
        assert summary.region_results["AU"]["h2h"] == 1
        assert summary.region_results["UK"]["h2h"] == 0
        assert summary.errors == []
        assert ("h2h", "uk") in client.calls

        cached = store.read_region_scan("AU", db)
        assert len(cached["opportunities"]) == 1

        state = store.get_subscriber("m", db).state
        assert state.credits_used_this_month == 170 + 180
        assert state.last_scan_at == NOW
        assert state.scan_started_at is None
        assert state.last_scan_credits_remaining == 4500

        phases = {b["phase"] for b in store.get_progress_since("AU", None, db)}
        assert {"h2h", "complete"} <= phases

    def test_rotation_advances_once_per_cycle(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        store.upsert_subscriber(_subscriber("s", "sub@example.com"), db)
        _run(db)
        assert store.peek_rotation(db) == 1
        summary = _run(db)
        assert summary.regions_scanned == ["AU"]

    def test_subscriber_scan_does_not_touch_cache(self, db):
        store.upsert_subscriber(_subscriber(regions=["AU"]), db)
        summary = _run(db)

        assert summary.scanned == 1
        assert summary.global_cache_updated is False
        assert store.read_region_scan("AU", db) is None
        assert store.get_latest_batch("AU", db) is None
        assert store.get_subscriber("sub-1", db).state.credits_used_this_month == 170

    def test_provider_failure_charges_nothing(self, db):
        store.upsert_subscriber(_subscriber(), db)
        summary = _run(db, FakeClient(fail=True))

        assert summary.scanned == 0
        assert summary.errors == ["pro@example.com AU: provider down"]
        state = store.get_subscriber("sub-1", db).state
        assert state.credits_used_this_month == 0
        assert state.last_scan_at is None
        assert state.scan_started_at is None

    def test_ineligible_subscriber_skipped(self, db):
        store.upsert_subscriber(_subscriber(state=ScanState(last_scan_at=NOW - timedelta(seconds=30))), db)
        factory = MagicMock()
        summary = run_scan_cycle(db_path=db, settings=_settings(db), now=NOW,
                                 client_factory=factory, gateway=MagicMock(), sleep=_no_sleep)
        assert summary.processed == 1
        assert summary.scanned == 0
        factory.assert_not_called()

    def test_alerts_sent(self, db):
        store.upsert_subscriber(_subscriber(phone_number="0412345678"), db)
        gateway = MagicMock()
        gateway.send_alerts.return_value = AlertSendResult(True, 1)

        summary = _run(db, gateway=gateway)

        assert summary.alerts_sent == 1
        destination, alerts = gateway.send_alerts.call_args.args
        assert destination == "0412345678"
        assert alerts[0].event_name == "Lakers vs Celtics"
        assert store.get_subscriber("sub-1", db).state.last_alert_at == NOW

    def test_alert_failure_reported_after_charging(self, db):
        store.upsert_subscriber(_subscriber(phone_number="0412345678"), db)
        gateway = MagicMock()
        gateway.send_alerts.return_value = AlertSendResult(False, 0, "Twilio HTTP 500")

        summary = _run(db, gateway=gateway)

        assert summary.alerts_sent == 0
        assert summary.errors == ["SMS failed for pro@example.com: Twilio HTTP 500"]
        assert store.get_subscriber("sub-1", db).state.credits_used_this_month == 170

    def test_alerts_skipped_when_alert_regions_not_scanned(self, db):
        sub = _subscriber(phone_number="0412345678", alerts=AlertSettings(regions=["UK"]))
        store.upsert_subscriber(sub, db)
        gateway = MagicMock()
        _run(db, gateway=gateway)
        gateway.send_alerts.assert_not_called()

    def test_unexpected_error_isolated_per_subscriber(self, db):
        store.upsert_subscriber(_subscriber("a", "a@example.com"), db)
        store.upsert_subscriber(_subscriber("b", "b@example.com"), db)
        good = FakeClient()

        def factory(api_key):
            if api_key == "key-a":
                raise RuntimeError("boom")
            return good

        summary = run_scan_cycle(db_path=db, settings=_settings(db), now=NOW,
                                 client_factory=factory, gateway=MagicMock(), sleep=_no_sleep)

        assert summary.processed == 2
        assert summary.scanned == 1
        assert summary.errors == ["Error for a@example.com: boom"]
        assert store.get_subscriber("a", db).state.scan_started_at is None

    def test_malformed_subscriber_row_isolated(self, db):
        store.upsert_subscriber(_subscriber("a", "a@example.com"), db)
        store.upsert_subscriber(_subscriber("b", "b@example.com"), db)
        conn = store.get_connection(db)
        conn.execute("UPDATE subscribers SET alert_settings = ? WHERE id = 'a'",
                     ('{"enabled": true, "legacy_flag": 1}',))
        conn.close()

        summary = _run(db)

        assert summary.processed == 2
        assert summary.scanned == 1
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("Error for a: ")
        assert "legacy_flag" in summary.errors[0]
        assert store.get_subscriber("b", db).state.credits_used_this_month == 170

    def test_bad_timestamp_isolated(self, db):
        store.upsert_subscriber(_subscriber("a", "a@example.com"), db)
        store.upsert_subscriber(_subscriber("b", "b@example.com"), db)
        conn = store.get_connection(db)
        conn.execute("UPDATE subscribers SET last_scan_at = 'yesterday' WHERE id = 'b'")
        conn.close()

        summary = _run(db)

        assert summary.scanned == 1
        assert [e.split(":")[0] for e in summary.errors] == ["Error for b"]

    def test_missing_schema_returns_summary(self, tmp_path):
        db = str(tmp_path / "empty.db")
        summary = _run(db)

        assert summary.processed == 0
        assert summary.regions_scanned == ["AU"]
        assert summary.errors[0].startswith("Rotation: ")
        assert summary.errors[1].startswith("Subscribers: ")

    def test_expired_subscription_not_processed(self, db):
        store.upsert_subscriber(_subscriber(subscription_ends_at=NOW - timedelta(days=1)), db)
        factory = MagicMock()
        summary = run_scan_cycle(db_path=db, settings=_settings(db), now=NOW,
                                 client_factory=factory, gateway=MagicMock(), sleep=_no_sleep)
        assert summary.processed == 0
        factory.assert_not_called()

    def test_subscriber_result_kept(self, db):
        store.upsert_subscriber(_subscriber(), db)
        _run(db)

        cached = store.read_subscriber_scan("sub-1", db)
        assert cached["regions"] == ["AU"]
        assert cached["scanned_at"] == NOW.isoformat()
        assert len(cached["opportunities"]) == 1
        assert cached["stats"]["total_events"] == 1

    def test_master_result_combines_regions(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        _run(db)
        cached = store.read_subscriber_scan("m", db)
        assert cached["regions"] == ["AU", "UK"]
        assert cached["stats"]["total_events"] == 2
        assert cached["stats"]["total_bookmakers"] == 3

    def test_failed_scan_keeps_no_result(self, db):
        store.upsert_subscriber(_subscriber(), db)
        _run(db, FakeClient(fail=True))
        assert store.read_subscriber_scan("sub-1", db) is None

    def test_subscriber_result_write_failure_reported(self, db):
        store.upsert_subscriber(_subscriber(), db)
        with patch("edgescan.store.write_subscriber_scan", side_effect=PersistenceError("disk full")):
            summary = _run(db)
        assert summary.errors == ["Cache pro@example.com: disk full"]
        assert summary.scanned == 1
        assert store.get_subscriber("sub-1", db).state.credits_used_this_month == 170

    def test_deadline_exhausted(self, db):
        store.upsert_subscriber(_subscriber(), db)
        summary = _run(db, budget_seconds=0)
        assert summary.scanned == 0
        assert summary.errors == ["Deadline reached before scanning pro@example.com"]

    def test_rotation_failure_falls_back_to_base_region(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        with patch("edgescan.rotation.regions_for_this_invocation",
                   side_effect=PersistenceError("locked")):
            summary = _run(db)
        assert summary.regions_scanned == ["AU"]
        assert summary.errors == ["Rotation: locked"]
        assert summary.rotation_counter is None

    def test_cache_write_failure_reported(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        with patch("edgescan.store.write_region_scan", side_effect=PersistenceError("disk full")):
            summary = _run(db)
        assert summary.global_cache_updated is False
        assert "Cache AU: disk full" in summary.errors
        assert store.get_subscriber("m", db).state.credits_used_this_month == 350

    def test_summary_is_json_serializable(self, db):
        store.upsert_subscriber(_subscriber("m", MASTER), db)
        data = _run(db).to_dict()
        assert json.loads(json.dumps(data))["regions_scanned"] == ["AU", "UK"]
