"""
edgescan/store.py - EdgeScan
==============================
SQLite persistence. No API calls, no detection math.

Responsibilities:
- Initialize SQLite schema (WAL mode for concurrent scheduler + reader access)
- Region rotation counter with an atomic read-and-increment
- Authoritative per-region scan cache (one row per region, replaced each scan)
- Streamed progress batches (best-effort, expire after 5 minutes)
- Each subscriber's latest combined scan result
- Subscriber records and their per-subscriber ScanState

Schema: scan_rotation table
  id          INTEGER PRIMARY KEY  -- always 1
  counter     INTEGER NOT NULL     -- append-only
  updated_at  TEXT NOT NULL

Schema: region_scan_cache table
  region      TEXT PRIMARY KEY     -- "AU", "UK", "US", "EU"
  payload     TEXT NOT NULL        -- JSON RegionScanSnapshot
  scanned_at  TEXT NOT NULL

Schema: scan_progress table
  id          INTEGER PRIMARY KEY AUTOINCREMENT
  region      TEXT NOT NULL
  scan_id     TEXT NOT NULL        -- "scan-AU-<epoch ms>"
  batch_index INTEGER NOT NULL
  phase       TEXT NOT NULL        -- "h2h", "lines", "complete"
  payload     TEXT NOT NULL        -- JSON ProgressBatch
  is_last_batch INTEGER DEFAULT 0
  created_at  TEXT NOT NULL        -- ISO 8601 UTC, used by "since" queries

Schema: subscriber_scan_cache table
  subscriber_id TEXT PRIMARY KEY
  payload     TEXT NOT NULL        -- JSON SubscriberScanResult (all regions combined)
  scanned_at  TEXT NOT NULL

Schema: subscribers table
  id, email, phone_number, odds_api_key, subscription_status,
  subscription_ends_at, auto_scan_enabled, credit_tier,
  regions (JSON list), alert_settings (JSON), last_scan_at, scan_started_at,
  credits_used_this_month, alerted_arbs (JSON fingerprint -> record),
  last_alert_at, last_scan_credits_remaining

Every public function opens its own short-lived connection.
DO NOT add API calls to this file.
"""

import json
import logging
import os
import sqlite3
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from edgescan.config import DEFAULT_DB_PATH, PROGRESS_TTL_SECONDS
from edgescan.errors import PersistenceError
from edgescan.models import (
    AlertRecord,
    AlertSettings,
    ProgressBatch,
    RegionScanSnapshot,
    ScanState,
    Subscriber,
    SubscriberScanResult,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;

CREATE TABLE IF NOT EXISTS scan_rotation (
    id              INTEGER PRIMARY KEY CHECK (id = 1),
    counter         INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS region_scan_cache (
    region          TEXT PRIMARY KEY,
    payload         TEXT NOT NULL,
    scanned_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_progress (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    region          TEXT NOT NULL,
    scan_id         TEXT NOT NULL,
    batch_index     INTEGER NOT NULL,
    phase           TEXT NOT NULL,
    payload         TEXT NOT NULL,
    is_last_batch   INTEGER DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scan_progress_region
    ON scan_progress(region, created_at);

CREATE TABLE IF NOT EXISTS subscriber_scan_cache (
    subscriber_id   TEXT PRIMARY KEY,
    payload         TEXT NOT NULL,
    scanned_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscribers (
    id                          TEXT PRIMARY KEY,
    email                       TEXT NOT NULL UNIQUE,
    phone_number                TEXT,
    odds_api_key                TEXT,
    subscription_status         TEXT NOT NULL DEFAULT 'inactive',
    subscription_ends_at        TEXT,
    auto_scan_enabled           INTEGER NOT NULL DEFAULT 0,
    credit_tier                 TEXT NOT NULL DEFAULT '20k',
    regions                     TEXT NOT NULL DEFAULT '["AU"]',
    alert_settings              TEXT NOT NULL DEFAULT '{}',
    last_scan_at                TEXT,
    scan_started_at             TEXT,
    credits_used_this_month     INTEGER NOT NULL DEFAULT 0,
    alerted_arbs                TEXT NOT NULL DEFAULT '{}',
    last_alert_at               TEXT,
    last_scan_credits_remaining INTEGER
);
"""


# ---------------------------------------------------------------------------
# Connection management
# ---------------------------------------------------------------------------

def get_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Open a SQLite connection with WAL mode and sqlite3.Row rows.

    isolation_level=None: transactions are explicit (BEGIN IMMEDIATE where
    atomicity matters), single statements autocommit.
    """
    if db_path is None:
        db_path = DEFAULT_DB_PATH

    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def init_db(db_path: Optional[str] = None) -> None:
    """Create all tables. Safe to call repeatedly."""
    conn = get_connection(db_path)
    try:
        conn.executescript(_SCHEMA_SQL)
        logger.info("Database initialized: %s", db_path or DEFAULT_DB_PATH)
    except sqlite3.Error as exc:
        logger.error("Schema init failed: %s", exc)
        raise
    finally:
        conn.close()


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp, so string order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Rotation counter
# ---------------------------------------------------------------------------

def next_rotation(db_path: Optional[str] = None) -> int:
    """
    Atomically read and increment the rotation counter.

    Returns the value BEFORE the increment (0 on the very first call).
    BEGIN IMMEDIATE takes the write lock up front, so two overlapping
    invocations can never read the same value.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT counter FROM scan_rotation WHERE id = 1").fetchone()
        current = row["counter"] if row else 0
        conn.execute(
            """
            INSERT INTO scan_rotation (id, counter, updated_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET counter = excluded.counter,
                                          updated_at = excluded.updated_at
            """,
            (current + 1, _now().isoformat()),
        )
        conn.execute("COMMIT")
        return current
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise PersistenceError(f"Rotation counter update failed: {exc}") from exc
    finally:
        conn.close()


def peek_rotation(db_path: Optional[str] = None) -> int:
    """Current counter without incrementing (observability only)."""
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT counter FROM scan_rotation WHERE id = 1").fetchone()
        return row["counter"] if row else 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Region scan cache (authoritative)
# ---------------------------------------------------------------------------

def write_region_scan(snapshot: RegionScanSnapshot, db_path: Optional[str] = None) -> None:
    """
    Replace the cached result set for snapshot.region.

    Raises:
        PersistenceError: on any write failure. Callers must not swallow it.
    """
    try:
        payload = json.dumps(snapshot.to_dict())
        conn = get_connection(db_path)
    except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Region cache write failed for {snapshot.region}: {exc}") from exc
    try:
        conn.execute(
            """
            INSERT INTO region_scan_cache (region, payload, scanned_at) VALUES (?, ?, ?)
            ON CONFLICT(region) DO UPDATE SET payload = excluded.payload,
                                              scanned_at = excluded.scanned_at
            """,
            (snapshot.region, payload, snapshot.scanned_at.isoformat()),
        )
        logger.info("Region cache updated: %s (%d arbs)", snapshot.region, len(snapshot.opportunities))
    except sqlite3.Error as exc:
        raise PersistenceError(f"Region cache write failed for {snapshot.region}: {exc}") from exc
    finally:
        conn.close()


def read_region_scan(region: str, db_path: Optional[str] = None) -> Optional[dict]:
    """Cached snapshot dict for a region, or None if never scanned."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT payload FROM region_scan_cache WHERE region = ?", (region,)
        ).fetchone()
    finally:
        conn.close()
    return json.loads(row["payload"]) if row else None


def read_all_region_scans(db_path: Optional[str] = None) -> dict[str, dict]:
    """region -> cached snapshot dict for every region scanned so far."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("SELECT region, payload FROM region_scan_cache ORDER BY region").fetchall()
    finally:
        conn.close()
    return {r["region"]: json.loads(r["payload"]) for r in rows}


# ---------------------------------------------------------------------------
# Subscriber scan cache
# ---------------------------------------------------------------------------

def write_subscriber_scan(result: SubscriberScanResult, db_path: Optional[str] = None) -> None:
    """
    Replace the subscriber's latest combined scan result.

    Raises:
        PersistenceError: on any write failure.
    """
    try:
        payload = json.dumps(result.to_dict())
        conn = get_connection(db_path)
    except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Scan result write failed for {result.subscriber_id}: {exc}") from exc
    try:
        conn.execute(
            """
            INSERT INTO subscriber_scan_cache (subscriber_id, payload, scanned_at) VALUES (?, ?, ?)
            ON CONFLICT(subscriber_id) DO UPDATE SET payload = excluded.payload,
                                                     scanned_at = excluded.scanned_at
            """,
            (result.subscriber_id, payload, result.scanned_at.isoformat()),
        )
    except sqlite3.Error as exc:
        raise PersistenceError(f"Scan result write failed for {result.subscriber_id}: {exc}") from exc
    finally:
        conn.close()


def read_subscriber_scan(subscriber_id: str, db_path: Optional[str] = None) -> Optional[dict]:
    """Latest combined scan dict for a subscriber, or None if never scanned."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT payload FROM subscriber_scan_cache WHERE subscriber_id = ?", (subscriber_id,)
        ).fetchone()
    finally:
        conn.close()
    return json.loads(row["payload"]) if row else None


# ---------------------------------------------------------------------------
# Progress batches (best-effort)
# ---------------------------------------------------------------------------

def write_progress_batch(batch: ProgressBatch, db_path: Optional[str] = None) -> int:
    """
    Append one streamed batch and purge batches past their 5 minute TTL.

    Returns the new row id.
    """
    now = _now()
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            """
            INSERT INTO scan_progress
                (region, scan_id, batch_index, phase, payload, is_last_batch, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (batch.region, batch.scan_id, batch.batch_index, batch.phase,
             json.dumps(batch.to_dict()), int(batch.is_last_batch), _ts(now)),
        )
        cutoff = _ts(now - timedelta(seconds=PROGRESS_TTL_SECONDS))
        conn.execute("DELETE FROM scan_progress WHERE created_at < ?", (cutoff,))
        return cur.lastrowid
    finally:
        conn.close()


def _progress_row(row: sqlite3.Row) -> dict:
    data = json.loads(row["payload"])
    data["created_at"] = row["created_at"]
    return data


def get_progress_since(region: str, since: Optional[datetime] = None,
                       db_path: Optional[str] = None) -> list[dict]:
    """Batches for a region created strictly after `since`, oldest first."""
    since_iso = _ts(since) if since else ""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            """
            SELECT payload, created_at FROM scan_progress
            WHERE region = ? AND created_at > ?
            ORDER BY created_at ASC, id ASC
            """,
            (region, since_iso),
        ).fetchall()
    finally:
        conn.close()
    return [_progress_row(r) for r in rows]


def get_latest_batch(region: str, db_path: Optional[str] = None) -> Optional[dict]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            """
            SELECT payload, created_at FROM scan_progress
            WHERE region = ? ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (region,),
        ).fetchone()
    finally:
        conn.close()
    return _progress_row(row) if row else None


def clear_progress(region: str, keep_scan_id: str, db_path: Optional[str] = None) -> int:
    """Delete batches from earlier scans of a region. Returns rows removed."""
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            "DELETE FROM scan_progress WHERE region = ? AND scan_id != ?",
            (region, keep_scan_id),
        )
        return cur.rowcount
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

def _alerted_to_json(alerted: dict[str, AlertRecord]) -> str:
    return json.dumps({
        fp: {"alerted_at": rec.alerted_at.isoformat(), "profit_percent": rec.profit_percent}
        for fp, rec in alerted.items()
    })


def _alerted_from_json(raw: Optional[str]) -> dict[str, AlertRecord]:
    data = json.loads(raw or "{}")
    return {
        fp: AlertRecord(alerted_at=_parse_dt(rec["alerted_at"]),
                        profit_percent=float(rec["profit_percent"]))
        for fp, rec in data.items()
    }


def subscriber_from_row(row) -> Subscriber:
    """
    Build a Subscriber from a subscribers row (sqlite3.Row or dict).

    Raises:
        ValueError, TypeError, KeyError: on a malformed row.
    """
    alert_data = json.loads(row["alert_settings"] or "{}")
    return Subscriber(
        id=row["id"],
        email=row["email"],
        phone_number=row["phone_number"],
        odds_api_key=row["odds_api_key"],
        subscription_status=row["subscription_status"],
        subscription_ends_at=_parse_dt(row["subscription_ends_at"]),
        auto_scan_enabled=bool(row["auto_scan_enabled"]),
        credit_tier=row["credit_tier"],
        regions=json.loads(row["regions"]),
        alerts=AlertSettings(**alert_data),
        state=ScanState(
            last_scan_at=_parse_dt(row["last_scan_at"]),
            scan_started_at=_parse_dt(row["scan_started_at"]),
            credits_used_this_month=row["credits_used_this_month"],
            alerted_arbs=_alerted_from_json(row["alerted_arbs"]),
            last_alert_at=_parse_dt(row["last_alert_at"]),
            last_scan_credits_remaining=row["last_scan_credits_remaining"],
        ),
    )


def upsert_subscriber(subscriber: Subscriber, db_path: Optional[str] = None) -> None:
    """Insert or fully replace a subscriber record (profile + state)."""
    s = subscriber.state
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO subscribers
                (id, email, phone_number, odds_api_key, subscription_status,
                 subscription_ends_at, auto_scan_enabled, credit_tier, regions,
                 alert_settings, last_scan_at, scan_started_at,
                 credits_used_this_month, alerted_arbs, last_alert_at,
                 last_scan_credits_remaining)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                phone_number = excluded.phone_number,
                odds_api_key = excluded.odds_api_key,
                subscription_status = excluded.subscription_status,
                subscription_ends_at = excluded.subscription_ends_at,
                auto_scan_enabled = excluded.auto_scan_enabled,
                credit_tier = excluded.credit_tier,
                regions = excluded.regions,
                alert_settings = excluded.alert_settings,
                last_scan_at = excluded.last_scan_at,
                scan_started_at = excluded.scan_started_at,
                credits_used_this_month = excluded.credits_used_this_month,
                alerted_arbs = excluded.alerted_arbs,
                last_alert_at = excluded.last_alert_at,
                last_scan_credits_remaining = excluded.last_scan_credits_remaining
            """,
            (subscriber.id, subscriber.email, subscriber.phone_number,
             subscriber.odds_api_key, subscriber.subscription_status,
             _iso(subscriber.subscription_ends_at), int(subscriber.auto_scan_enabled),
             subscriber.credit_tier, json.dumps(subscriber.regions),
             json.dumps(asdict(subscriber.alerts)), _iso(s.last_scan_at),
             _iso(s.scan_started_at), s.credits_used_this_month,
             _alerted_to_json(s.alerted_arbs), _iso(s.last_alert_at),
             s.last_scan_credits_remaining),
        )
    finally:
        conn.close()


def get_subscriber(subscriber_id: str, db_path: Optional[str] = None) -> Optional[Subscriber]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM subscribers WHERE id = ?", (subscriber_id,)).fetchone()
    finally:
        conn.close()
    return subscriber_from_row(row) if row else None


def list_eligible_subscriber_rows(db_path: Optional[str] = None) -> list[dict]:
    """
    Raw rows for subscribers with auto-scan enabled, an odds API key and an
    active subscription status. Parse each with subscriber_from_row().

    Raises:
        PersistenceError: if the query fails (missing schema, locked db).
    """
    try:
        conn = get_connection(db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM subscribers
                WHERE auto_scan_enabled = 1
                  AND odds_api_key IS NOT NULL AND odds_api_key != ''
                  AND subscription_status = 'active'
                ORDER BY email
                """
            ).fetchall()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise PersistenceError(f"Subscriber query failed: {exc}") from exc
    return [dict(r) for r in rows]


def list_eligible_subscribers(now: Optional[datetime] = None,
                              db_path: Optional[str] = None) -> list[Subscriber]:
    """
    Parsed subscribers with an unexpired subscription. Interval and credit
    checks are the governor's job. A malformed row raises.
    """
    now = now or _now()
    subscribers = [subscriber_from_row(r) for r in list_eligible_subscriber_rows(db_path)]
    return [s for s in subscribers if s.has_active_subscription(now)]


def mark_scan_started(subscriber_id: str, started_at: datetime,
                      db_path: Optional[str] = None) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            "UPDATE subscribers SET scan_started_at = ? WHERE id = ?",
            (started_at.isoformat(), subscriber_id),
        )
    finally:
        conn.close()


def clear_scan_marker(subscriber_id: str, db_path: Optional[str] = None) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute("UPDATE subscribers SET scan_started_at = NULL WHERE id = ?", (subscriber_id,))
    finally:
        conn.close()


def record_scan_completed(
    subscriber_id: str,
    scanned_at: datetime,
    credits_used: int,
    credits_remaining: Optional[int] = None,
    db_path: Optional[str] = None,
) -> None:
    """
    Charge credits, set last_scan_at and clear the scan marker in one statement.
    Only called for scans that succeeded.

    Raises:
        PersistenceError: if the update fails.
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            UPDATE subscribers
            SET last_scan_at = ?,
                scan_started_at = NULL,
                credits_used_this_month = credits_used_this_month + ?,
                last_scan_credits_remaining = COALESCE(?, last_scan_credits_remaining)
            WHERE id = ?
            """,
            (scanned_at.isoformat(), credits_used, credits_remaining, subscriber_id),
        )
    except sqlite3.Error as exc:
        raise PersistenceError(f"Scan accounting failed for {subscriber_id}: {exc}") from exc
    finally:
        conn.close()


def save_alert_state(
    subscriber_id: str,
    alerted_arbs: dict[str, AlertRecord],
    last_alert_at: Optional[datetime],
    db_path: Optional[str] = None,
) -> None:
    """
    Persist alert bookkeeping.

    Raises:
        PersistenceError: if the update fails.
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            "UPDATE subscribers SET alerted_arbs = ?, last_alert_at = ? WHERE id = ?",
            (_alerted_to_json(alerted_arbs), _iso(last_alert_at), subscriber_id),
        )
    except sqlite3.Error as exc:
        raise PersistenceError(f"Alert state write failed for {subscriber_id}: {exc}") from exc
    finally:
        conn.close()
