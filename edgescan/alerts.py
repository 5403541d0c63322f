"""
edgescan/alerts.py - EdgeScan
===============================
Alert deduplication and the SMS gateway.

Responsibilities:
- Fingerprint arbs so odds jitter under one cent does not re-alert
- Purge alert history older than 24 hours
- Decide which arbs justify an alert this cycle (dedup, reminders, top 5, cooldown)
- Send alerts through Twilio's REST API
- Persist the subscriber's alert bookkeeping

Bookkeeping (alerted_arbs) is saved whether or not the send succeeds or is
suppressed by the cooldown. last_alert_at moves only on a successful send.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import requests

from edgescan import store
from edgescan.calculator import arb_stakes
from edgescan.config import (
    ALERT_HISTORY_HOURS,
    ALERT_REFERENCE_STAKE,
    MAX_ALERTS_PER_CYCLE,
    Settings,
    bookmaker_keys_for,
    bookmaker_name,
)
from edgescan.errors import AlertGatewayError
from edgescan.models import AlertRecord, BookVsBookArb, Subscriber

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
DEFAULT_COUNTRY_CODE = "+61"


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def arb_fingerprint(arb: BookVsBookArb) -> str:
    """
    Stable identity: event id, bookmaker keys sorted, odds x100 in the same order.

    Legs are ordered by bookmaker key so the fingerprint does not depend on
    which outcome happened to be listed first.
    """
    legs = sorted(arb.legs, key=lambda leg: (leg.bookmaker_key, leg.name))
    keys = "-".join(leg.bookmaker_key for leg in legs)
    odds = "-".join(str(round(leg.odds * 100)) for leg in legs)
    return f"{arb.event.id}-{keys}-{odds}"


def purge_expired(alerted: dict[str, AlertRecord], now: datetime,
                  max_age_hours: int = ALERT_HISTORY_HOURS) -> dict[str, AlertRecord]:
    """Records newer than max_age_hours. Returns a new dict."""
    cutoff = now - timedelta(hours=max_age_hours)
    return {fp: rec for fp, rec in alerted.items() if rec.alerted_at > cutoff}


def filter_by_regions(arbs: list[BookVsBookArb], regions: list[str]) -> list[BookVsBookArb]:
    """Arbs whose every leg is at a bookmaker from one of `regions`."""
    allowed = bookmaker_keys_for(regions)
    return [
        arb for arb in arbs
        if all(leg.bookmaker_key.lower() in allowed for leg in arb.legs)
    ]


def can_send_alert(subscriber: Subscriber, now: datetime) -> bool:
    """Cooldown check: now - last_alert_at >= alert_cooldown_minutes."""
    last = subscriber.state.last_alert_at
    if last is None:
        return True
    cooldown = timedelta(minutes=subscriber.alerts.alert_cooldown_minutes)
    return now - last >= cooldown


@dataclass
class AlertDecision:
    to_send: list[BookVsBookArb] = field(default_factory=list)
    alerted_arbs: dict[str, AlertRecord] = field(default_factory=dict)
    cooling_down: bool = False


def select_alerts(
    arbs: list[BookVsBookArb],
    subscriber: Subscriber,
    now: datetime,
    max_alerts: int = MAX_ALERTS_PER_CYCLE,
) -> AlertDecision:
    """
    Decide which arbs to alert on this cycle.

    An arb qualifies when it is a full arb (not near-arb) at or above the
    subscriber's minimum profit, and either it is high-value with reminders
    enabled or its fingerprint has not been alerted in the last 24 hours.

    Every qualifying arb is recorded in the returned alerted_arbs, even those
    cut by the top-N cap or held back by the cooldown.
    """
    settings = subscriber.alerts
    history = purge_expired(subscriber.state.alerted_arbs, now)
    updated = dict(history)
    candidates: list[BookVsBookArb] = []

    for arb in arbs:
        if arb.type != "arb" or arb.profit_percentage < settings.min_profit_percent:
            continue
        fingerprint = arb_fingerprint(arb)
        high_value = arb.profit_percentage >= settings.high_value_threshold
        if (high_value and settings.enable_high_value_reminders) or fingerprint not in history:
            candidates.append(arb)
            updated[fingerprint] = AlertRecord(alerted_at=now, profit_percent=arb.profit_percentage)

    if not candidates:
        return AlertDecision(alerted_arbs=updated)

    if not can_send_alert(subscriber, now):
        logger.info("Alerts for %s cooling down: %d held back", subscriber.email, len(candidates))
        return AlertDecision(alerted_arbs=updated, cooling_down=True)

    candidates.sort(key=lambda a: a.profit_percentage, reverse=True)
    return AlertDecision(to_send=candidates[:max_alerts], alerted_arbs=updated)


# ---------------------------------------------------------------------------
# Alert payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlertLeg:
    outcome: str
    bookmaker: str
    odds: float
    stake: float


@dataclass(frozen=True)
class Alert:
    event_name: str
    sport: str
    profit_percent: float
    stake: float
    legs: tuple[AlertLeg, ...]
    commence_time: datetime
    is_reminder: bool = False


def build_alert(arb: BookVsBookArb, stake: float = ALERT_REFERENCE_STAKE,
                high_value_threshold: Optional[float] = None) -> Alert:
    """Alert for `arb` with legs staked proportionally out of `stake`."""
    split = arb_stakes(arb, stake)
    legs = tuple(
        AlertLeg(
            outcome=leg.name,
            bookmaker=bookmaker_name(leg.bookmaker_key) if leg.bookmaker_key else leg.bookmaker,
            odds=leg.odds,
            stake=leg_stake,
        )
        for leg, leg_stake in zip(arb.legs, split.stakes)
    )
    return Alert(
        event_name=arb.event.matchup,
        sport=arb.event.sport_title,
        profit_percent=arb.profit_percentage,
        stake=stake,
        legs=legs,
        commence_time=arb.event.commence_time,
        is_reminder=high_value_threshold is not None and arb.profit_percentage >= high_value_threshold,
    )


def format_alert_message(alert: Alert) -> str:
    """Full detail text for a single alert."""
    header = "ARB REMINDER" if alert.is_reminder else "ARB ALERT"
    lines = [
        f"{header}: {alert.profit_percent:.2f}%",
        alert.sport,
        alert.event_name,
        f"Starts {alert.commence_time.strftime('%d %b %H:%M UTC')}",
        "",
    ]
    for i, leg in enumerate(alert.legs, 1):
        lines.append(f"{i}. {leg.outcome}")
        lines.append(f"   {leg.bookmaker} @ {leg.odds:.2f}")
        lines.append(f"   Stake: ${leg.stake:.2f}")
    lines.append("")
    lines.append(f"Guaranteed: ${alert.stake * alert.profit_percent / 100:.2f} profit")
    if alert.is_reminder:
        lines.append("Still active!")
    return "\n".join(lines)


def format_alert_summary(alerts: list[Alert], max_listed: int = MAX_ALERTS_PER_CYCLE) -> str:
    """One message listing several alerts."""
    lines = [f"{len(alerts)} ARB ALERTS FOUND", ""]
    for i, alert in enumerate(alerts[:max_listed], 1):
        lines.append(f"{i}. {alert.profit_percent:.2f}% - {alert.event_name[:30]}")
    if len(alerts) > max_listed:
        lines.append(f"...and {len(alerts) - max_listed} more")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# SMS gateway
# ---------------------------------------------------------------------------

def format_phone_number(phone: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Best-effort E.164.

    >>> format_phone_number("0412 345 678")
    '+61412345678'
    >>> format_phone_number("+44 7700 900123")
    '+447700900123'
    """
    cleaned = re.sub(r"[^\d+]", "", phone)
    if cleaned.startswith("0"):
        cleaned = default_country_code + cleaned[1:]
    if not cleaned.startswith("+"):
        cleaned = "+" + cleaned
    return cleaned


@dataclass(frozen=True)
class AlertSendResult:
    success: bool
    sent_count: int = 0
    error: Optional[str] = None


class SmsAlertGateway:
    """
    Twilio Messages API over plain requests.

    Args:
        account_sid, auth_token, from_number: Twilio credentials.
        session: Optional requests.Session (test injection).
    """

    def __init__(self, account_sid: Optional[str], auth_token: Optional[str],
                 from_number: Optional[str], session=None) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.session = session

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmsAlertGateway":
        return cls(settings.twilio_account_sid, settings.twilio_auth_token,
                   settings.twilio_from_number)

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_sms(self, to: str, body: str) -> AlertSendResult:
        if not self.is_configured:
            logger.warning("Twilio not configured, skipping SMS")
            return AlertSendResult(False, 0, "SMS not configured")

        requester = self.session or requests
        destination = format_phone_number(to)
        try:
            response = requester.post(
                TWILIO_MESSAGES_URL.format(sid=self.account_sid),
                data={"From": self.from_number, "To": destination, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=15,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("SMS send failed: %s", exc)
            return AlertSendResult(False, 0, str(exc))

        if response.status_code not in (200, 201):
            logger.error("Twilio HTTP %d: %s", response.status_code, response.text[:200])
            return AlertSendResult(False, 0, f"Twilio HTTP {response.status_code}")

        logger.info("SMS sent to %s", destination)
        return AlertSendResult(True, 1)

    def send_alerts(self, destination: str, alerts: list[Alert]) -> AlertSendResult:
        """
        One message per call: full detail for a single alert, a summary
        for several. sent_count is the number of alerts delivered.
        """
        if not alerts:
            return AlertSendResult(True, 0)
        if len(alerts) == 1:
            body = format_alert_message(alerts[0])
        else:
            body = format_alert_summary(alerts)
        result = self.send_sms(destination, body)
        if not result.success:
            return result
        return AlertSendResult(True, len(alerts))


# ---------------------------------------------------------------------------
# Cycle entry point
# ---------------------------------------------------------------------------

def evaluate_alerts(
    subscriber: Subscriber,
    arbs: list[BookVsBookArb],
    now: datetime,
    gateway: SmsAlertGateway,
    db_path: Optional[str] = None,
) -> int:
    """
    Run the alert decision for one subscriber and send what it selects.

    Arbs are first restricted to the subscriber's alert regions.

    Returns:
        Number of alerts delivered (0 when nothing qualified, cooling down,
        or alerts are disabled).

    Raises:
        AlertGatewayError: the send failed. Bookkeeping has already been saved.
        PersistenceError:  bookkeeping could not be saved.
    """
    if not subscriber.alerts.enabled or not subscriber.phone_number:
        return 0

    in_region = filter_by_regions(arbs, subscriber.alerts.regions)
    logger.info(
        "Alert regions for %s: %s (%d/%d arbs match)",
        subscriber.email, ",".join(subscriber.alerts.regions), len(in_region), len(arbs),
    )
    decision = select_alerts(in_region, subscriber, now)

    result: Optional[AlertSendResult] = None
    if decision.to_send:
        alerts = [
            build_alert(arb, high_value_threshold=subscriber.alerts.high_value_threshold)
            for arb in decision.to_send
        ]
        result = gateway.send_alerts(subscriber.phone_number, alerts)

    state = subscriber.state
    state.alerted_arbs = decision.alerted_arbs
    if result is not None and result.success:
        state.last_alert_at = now
    store.save_alert_state(subscriber.id, state.alerted_arbs, state.last_alert_at, db_path)

    if result is None:
        return 0
    if not result.success:
        raise AlertGatewayError(f"SMS failed for {subscriber.email}: {result.error}")
    logger.info("Sent %d alerts to %s", result.sent_count, subscriber.email)
    return result.sent_count
