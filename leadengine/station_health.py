"""
Station Health Monitor
----------------------
Daily check for partner NFC stations with no recent taps. Sends one check-in
SMS per partner (combined when both stations are idle) and records one alert
row per station type so each type's cooldown is tracked independently.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from leadengine.config import settings
from leadengine.datastore import CONNECTOR, Query, create, select
from leadengine.errors import PersistenceError, UpstreamError
from leadengine.idempotency import get_store
from leadengine.logger import log_run
from leadengine.runtime import get_logger, iso, parse_ts, utc_now
from leadengine.schema import PARTNERS, STATION_ALERTS, StationType
from leadengine.sms_gateway import send_partner_sms

logger = get_logger("station_health")

ALERT_TYPE_INACTIVE = "inactive"
SASQUATCH = StationType.SASQUATCH.value
REVIEW = StationType.REVIEW.value


def days_since(value: Any, now: datetime) -> Optional[int]:
    """Whole days elapsed since ``value``; ``None`` when there is no timestamp."""
    ts = parse_ts(value)
    if ts is None:
        return None
    return math.floor((now - ts).total_seconds() / 86400)


def partner_name(partner: Dict[str, Any]) -> str:
    return partner.get("location_name") or partner.get("company_name") or "Partner"


def _signature() -> str:
    s = settings()
    return f"- {s.BUSINESS_NAME}\n{s.BUSINESS_PHONE_DISPLAY}"


def render_message(name: str, stations: Tuple[str, ...]) -> str:
    if set(stations) == {SASQUATCH, REVIEW}:
        body = (
            f"Hey {name}! 👋 Noticed both your Sasquatch station and Google review station "
            "haven't had any taps lately. Want me to swing by and check on them?"
        )
    elif stations == (SASQUATCH,):
        body = (
            f"Hey {name}! 👋 Noticed your Sasquatch station hasn't had any taps in a while. "
            "Want me to swing by and check on it?"
        )
    else:
        body = (
            f"Hey {name}! 👋 Noticed your Google review station hasn't had any taps lately. "
            "Want me to swing by and check on it?"
        )
    return f"{body}\n\n{_signature()}"


def inactivity(partner: Dict[str, Any], now: datetime) -> Tuple[bool, bool]:
    """``(sasquatch_inactive, review_inactive)`` for one partner."""
    threshold = settings().STATION_INACTIVE_DAYS
    sasquatch_days = days_since(partner.get("last_sasquatch_tap_at"), now)
    review_days = days_since(partner.get("last_review_tap_at"), now)
    sasquatch_inactive = (
        int(partner.get("total_taps") or 0) > 0 and sasquatch_days is not None and sasquatch_days >= threshold
    )
    review_inactive = bool(partner.get("google_review_url")) and review_days is not None and review_days >= threshold
    return sasquatch_inactive, review_inactive


def recent_alerts(now: datetime) -> Set[Tuple[str, str]]:
    """(partner_id, station_type) pairs alerted inside the cooldown window."""
    since = now - timedelta(days=settings().STATION_ALERT_COOLDOWN_DAYS)
    rows = select(CONNECTOR.station_alerts(), Query().gte(STATION_ALERTS.field_name("SENT_AT"), since))
    out: Set[Tuple[str, str]] = set()
    for row in rows:
        alert = STATION_ALERTS.to_public(row)
        out.add((alert["partner_id"], alert["station_type"]))
    return out


def _record_alerts(partner_id: str, stations: Tuple[str, ...], now: datetime) -> None:
    for station in stations:
        create(
            CONNECTOR.station_alerts(),
            STATION_ALERTS.to_fields(
                {
                    "partner_id": partner_id,
                    "station_type": station,
                    "alert_type": ALERT_TYPE_INACTIVE,
                    "sent_at": iso(now),
                }
            ),
        )


def run_station_health(now: Optional[datetime] = None) -> Dict[str, Any]:
    """One scheduler tick. Per-partner failures are collected, never raised."""
    now = now or utc_now()
    results: Dict[str, Any] = {
        "partners_checked": 0,
        "alerts_sent": 0,
        "sasquatch_inactive": 0,
        "review_inactive": 0,
        "errors": [],
    }
    partners = [
        PARTNERS.to_public(r)
        for r in select(CONNECTOR.partners(), Query().not_null(PARTNERS.field_name("PHONE")))
    ]
    cooled = recent_alerts(now)
    store = get_store()
    cooldown_sec = settings().STATION_ALERT_COOLDOWN_DAYS * 24 * 60 * 60

    for partner in partners:
        results["partners_checked"] += 1
        sasquatch_inactive, review_inactive = inactivity(partner, now)
        if sasquatch_inactive:
            results["sasquatch_inactive"] += 1
        if review_inactive:
            results["review_inactive"] += 1

        stations: List[str] = []
        if sasquatch_inactive and (partner["id"], SASQUATCH) not in cooled:
            stations.append(SASQUATCH)
        if review_inactive and (partner["id"], REVIEW) not in cooled:
            stations.append(REVIEW)
        if not stations:
            continue

        name = partner_name(partner)
        claim_key = f"station_health:{partner['id']}:{'+'.join(stations)}:{now.date().isoformat()}"
        if not store.claim(claim_key, ttl=cooldown_sec):
            logger.info("⏭️ Station alert for %s already claimed by another run", name)
            continue
        try:
            send_partner_sms(partner["phone"], render_message(name, tuple(stations)), message_type="station_health")
        except UpstreamError as exc:
            store.release(claim_key)
            logger.error("Failed to send station alert to %s: %s", name, exc)
            results["errors"].append(f"{name}: {exc}")
            continue

        try:
            _record_alerts(partner["id"], tuple(stations), now)
        except PersistenceError as exc:
            logger.error("Alert sent to %s but not recorded: %s", name, exc)
            results["errors"].append(f"{name}: {exc}")
        results["alerts_sent"] += 1
        logger.info("📣 Station health alert sent to %s (%s)", name, ", ".join(stations))

    log_run(
        "STATION_HEALTH",
        processed=results["partners_checked"],
        breakdown={k: v for k, v in results.items() if k != "errors"},
        status="OK" if not results["errors"] else "PARTIAL",
    )
    logger.info("🏪 Station health check completed: %s", results)
    return results
