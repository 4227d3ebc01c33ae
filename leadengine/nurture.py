"""
Nurture Scheduler
-----------------
Daily drip: day-3 / day-7 / day-14 follow-up SMS for leads that have not
moved past ``contacted``.

A lead is due for milestone ``m`` while its calendar age (business timezone)
is within ``[m, next_m)``; the windows are disjoint so one run never sends two
milestones to the same lead. Each send is guarded by a single-winner claim
and stamped on success, so overlapping cron invocations do not double-send.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from leadengine.config import settings
from leadengine.datastore import CONNECTOR, Query, get, select, update
from leadengine.errors import LeadEngineError, PersistenceError, UpstreamError
from leadengine.idempotency import get_store
from leadengine.logger import log_run
from leadengine.runtime import business_tz, get_logger, iso, utc_now
from leadengine.schema import LEADS, LeadSource, LeadStatus
from leadengine.sms_gateway import send_customer_sms

logger = get_logger("nurture")

ELIGIBLE_STATUSES = (LeadStatus.NEW.value, LeadStatus.CONTACTED.value)
ELIGIBLE_SOURCES = (LeadSource.CONTEST.value, LeadSource.PARTNER.value, LeadSource.WEBSITE.value)


@dataclass(frozen=True)
class Milestone:
    day: int
    next_day: int
    coupon: str
    discount: int

    @property
    def stamp_key(self) -> str:
        return f"DAY_{self.day}_SMS_SENT_AT"

    @property
    def result_key(self) -> str:
        return f"day_{self.day}"

    @property
    def message_type(self) -> str:
        return f"day_{self.day}_nurture"


MILESTONES: Tuple[Milestone, ...] = (
    Milestone(3, 7, "Contest20", 20),
    Milestone(7, 14, "Contest25", 25),
    Milestone(14, 21, "Contest30", 30),
)


def _signature() -> str:
    s = settings()
    return f"- {s.BUSINESS_NAME}\n{s.BUSINESS_PHONE_DISPLAY}"


def render_message(milestone: Milestone, name: Optional[str]) -> str:
    link = settings().BOOKING_URL
    if milestone.day == 3:
        return (
            f"Hi {name or 'there'}, still need carpet cleaning?\n"
            f"You have ${milestone.discount} off! Use coupon: {milestone.coupon} (add to notes)\n"
            f"Book now: {link}\n{_signature()}"
        )
    if milestone.day == 7:
        return (
            f"Special offer for {name or 'you'}!\n"
            f"Get ${milestone.discount} off when you book this week.\n"
            f"Use coupon: {milestone.coupon} (add to notes)\n"
            f"{link}\n{_signature()}"
        )
    return (
        f"Last chance, {name or 'friend'}!\n"
        f"Book this week and get ${milestone.discount} off.\n"
        f"Use coupon: {milestone.coupon} (add to notes)\n"
        f"{link}\nReply STOP to unsubscribe\n{_signature()}"
    )


def _local_midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=business_tz()).astimezone(timezone.utc)


def eligibility_window(milestone: Milestone, now: datetime) -> Tuple[datetime, datetime]:
    """UTC ``[start, end)`` of ``created_at`` values due for ``milestone`` today."""
    today = now.astimezone(business_tz()).date()
    oldest = today - timedelta(days=milestone.next_day - 1)
    youngest = today - timedelta(days=milestone.day)
    return _local_midnight_utc(oldest), _local_midnight_utc(youngest + timedelta(days=1))


def due_leads(milestone: Milestone, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utc_now()
    start, end = eligibility_window(milestone, now)
    query = (
        Query()
        .gte(LEADS.field_name("CREATED_AT"), start)
        .lt(LEADS.field_name("CREATED_AT"), end)
        .is_null(LEADS.field_name(milestone.stamp_key))
        .isin(LEADS.field_name("STATUS"), ELIGIBLE_STATUSES)
        .isin(LEADS.field_name("SOURCE"), ELIGIBLE_SOURCES)
    )
    return select(CONNECTOR.leads(), query, sort=[LEADS.field_name("CREATED_AT")])


def _send_one(milestone: Milestone, record: Dict[str, Any], now: datetime) -> bool:
    """Returns True when this call sent and stamped the milestone."""
    lead_id = record["id"]
    claim_key = f"nurture:{lead_id}:{milestone.result_key}"
    store = get_store()
    ttl = (milestone.next_day - milestone.day + 1) * 24 * 60 * 60
    if not store.claim(claim_key, ttl=ttl):
        logger.info("⏭️ %s for lead %s already claimed by another run", milestone.result_key, lead_id)
        return False

    stamp_col = LEADS.field_name(milestone.stamp_key)
    fresh = get(CONNECTOR.leads(), lead_id)
    if not fresh or fresh["fields"].get(stamp_col):
        return False

    lead = LEADS.to_public(fresh)
    try:
        send_customer_sms(
            lead["phone"],
            render_message(milestone, lead.get("name")),
            lead_id=lead_id,
            message_type=milestone.message_type,
        )
    except LeadEngineError:
        store.release(claim_key)
        raise

    # claim stays held if the stamp write fails, so the lead is not re-sent
    update(CONNECTOR.leads(), lead_id, {stamp_col: iso(now)})
    return True


def run_nurture(now: Optional[datetime] = None) -> Dict[str, Any]:
    """One scheduler tick. Per-lead failures are collected, never raised."""
    now = now or utc_now()
    results: Dict[str, Any] = {m.result_key: 0 for m in MILESTONES}
    results["errors"] = []

    for milestone in MILESTONES:
        label = f"Day {milestone.day}"
        try:
            candidates = due_leads(milestone, now)
        except PersistenceError as exc:
            logger.error("%s candidate query failed: %s", label, exc)
            results["errors"].append(f"{label}: {exc}")
            continue

        for record in candidates:
            try:
                if _send_one(milestone, record, now):
                    results[milestone.result_key] += 1
                    logger.info("%s SMS sent to lead %s", label, record["id"])
            except (UpstreamError, PersistenceError) as exc:
                logger.error("Failed to send %s SMS to lead %s: %s", label, record["id"], exc)
                results["errors"].append(f"{label} lead {record['id']}: {exc}")

    processed = sum(results[m.result_key] for m in MILESTONES)
    log_run(
        "NURTURE_LEADS",
        processed=processed,
        breakdown={k: v for k, v in results.items() if k != "errors"},
        status="OK" if not results["errors"] else "PARTIAL",
    )
    logger.info("🌱 Lead nurturing completed: %s", results)
    return results
