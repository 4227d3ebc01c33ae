"""
Lead Store
----------
Canonical contact records with a 24-hour (phone, source) deduplication window,
plus the missed-call webhook ingestion path.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from leadengine import push
from leadengine.config import settings
from leadengine.contacts import format_display, normalize_phone
from leadengine.datastore import CONNECTOR, Query, create, delete, first, get, select, update
from leadengine.errors import NotFoundError, ValidationError
from leadengine.idempotency import get_store, keyed_lock
from leadengine.runtime import get_logger, iso, utc_now
from leadengine.schema import LEAD_STATUS_STAMPS, LEADS, LeadSource, LeadStatus
from leadengine.sms_gateway import notify_customer

logger = get_logger("leads")

VALID_SOURCES = tuple(s.value for s in LeadSource)
VALID_STATUSES = tuple(s.value for s in LeadStatus)
UPDATABLE_FIELDS = ("status", "notes", "name", "email", "location")
OPTIONAL_FIELDS = ("name", "email", "location", "notes", "partner_id", "sighting_id")


def _col(key: str) -> str:
    return LEADS.field_name(key)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# =========================
# Lookups
# =========================
def find_recent_duplicate(phone: str, source: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Latest lead with the same (phone, source) created inside the dedup window."""
    now = now or utc_now()
    since = now - timedelta(hours=settings().LEAD_DEDUPE_HOURS)
    query = Query().eq(_col("PHONE"), phone).eq(_col("SOURCE"), source).gte(_col("CREATED_AT"), since)
    return first(CONNECTOR.leads(), query, sort=[f"-{_col('CREATED_AT')}"])


def find_latest_lead_by_phone(phone: str) -> Optional[Dict[str, Any]]:
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    record = first(CONNECTOR.leads(), Query().eq(_col("PHONE"), normalized), sort=[f"-{_col('CREATED_AT')}"])
    return LEADS.to_public(record)


def get_lead(lead_id: str) -> Dict[str, Any]:
    record = get(CONNECTOR.leads(), lead_id)
    if not record:
        raise NotFoundError("Lead not found", detail={"id": lead_id})
    return LEADS.to_public(record)


def list_leads(status: Optional[str] = None, source: Optional[str] = None) -> List[Dict[str, Any]]:
    query = Query()
    if status:
        query.eq(_col("STATUS"), status)
    if source:
        query.eq(_col("SOURCE"), source)
    records = select(CONNECTOR.leads(), query, sort=[f"-{_col('CREATED_AT')}"])
    return [LEADS.to_public(r) for r in records]


# =========================
# Writes
# =========================
def create_lead(
    payload: Dict[str, Any], now: Optional[datetime] = None, *, notify: bool = True
) -> Tuple[Dict[str, Any], bool]:
    """
    Insert a lead unless the same (phone, source) arrived within the dedup window.

    Returns ``(lead, created)``; a duplicate returns the existing lead with
    ``created=False`` and writes nothing.
    """
    phone = normalize_phone(_clean(payload.get("phone")))
    if not phone:
        raise ValidationError("Phone number is required")
    source = _clean(payload.get("source"))
    if source not in VALID_SOURCES:
        raise ValidationError("Valid source is required (contest, partner, missed_call, website)")

    now = now or utc_now()
    with keyed_lock(f"lead:{phone}:{source}"):
        existing = find_recent_duplicate(phone, source, now=now)
        if existing:
            logger.info("♻️ Duplicate %s lead for %s within window → %s", source, phone, existing["id"])
            return LEADS.to_public(existing), False

        values: Dict[str, Any] = {
            "source": source,
            "phone": phone,
            "status": LeadStatus.NEW,
            "created_at": iso(now),
            "updated_at": iso(now),
        }
        for key in OPTIONAL_FIELDS:
            values[key] = _clean(payload.get(key))
        record = create(CONNECTOR.leads(), LEADS.to_fields(values))

    lead = LEADS.to_public(record)
    logger.info("✨ New %s lead %s (%s)", source, lead["id"], phone)
    if not notify:
        return lead, True
    push.notify(
        f"New {source.replace('_', ' ')} lead",
        f"{lead.get('name') or 'Someone'} · {format_display(phone)}",
        {"lead_id": lead["id"], "source": source},
    )
    return lead, True


def update_lead(lead_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Whitelisted partial update. Moving to contacted/scheduled/won stamps that
    status's timestamp once; later moves never reset or re-stamp it.
    """
    if not lead_id:
        raise ValidationError("Lead ID is required")
    values = {key: changes[key] for key in UPDATABLE_FIELDS if key in changes}
    if not values:
        raise ValidationError("No updatable fields provided")
    status = values.get("status")
    if "status" in values and status not in VALID_STATUSES:
        raise ValidationError("Invalid status", detail={"status": status})

    now = now or utc_now()
    handle = CONNECTOR.leads()
    record = get(handle, lead_id)
    if not record:
        raise NotFoundError("Lead not found", detail={"id": lead_id})

    stamp_key = LEAD_STATUS_STAMPS.get(status or "")
    if stamp_key and not record["fields"].get(_col(stamp_key)):
        values[stamp_key.lower()] = iso(now)
    values["updated_at"] = iso(now)

    updated = update(handle, lead_id, LEADS.to_fields(values))
    logger.info("✏️ Lead %s updated: %s", lead_id, ", ".join(sorted(values)))
    return LEADS.to_public(updated)


def delete_lead(lead_id: str) -> bool:
    """Admin hard delete. Unknown ids are a no-op."""
    if not lead_id:
        raise ValidationError("Lead ID is required")
    deleted = delete(CONNECTOR.leads(), lead_id)
    logger.info("🗑️ Lead %s delete → %s", lead_id, deleted)
    return deleted


# =========================
# Missed-call webhook
# =========================
def is_missed_call_payload(payload: Any) -> bool:
    body = payload.get("body") if isinstance(payload, dict) else None
    return isinstance(body, dict) and "telephonyStatus" in body


def parse_missed_call(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the caller from a telephony presence event.

    Only a terminated call (``telephonyStatus == "NoCall"``) with an inbound
    entry in ``activeCalls`` counts as a missed call.
    """
    body = payload.get("body") or {}
    if body.get("telephonyStatus") != "NoCall":
        return None
    for call in body.get("activeCalls") or []:
        if not isinstance(call, dict) or call.get("direction") != "Inbound":
            continue
        phone = normalize_phone(call.get("from"))
        if not phone:
            continue
        return {
            "phone": phone,
            "name": _clean(call.get("fromName")),
            "call_id": _clean(call.get("id")),
        }
    return None


def missed_call_text_back() -> str:
    return f"Hi! This is {settings().BUSINESS_NAME}. I saw you just called. How can I help you today?"


def ingest_missed_call(payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Turn a missed-call webhook into a ``missed_call`` lead.

    Returns ``{"status": "ignored" | "duplicate" | "created", "lead_id": ...}``.
    Redelivered events (same call id / event uuid) are ignored.
    """
    call = parse_missed_call(payload)
    if not call:
        logger.info("📞 Telephony event ignored (not a missed inbound call)")
        return {"status": "ignored", "lead_id": None}

    event_id = call["call_id"] or _clean(payload.get("uuid"))
    store = get_store()
    if store.seen(event_id, namespace="missed_call"):
        logger.info("♻️ Missed-call event %s already processed", event_id)
        return {"status": "ignored", "lead_id": None}

    try:
        lead, created = create_lead(
            {"source": LeadSource.MISSED_CALL.value, "phone": call["phone"], "name": call["name"]},
            now=now,
            notify=False,
        )
    except Exception:
        store.forget(event_id, namespace="missed_call")
        raise

    if not created:
        return {"status": "duplicate", "lead_id": lead["id"]}

    notify_customer(call["phone"], missed_call_text_back(), lead_id=lead["id"], message_type="missed_call_textback")
    push.notify(
        "Missed call",
        f"{call['name'] or 'Unknown caller'} · {format_display(call['phone'])}",
        {"lead_id": lead["id"], "source": LeadSource.MISSED_CALL.value},
    )
    return {"status": "created", "lead_id": lead["id"]}
