"""
Conversation Engine
-------------------
Per-phone two-way SMS state machine (active / completed / escalated) with
automated dispatcher replies and operator escalation.

Messages live in the append-only "Conversation Messages" table keyed by
(conversation_id, sequence). At most one conversation per phone is active;
the invariant is enforced under the per-phone lock whenever a conversation is
resolved or reopened.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from leadengine import ai, intake, leads
from leadengine.contacts import format_display, normalize_phone
from leadengine.datastore import CONNECTOR, Query, create, first, get, select, update
from leadengine.errors import NotFoundError, PersistenceError, UpstreamError, ValidationError
from leadengine.idempotency import get_store, keyed_lock
from leadengine.runtime import get_logger, iso, utc_now
from leadengine.schema import CONVERSATION_MESSAGES, CONVERSATIONS, ConversationStatus, LeadSource, MessageRole
from leadengine.sms_gateway import notify_admin, send_customer_sms

logger = get_logger("conversations")

TWIML_EMPTY = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
AI_ERROR_NOTE = "ERROR: AI failed to generate response"
DELIVERY_ERROR_NOTE = "ERROR: reply could not be delivered"
DEFAULT_SOURCE = "inbound"
PARTNER_CARD_SOURCE = "nfc_card"
VALID_STATUSES = tuple(s.value for s in ConversationStatus)

ACTIVE = ConversationStatus.ACTIVE.value
ESCALATED = ConversationStatus.ESCALATED.value
COMPLETED = ConversationStatus.COMPLETED.value


def _col(key: str) -> str:
    return CONVERSATIONS.field_name(key)


def _msg_col(key: str) -> str:
    return CONVERSATION_MESSAGES.field_name(key)


def _phone_lock(phone: str):
    return keyed_lock(f"conversation:{phone}")


# =========================
# Messages
# =========================
def get_messages(conversation_id: str) -> List[Dict[str, Any]]:
    rows = select(
        CONNECTOR.conversation_messages(),
        Query().eq(_msg_col("CONVERSATION_ID"), conversation_id),
        sort=[_msg_col("SEQUENCE")],
    )
    return [CONVERSATION_MESSAGES.to_public(r) for r in rows]


def _next_sequence(conversation_id: str) -> int:
    last = first(
        CONNECTOR.conversation_messages(),
        Query().eq(_msg_col("CONVERSATION_ID"), conversation_id),
        sort=[f"-{_msg_col('SEQUENCE')}"],
    )
    if not last:
        return 1
    return int(last["fields"].get(_msg_col("SEQUENCE")) or 0) + 1


def append_message(
    conversation_id: str,
    role: MessageRole,
    content: str,
    *,
    now: Optional[datetime] = None,
    provider_sid: Optional[str] = None,
    sent_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Append one row; callers hold the conversation's phone lock."""
    now = now or utc_now()
    sequence = _next_sequence(conversation_id)
    row = create(
        CONNECTOR.conversation_messages(),
        CONVERSATION_MESSAGES.to_fields(
            {
                "conversation_id": conversation_id,
                "sequence": sequence,
                "role": role,
                "content": content,
                "timestamp": iso(now),
                "provider_sid": provider_sid,
                "sent_by": sent_by,
            }
        ),
    )
    update(
        CONNECTOR.conversations(),
        conversation_id,
        CONVERSATIONS.to_fields({"message_count": sequence, "updated_at": iso(now)}),
    )
    return CONVERSATION_MESSAGES.to_public(row)


# =========================
# Conversations
# =========================
def _serialize(record: Dict[str, Any], with_messages: bool = False) -> Dict[str, Any]:
    convo = CONVERSATIONS.to_public(record)
    convo["ai_enabled"] = bool(convo.get("ai_enabled"))
    if with_messages:
        convo["messages"] = get_messages(record["id"])
    return convo


def _complete_others(phone: str, keep_id: str, now: datetime) -> int:
    query = Query().eq(_col("PHONE_NUMBER"), phone).eq(_col("STATUS"), ACTIVE)
    closed = 0
    for rec in select(CONNECTOR.conversations(), query):
        if rec["id"] == keep_id:
            continue
        update(
            CONNECTOR.conversations(),
            rec["id"],
            CONVERSATIONS.to_fields({"status": COMPLETED, "updated_at": iso(now)}),
        )
        closed += 1
    if closed:
        logger.warning("🧹 Closed %s extra active conversation(s) for %s", closed, phone)
    return closed


def resolve_active_conversation(phone: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Find-or-create the single active conversation for ``phone``.

    Callers hold the phone lock. When more than one active row exists the most
    recently updated one wins and the rest are completed.
    """
    now = now or utc_now()
    handle = CONNECTOR.conversations()
    active = select(
        handle,
        Query().eq(_col("PHONE_NUMBER"), phone).eq(_col("STATUS"), ACTIVE),
        sort=[f"-{_col('UPDATED_AT')}"],
    )
    if active:
        keep = active[0]
        if len(active) > 1:
            _complete_others(phone, keep["id"], now)
        return keep

    lead = leads.find_latest_lead_by_phone(phone)
    record = create(
        handle,
        CONVERSATIONS.to_fields(
            {
                "phone_number": phone,
                "source": (lead or {}).get("source") or DEFAULT_SOURCE,
                "lead_id": (lead or {}).get("id"),
                "ai_enabled": True,
                "status": ConversationStatus.ACTIVE,
                "message_count": 0,
                "created_at": iso(now),
                "updated_at": iso(now),
            }
        ),
    )
    logger.info("✨ Created conversation %s for %s (lead=%s)", record["id"], phone, (lead or {}).get("id"))
    return record


def get_conversation(conversation_id: str) -> Dict[str, Any]:
    record = get(CONNECTOR.conversations(), conversation_id)
    if not record:
        raise NotFoundError("Conversation not found", detail={"id": conversation_id})
    return _serialize(record, with_messages=True)


def list_conversations(status: Optional[str] = None) -> List[Dict[str, Any]]:
    query = Query()
    if status:
        if status not in VALID_STATUSES:
            raise ValidationError("Invalid status", detail={"status": status})
        query.eq(_col("STATUS"), status)
    records = select(CONNECTOR.conversations(), query, sort=[f"-{_col('UPDATED_AT')}"])
    return [_serialize(r) for r in records]


def _set_status(conversation_id: str, status: str, now: datetime) -> Dict[str, Any]:
    return update(
        CONNECTOR.conversations(),
        conversation_id,
        CONVERSATIONS.to_fields({"status": status, "updated_at": iso(now)}),
    )


def _tag_partner(record: Dict[str, Any], body: str, now: datetime) -> Dict[str, Any]:
    """Mark a conversation that started from a partner card; callers hold the phone lock."""
    if record["fields"].get(_col("PARTNER_ID")) or not intake.mentions_partner_card(body):
        return record
    logger.info("🎯 Partner card mention on conversation %s: %s", record["id"], body[:80])
    values: Dict[str, Any] = {"source": PARTNER_CARD_SOURCE, "updated_at": iso(now)}
    partner = intake.match_partner(body)
    if partner:
        values.update(partner)
    return update(CONNECTOR.conversations(), record["id"], CONVERSATIONS.to_fields(values))


def _partner_context(fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    name = fields.get(_col("PARTNER_NAME"))
    if not name:
        return None
    return {"partner_name": name, "coupon_code": fields.get(_col("COUPON_CODE"))}


def _capture_lead(record: Dict[str, Any], messages: List[Dict[str, Any]], phone: str, now: datetime) -> Dict[str, Any]:
    """
    Create (or link the deduplicated) lead once the customer has texted a
    name, email and street address. Only conversations without a lead qualify.
    """
    fields = record["fields"]
    if fields.get(_col("LEAD_ID")):
        return record
    info = intake.extract_customer_info(messages)
    if not intake.has_lead_details(info):
        return record

    partner_id = fields.get(_col("PARTNER_ID"))
    payload = {
        "source": LeadSource.PARTNER.value if partner_id else LeadSource.WEBSITE.value,
        "phone": phone,
        "name": info["name"],
        "email": info["email"],
        "location": info["address"],
        "notes": intake.lead_notes(info),
        "partner_id": partner_id,
    }
    try:
        lead, created = leads.create_lead(payload, now=now)
    except PersistenceError as exc:
        logger.error("Lead capture for conversation %s failed: %s", record["id"], exc)
        return record

    logger.info(
        "✅ %s lead %s from conversation %s (name=%s, email=%s)",
        "Created" if created else "Linked",
        lead["id"],
        record["id"],
        info["name"],
        info["email"],
    )
    return update(
        CONNECTOR.conversations(),
        record["id"],
        CONVERSATIONS.to_fields({"lead_id": lead["id"], "updated_at": iso(now)}),
    )


# =========================
# Inbound
# =========================
def handle_inbound_sms(payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Process one inbound SMS webhook payload (``From``, ``Body``, ``MessageSid``).

    Returns ``{"status": ..., "conversation_id": ...}`` where status is one of
    ``duplicate``, ``manual``, ``no_reply``, ``replied``, ``escalated``.
    """
    from_phone = (payload.get("From") or "").strip()
    body = (payload.get("Body") or "").strip()
    sid = (payload.get("MessageSid") or "").strip() or None
    if not from_phone or not body:
        raise ValidationError("Missing required fields")
    phone = normalize_phone(from_phone)
    if not phone:
        raise ValidationError("Invalid From number", detail={"From": from_phone})

    store = get_store()
    if store.seen(sid, namespace="sms"):
        logger.info("♻️ Duplicate inbound SMS %s ignored", sid)
        return {"status": "duplicate", "conversation_id": None}

    now = now or utc_now()
    logger.info("📱 Inbound SMS from %s: %s", phone, body[:80])
    try:
        with _phone_lock(phone):
            convo = resolve_active_conversation(phone, now)
            history = get_messages(convo["id"])
            append_message(convo["id"], MessageRole.USER, body, now=now, provider_sid=sid)
    except Exception:
        store.forget(sid, namespace="sms")
        raise

    with _phone_lock(phone):
        convo = _tag_partner(convo, body, now)
        convo = _capture_lead(convo, [*history, {"role": MessageRole.USER.value, "content": body}], phone, now)

    convo_id = convo["id"]
    fields = convo["fields"]
    lead_id = fields.get(_col("LEAD_ID"))
    display = format_display(phone)

    if not (fields.get(_col("AI_ENABLED")) and ai.is_ai_enabled()):
        notify_admin(
            f'💬 Inbound SMS from {display}:\n"{body}"\n\n(AI is disabled - manual response needed)',
            message_type="ai_dispatcher_inbound",
        )
        return {"status": "manual", "conversation_id": convo_id}

    try:
        reply = ai.generate(body, history, partner=_partner_context(fields))
    except Exception as exc:
        logger.error("AI generation failed for %s: %s", phone, exc, exc_info=True)
        with _phone_lock(phone):
            append_message(convo_id, MessageRole.SYSTEM, AI_ERROR_NOTE, now=now)
            _set_status(convo_id, ESCALATED, now)
        notify_admin(
            f'⚠️ AI Dispatcher Error!\nPhone: {display}\nMessage: "{body}"\n\nError: {exc}\n\nPlease respond manually.',
            message_type="ai_dispatcher_error",
        )
        return {"status": "escalated", "conversation_id": convo_id}

    if not reply:
        logger.warning("⚠️ AI returned empty response for %s", phone)
        return {"status": "no_reply", "conversation_id": convo_id}

    escalate = ai.should_escalate(reply)
    with _phone_lock(phone):
        append_message(convo_id, MessageRole.ASSISTANT, reply, now=now)
        if escalate:
            _set_status(convo_id, ESCALATED, now)

    try:
        send_customer_sms(phone, reply, lead_id=lead_id, message_type="ai_dispatcher")
    except UpstreamError as exc:
        logger.error("Reply delivery to %s failed: %s", phone, exc)
        with _phone_lock(phone):
            append_message(convo_id, MessageRole.SYSTEM, DELIVERY_ERROR_NOTE, now=now)
            _set_status(convo_id, ESCALATED, now)
        notify_admin(
            f'⚠️ AI reply not delivered!\nPhone: {display}\nMessage: "{body}"\n\nError: {exc}\n\nPlease respond manually.',
            message_type="ai_dispatcher_error",
        )
        return {"status": "escalated", "conversation_id": convo_id}

    if escalate:
        notify_admin(
            f'🚨 Customer escalation needed!\nPhone: {display}\nLast message: "{body}"\n\nAI Response: "{reply}"',
            message_type="ai_dispatcher_escalation",
        )
        logger.info("🚨 Conversation %s escalated", convo_id)
        return {"status": "escalated", "conversation_id": convo_id}

    logger.info("✅ AI responded to %s", phone)
    return {"status": "replied", "conversation_id": convo_id}


# =========================
# Operator actions
# =========================
def update_conversation(
    conversation_id: str,
    status: Optional[str] = None,
    ai_enabled: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Direct status / ai_enabled write; reopening completes any other active thread."""
    if status is None and ai_enabled is None:
        raise ValidationError("Invalid status")
    if status is not None and status not in VALID_STATUSES:
        raise ValidationError("Invalid status", detail={"status": status})

    now = now or utc_now()
    handle = CONNECTOR.conversations()
    record = get(handle, conversation_id)
    if not record:
        raise NotFoundError("Conversation not found", detail={"id": conversation_id})
    phone = record["fields"].get(_col("PHONE_NUMBER")) or conversation_id

    values: Dict[str, Any] = {"updated_at": iso(now)}
    if status is not None:
        values["status"] = status
    if ai_enabled is not None:
        values["ai_enabled"] = bool(ai_enabled)

    with _phone_lock(phone):
        updated = update(handle, conversation_id, CONVERSATIONS.to_fields(values))
        if status == ACTIVE:
            _complete_others(phone, conversation_id, now)
    logger.info("✏️ Conversation %s updated: %s", conversation_id, values)
    return _serialize(updated)


def operator_reply(conversation_id: str, message: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Send an operator-authored SMS, then append it; status is unchanged."""
    text = (message or "").strip()
    if not text:
        raise ValidationError("Missing conversationId or message")

    record = get(CONNECTOR.conversations(), conversation_id)
    if not record:
        raise NotFoundError("Conversation not found", detail={"id": conversation_id})
    fields = record["fields"]
    phone = fields.get(_col("PHONE_NUMBER"))

    result = send_customer_sms(phone, text, lead_id=fields.get(_col("LEAD_ID")), message_type="admin_reply")
    with _phone_lock(phone):
        msg = append_message(
            conversation_id,
            MessageRole.ASSISTANT,
            text,
            now=now,
            provider_sid=result.get("sid"),
            sent_by="admin",
        )
    logger.info("👤 Operator reply sent on conversation %s", conversation_id)
    return msg
