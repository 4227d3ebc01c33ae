"""
Credit Ledger
-------------
Partner balance mutations derived from referral status transitions.

Balance changes happen only on a net move into or out of ``converted``:
into-converted credits the referral amount, out-of-converted debits it and
clamps the balance at zero. The stored referral status is the authoritative
"previous" status, so replaying a transition is a no-op.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from leadengine import leads
from leadengine.config import settings
from leadengine.contacts import normalize_phone
from leadengine.datastore import CONNECTOR, Query, count, create, delete, first, get, update
from leadengine.errors import NotFoundError, ValidationError
from leadengine.idempotency import keyed_lock
from leadengine.runtime import get_logger, iso, utc_now
from leadengine.schema import CREDIT_LEDGER, PARTNERS, REFERRALS, LeadSource, ReferralStatus
from leadengine.sms_gateway import notify_partner

logger = get_logger("ledger")

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
CONVERTED = ReferralStatus.CONVERTED.value
VALID_STATUSES = tuple(s.value for s in ReferralStatus)


def money(value: Any) -> Decimal:
    """Coerce a stored/posted amount into a cent-rounded Decimal."""
    if value in (None, ""):
        return ZERO
    try:
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid money amount", detail={"value": value}) from exc


def apply_credit_transition(balance: Any, previous_status: Optional[str], new_status: str, amount: Any) -> Decimal:
    current = money(balance)
    credit = money(amount)
    if new_status == CONVERTED and previous_status != CONVERTED:
        return money(current + credit)
    if new_status != CONVERTED and previous_status == CONVERTED:
        return max(ZERO, money(current - credit))
    return current


def _partner_name(fields: Dict[str, Any]) -> str:
    return (
        fields.get(PARTNERS.field_name("LOCATION_NAME"))
        or fields.get(PARTNERS.field_name("COMPANY_NAME"))
        or "Partner"
    )


# =========================
# Create / delete
# =========================
def create_referral(
    partner_id: Optional[str],
    client_name: Optional[str],
    client_phone: Optional[str],
    notes: Optional[str] = None,
    credit_amount: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not (partner_id and (client_name or "").strip() and (client_phone or "").strip()):
        raise ValidationError("partner_id, client_name and client_phone are required")
    phone = normalize_phone(client_phone)
    if not phone:
        raise ValidationError("Invalid client_phone", detail={"client_phone": client_phone})
    amount = money(credit_amount) if credit_amount not in (None, "") else money(settings().DEFAULT_REFERRAL_CREDIT)
    if amount < ZERO:
        raise ValidationError("credit_amount must be positive", detail={"credit_amount": str(amount)})

    partner = get(CONNECTOR.partners(), partner_id)
    if not partner:
        raise NotFoundError("Partner not found", detail={"id": partner_id})

    now = now or utc_now()
    lead, _ = leads.create_lead(
        {
            "source": LeadSource.PARTNER.value,
            "phone": phone,
            "name": client_name,
            "notes": notes,
            "partner_id": partner_id,
        },
        now=now,
    )
    record = create(
        CONNECTOR.referrals(),
        REFERRALS.to_fields(
            {
                "partner_id": partner_id,
                "client_name": client_name.strip(),
                "client_phone": phone,
                "notes": notes,
                "status": ReferralStatus.PENDING,
                "credit_amount": float(amount),
                "lead_id": lead["id"],
                "created_at": iso(now),
                "updated_at": iso(now),
            }
        ),
    )
    referral = REFERRALS.to_public(record)
    logger.info("🤝 Referral %s created for partner %s (%s)", referral["id"], partner_id, phone)

    partner_phone = partner["fields"].get(PARTNERS.field_name("PHONE"))
    if partner_phone:
        notify_partner(
            partner_phone,
            f"Thanks {_partner_name(partner['fields'])}! We got your referral for {client_name.strip()}. "
            f"You'll earn ${amount:.2f} in credit when they book. - {settings().BUSINESS_NAME}",
            message_type="referral_received",
        )
    return referral


def delete_referral(referral_id: str) -> bool:
    """Admin hard delete; never touches the partner balance."""
    if not referral_id:
        raise ValidationError("Missing referral ID")
    deleted = delete(CONNECTOR.referrals(), referral_id)
    logger.info("🗑️ Referral %s delete → %s", referral_id, deleted)
    return deleted


# =========================
# Transition
# =========================
def _converted_count(partner_id: str) -> int:
    query = Query().eq(REFERRALS.field_name("PARTNER_ID"), partner_id).eq(REFERRALS.field_name("STATUS"), CONVERTED)
    return count(CONNECTOR.referrals(), query)


def _transition_key(referral_id: str, fields: Dict[str, Any], stored_status: str, new_status: str) -> str:
    """Identifies one move away from one stored version of a referral."""
    version = fields.get(REFERRALS.field_name("UPDATED_AT")) or fields.get(REFERRALS.field_name("CREATED_AT")) or ""
    return f"{referral_id}:{stored_status}>{new_status}@{version}"


def transition_referral(
    referral_id: str,
    new_status: str,
    previous_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Move a referral to ``new_status`` and apply the matching balance change.

    The partner balance and its Credit Ledger row are written before the
    referral status. A retry after a failed status write finds the ledger row
    for the same transition and finishes the status write without crediting
    again.

    Returns ``{"referral", "previous_status", "balance_before", "balance_after", "delta"}``.
    """
    if not referral_id or not new_status:
        raise ValidationError("Missing required fields")
    if new_status not in VALID_STATUSES:
        raise ValidationError("Invalid status", detail={"status": new_status})

    now = now or utc_now()
    referrals_h = CONNECTOR.referrals()
    record = get(referrals_h, referral_id)
    if not record:
        raise NotFoundError("Referral not found", detail={"id": referral_id})
    partner_id = record["fields"].get(REFERRALS.field_name("PARTNER_ID"))

    with keyed_lock(f"partner:{partner_id or referral_id}"):
        # re-read under the lock
        record = get(referrals_h, referral_id)
        if not record:
            raise NotFoundError("Referral not found", detail={"id": referral_id})
        fields = record["fields"]
        stored_status = fields.get(REFERRALS.field_name("STATUS")) or ReferralStatus.PENDING.value
        if previous_status and previous_status != stored_status:
            logger.warning(
                "Referral %s: caller previous_status=%s disagrees with stored=%s; using stored",
                referral_id,
                previous_status,
                stored_status,
            )
        amount = money(fields.get(REFERRALS.field_name("CREDIT_AMOUNT")))

        changes: Dict[str, Any] = {"status": new_status, "updated_at": iso(now)}
        if new_status != CONVERTED:
            changes["converted_at"] = None
        elif stored_status != CONVERTED or not fields.get(REFERRALS.field_name("CONVERTED_AT")):
            changes["converted_at"] = iso(now)

        partner = get(CONNECTOR.partners(), partner_id) if partner_id else None
        if not partner:
            logger.warning("Referral %s has no partner record (%s); balance untouched", referral_id, partner_id)
            updated = update(referrals_h, referral_id, REFERRALS.to_fields(changes))
            return {
                "referral": REFERRALS.to_public(updated),
                "previous_status": stored_status,
                "balance_before": None,
                "balance_after": None,
                "delta": "0.00",
            }

        conversions = _converted_count(partner_id)
        if stored_status == CONVERTED:
            conversions -= 1
        if new_status == CONVERTED:
            conversions += 1

        ledger_h = CONNECTOR.credit_ledger()
        key = _transition_key(referral_id, fields, stored_status, new_status)
        applied = first(ledger_h, Query().eq(CREDIT_LEDGER.field_name("TRANSITION_KEY"), key))
        if applied:
            logger.info("♻️ Referral %s transition %s already credited; finishing status write", referral_id, key)
            after = money(applied["fields"].get(CREDIT_LEDGER.field_name("BALANCE_AFTER")))
            delta = money(applied["fields"].get(CREDIT_LEDGER.field_name("DELTA")))
            before = after - delta
        else:
            before = money(partner["fields"].get(PARTNERS.field_name("CREDIT_BALANCE")))
            after = apply_credit_transition(before, stored_status, new_status, amount)
            delta = after - before
            update(
                CONNECTOR.partners(),
                partner_id,
                PARTNERS.to_fields({"credit_balance": float(after), "total_conversions": conversions}),
            )
            if delta != ZERO:
                create(
                    ledger_h,
                    CREDIT_LEDGER.to_fields(
                        {
                            "partner_id": partner_id,
                            "referral_id": referral_id,
                            "delta": float(delta),
                            "balance_after": float(after),
                            "previous_status": stored_status,
                            "new_status": new_status,
                            "transition_key": key,
                            "created_at": iso(now),
                        }
                    ),
                )

        updated = update(referrals_h, referral_id, REFERRALS.to_fields(changes))

    logger.info(
        "💰 Referral %s %s → %s | partner %s balance %s → %s",
        referral_id,
        stored_status,
        new_status,
        partner_id,
        before,
        after,
    )

    if new_status == CONVERTED and stored_status != CONVERTED:
        partner_phone = partner["fields"].get(PARTNERS.field_name("PHONE"))
        if partner_phone:
            notify_partner(
                partner_phone,
                f"🎉 Great news {_partner_name(partner['fields'])}! Your referral just booked. "
                f"You earned ${amount:.2f} credit. New balance: ${after:.2f}. "
                f"Referrals converted: {conversions}. Thanks for partnering with {settings().BUSINESS_NAME}!",
                message_type="referral_converted",
            )

    return {
        "referral": REFERRALS.to_public(updated),
        "previous_status": stored_status,
        "balance_before": f"{before:.2f}",
        "balance_after": f"{after:.2f}",
        "delta": f"{delta:.2f}",
    }
