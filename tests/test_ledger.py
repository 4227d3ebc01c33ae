from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from leadengine import ledger
from leadengine.datastore import CONNECTOR, create, get, select
from leadengine.errors import NotFoundError, PersistenceError, ValidationError
from leadengine.schema import CREDIT_LEDGER, LEADS, PARTNERS, REFERRALS

T0 = datetime(2025, 6, 10, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def partner_sms(monkeypatch):
    sent = []
    monkeypatch.setattr(
        ledger,
        "notify_partner",
        lambda phone, body, message_type=None: sent.append({"phone": phone, "body": body, "type": message_type}) or True,
    )
    return sent


def _partner(balance=0, phone="+17195550000", name="Joe's Diner"):
    return create(
        CONNECTOR.partners(),
        PARTNERS.to_fields({"phone": phone, "location_name": name, "credit_balance": balance, "total_taps": 3}),
    )


def _balance(partner_id):
    return get(CONNECTOR.partners(), partner_id)["fields"][PARTNERS.field_name("CREDIT_BALANCE")]


@pytest.mark.parametrize(
    "balance, previous, new, amount, expected",
    [
        ("0", "pending", "converted", "25", "25.00"),
        ("25", "converted", "lost", "25", "0.00"),
        ("10", "converted", "lost", "25", "0.00"),
        ("40", "converted", "booked", "25", "15.00"),
        ("40", "converted", "converted", "25", "40.00"),
        ("40", "pending", "booked", "25", "40.00"),
        ("0.10", "pending", "converted", "0.20", "0.30"),
    ],
)
def test_apply_credit_transition(balance, previous, new, amount, expected):
    assert ledger.apply_credit_transition(balance, previous, new, amount) == Decimal(expected)


def test_create_referral_ingests_partner_lead(partner_sms):
    partner = _partner()
    referral = ledger.create_referral(partner["id"], "Sam Client", "719-555-1111", notes="Back bedroom", now=T0)

    assert referral["status"] == "pending"
    assert referral["credit_amount"] == 20.0
    assert referral["client_phone"] == "+17195551111"

    lead = LEADS.to_public(get(CONNECTOR.leads(), referral["lead_id"]))
    assert lead["source"] == "partner"
    assert lead["partner_id"] == partner["id"]
    assert lead["name"] == "Sam Client"

    assert partner_sms[0]["type"] == "referral_received"
    assert "Joe's Diner" in partner_sms[0]["body"]
    assert "$20.00" in partner_sms[0]["body"]


def test_create_referral_validation(partner_sms):
    with pytest.raises(ValidationError):
        ledger.create_referral(None, "Sam", "7195551111")
    with pytest.raises(ValidationError):
        ledger.create_referral("rec_1", "  ", "7195551111")
    with pytest.raises(NotFoundError):
        ledger.create_referral("rec_missing", "Sam", "7195551111")
    assert select(CONNECTOR.referrals()) == []


def test_convert_then_lose_returns_balance_to_zero(partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount="25", now=T0)

    converted = ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(days=1))
    assert converted["balance_after"] == "25.00"
    assert converted["delta"] == "25.00"
    assert converted["referral"]["converted_at"] is not None
    assert _balance(partner["id"]) == 25.0
    assert get(CONNECTOR.partners(), partner["id"])["fields"][PARTNERS.field_name("TOTAL_CONVERSIONS")] == 1

    lost = ledger.transition_referral(referral["id"], "lost", "converted", now=T0 + timedelta(days=2))
    assert lost["balance_after"] == "0.00"
    assert lost["delta"] == "-25.00"
    assert lost["referral"]["converted_at"] is None
    assert _balance(partner["id"]) == 0.0
    assert get(CONNECTOR.partners(), partner["id"])["fields"][PARTNERS.field_name("TOTAL_CONVERSIONS")] == 0

    entries = [CREDIT_LEDGER.to_public(r) for r in select(CONNECTOR.credit_ledger())]
    assert [(e["delta"], e["balance_after"]) for e in entries] == [(25.0, 25.0), (-25.0, 0.0)]


def test_replayed_conversion_is_not_credited_twice(partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)

    ledger.transition_referral(referral["id"], "converted", "pending", now=T0)
    replay = ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(hours=1))

    assert replay["previous_status"] == "converted"
    assert replay["delta"] == "0.00"
    assert _balance(partner["id"]) == 25.0
    assert len(select(CONNECTOR.credit_ledger())) == 1
    assert [m["type"] for m in partner_sms].count("referral_converted") == 1


def test_debit_is_floored_at_zero(partner_sms):
    partner = _partner(balance=10)
    referral = create(
        CONNECTOR.referrals(),
        REFERRALS.to_fields(
            {"partner_id": partner["id"], "client_name": "Sam", "client_phone": "+17195551111", "status": "converted", "credit_amount": 25}
        ),
    )

    result = ledger.transition_referral(referral["id"], "lost", now=T0)

    assert result["balance_before"] == "10.00"
    assert result["balance_after"] == "0.00"
    assert _balance(partner["id"]) == 0.0


def test_converted_message_reports_balance_and_count(partner_sms):
    partner = _partner(balance=5)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)
    ledger.transition_referral(referral["id"], "converted", now=T0)

    body = partner_sms[-1]["body"]
    assert partner_sms[-1]["type"] == "referral_converted"
    assert "$25.00" in body
    assert "$30.00" in body
    assert "Referrals converted: 1" in body


def test_non_credit_moves_only_update_status(partner_sms):
    partner = _partner(balance=5)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", now=T0)

    result = ledger.transition_referral(referral["id"], "booked", now=T0)

    assert result["referral"]["status"] == "booked"
    assert result["delta"] == "0.00"
    assert _balance(partner["id"]) == 5.0
    assert select(CONNECTOR.credit_ledger()) == []


def test_transition_errors():
    with pytest.raises(ValidationError):
        ledger.transition_referral("", "converted")
    with pytest.raises(ValidationError):
        ledger.transition_referral("rec_1", "refunded")
    with pytest.raises(NotFoundError):
        ledger.transition_referral("rec_missing", "converted")


def test_orphan_referral_transitions_without_balance(partner_sms):
    referral = create(
        CONNECTOR.referrals(),
        REFERRALS.to_fields({"partner_id": "rec_gone", "client_name": "Sam", "status": "pending", "credit_amount": 20}),
    )

    result = ledger.transition_referral(referral["id"], "converted", now=T0)

    assert result["referral"]["status"] == "converted"
    assert result["balance_after"] is None
    assert partner_sms == []


def test_delete_referral_leaves_balance(partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)
    ledger.transition_referral(referral["id"], "converted", now=T0)

    assert ledger.delete_referral(referral["id"]) is True
    assert ledger.delete_referral(referral["id"]) is False
    assert _balance(partner["id"]) == 25.0
    with pytest.raises(ValidationError):
        ledger.delete_referral("")


def _fail_once(monkeypatch, table_name):
    """Make the next ledger ``update`` against ``table_name`` fail."""
    real_update = ledger.update
    failures = []

    def flaky_update(handle, record_id, fields):
        if handle.table_name == table_name and not failures:
            failures.append(record_id)
            raise PersistenceError(f"update failed on {table_name}")
        return real_update(handle, record_id, fields)

    monkeypatch.setattr(ledger, "update", flaky_update)
    return failures


def test_failed_partner_write_keeps_referral_retryable(monkeypatch, partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)
    failures = _fail_once(monkeypatch, CONNECTOR.partners().table_name)

    with pytest.raises(PersistenceError):
        ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(days=1))

    assert failures == [partner["id"]]
    assert REFERRALS.to_public(get(CONNECTOR.referrals(), referral["id"]))["status"] == "pending"
    assert _balance(partner["id"]) == 0.0
    assert select(CONNECTOR.credit_ledger()) == []

    retry = ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(days=1))

    assert retry["delta"] == "25.00"
    assert retry["referral"]["status"] == "converted"
    assert _balance(partner["id"]) == 25.0
    assert len(select(CONNECTOR.credit_ledger())) == 1


def test_failed_status_write_is_finished_without_second_credit(monkeypatch, partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)
    failures = _fail_once(monkeypatch, CONNECTOR.referrals().table_name)

    with pytest.raises(PersistenceError):
        ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(days=1))

    assert failures == [referral["id"]]
    assert REFERRALS.to_public(get(CONNECTOR.referrals(), referral["id"]))["status"] == "pending"
    assert _balance(partner["id"]) == 25.0

    retry = ledger.transition_referral(referral["id"], "converted", "pending", now=T0 + timedelta(days=1))

    assert retry["referral"]["status"] == "converted"
    assert retry["balance_before"] == "0.00"
    assert retry["balance_after"] == "25.00"
    assert _balance(partner["id"]) == 25.0
    assert len(select(CONNECTOR.credit_ledger())) == 1
    assert get(CONNECTOR.partners(), partner["id"])["fields"][PARTNERS.field_name("TOTAL_CONVERSIONS")] == 1


def test_round_trip_conversions_each_hit_the_ledger(partner_sms):
    partner = _partner(balance=0)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=25, now=T0)

    for day, status in enumerate(["converted", "lost", "converted"], start=1):
        ledger.transition_referral(referral["id"], status, now=T0 + timedelta(days=day))

    assert _balance(partner["id"]) == 25.0
    entries = [CREDIT_LEDGER.to_public(r) for r in select(CONNECTOR.credit_ledger())]
    assert [e["delta"] for e in entries] == [25.0, -25.0, 25.0]
    assert len({e["transition_key"] for e in entries}) == 3


def test_explicit_zero_credit_is_kept(partner_sms):
    partner = _partner(balance=5)
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount=0, now=T0)

    assert referral["credit_amount"] == 0.0
    assert "$0.00" in partner_sms[0]["body"]

    result = ledger.transition_referral(referral["id"], "converted", now=T0)
    assert result["delta"] == "0.00"
    assert _balance(partner["id"]) == 5.0


def test_blank_credit_uses_default(partner_sms):
    partner = _partner()
    referral = ledger.create_referral(partner["id"], "Sam", "7195551111", credit_amount="", now=T0)
    assert referral["credit_amount"] == 20.0
