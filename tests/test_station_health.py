from datetime import datetime, timedelta, timezone

import pytest

from leadengine import station_health
from leadengine.datastore import CONNECTOR, create, select, update
from leadengine.errors import SmsGatewayError
from leadengine.runtime import iso
from leadengine.schema import PARTNERS, RUN_LOGS, STATION_ALERTS

NOW = datetime(2025, 6, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(phone, body, message_type=None):
        sent.append({"phone": phone, "body": body, "type": message_type})
        return {"status": "sent", "sid": "SM1"}

    monkeypatch.setattr(station_health, "send_partner_sms", fake_send)
    return sent


def _partner(**values):
    base = {"phone": "+17195550000", "location_name": "Joe's Diner", "total_taps": 5}
    base.update(values)
    return create(CONNECTOR.partners(), PARTNERS.to_fields(base))


def _alerts():
    return [STATION_ALERTS.to_public(r) for r in select(CONNECTOR.station_alerts())]


def test_days_since_floors_and_handles_missing():
    assert station_health.days_since(iso(NOW - timedelta(days=14, hours=23)), NOW) == 14
    assert station_health.days_since(iso(NOW - timedelta(hours=23)), NOW) == 0
    assert station_health.days_since(None, NOW) is None


def test_idle_sasquatch_station_gets_one_alert(outbox):
    partner = _partner(last_sasquatch_tap_at=iso(NOW - timedelta(days=20)))

    results = station_health.run_station_health(now=NOW)

    assert results["partners_checked"] == 1
    assert results["alerts_sent"] == 1
    assert results["sasquatch_inactive"] == 1
    assert results["review_inactive"] == 0
    assert outbox[0]["type"] == "station_health"
    assert "Sasquatch station hasn't had any taps" in outbox[0]["body"]
    assert [(a["partner_id"], a["station_type"], a["alert_type"]) for a in _alerts()] == [
        (partner["id"], "sasquatch", "inactive")
    ]


def test_zero_taps_never_flags_sasquatch(outbox):
    _partner(total_taps=0, last_sasquatch_tap_at=iso(NOW - timedelta(days=90)))

    results = station_health.run_station_health(now=NOW)

    assert results["sasquatch_inactive"] == 0
    assert outbox == []


def test_missing_tap_timestamp_is_not_inactive(outbox):
    _partner(google_review_url="https://g.page/r/joe")

    results = station_health.run_station_health(now=NOW)

    assert results["sasquatch_inactive"] == 0
    assert results["review_inactive"] == 0
    assert outbox == []


def test_review_station_requires_review_url(outbox):
    _partner(total_taps=0, last_review_tap_at=iso(NOW - timedelta(days=30)))

    assert station_health.run_station_health(now=NOW)["review_inactive"] == 0
    assert outbox == []


def test_both_stations_idle_send_one_combined_message(outbox):
    partner = _partner(
        last_sasquatch_tap_at=iso(NOW - timedelta(days=20)),
        last_review_tap_at=iso(NOW - timedelta(days=15)),
        google_review_url="https://g.page/r/joe",
    )

    results = station_health.run_station_health(now=NOW)

    assert results["alerts_sent"] == 1
    assert len(outbox) == 1
    assert "both your Sasquatch station and Google review station" in outbox[0]["body"]
    assert sorted(a["station_type"] for a in _alerts() if a["partner_id"] == partner["id"]) == ["review", "sasquatch"]


def test_cooldown_suppresses_repeat_alerts(outbox):
    _partner(last_sasquatch_tap_at=iso(NOW - timedelta(days=20)))

    station_health.run_station_health(now=NOW)
    repeat = station_health.run_station_health(now=NOW + timedelta(days=3))

    assert repeat["sasquatch_inactive"] == 1
    assert repeat["alerts_sent"] == 0
    assert len(outbox) == 1

    after_cooldown = station_health.run_station_health(now=NOW + timedelta(days=8))
    assert after_cooldown["alerts_sent"] == 1
    assert len(outbox) == 2


def test_cooldown_is_per_station_type(outbox):
    partner = _partner(last_sasquatch_tap_at=iso(NOW - timedelta(days=20)), google_review_url="https://g.page/r/joe")
    station_health.run_station_health(now=NOW)

    update(CONNECTOR.partners(), partner["id"], PARTNERS.to_fields({"last_review_tap_at": iso(NOW - timedelta(days=16))}))
    later = station_health.run_station_health(now=NOW + timedelta(days=2))

    assert later["alerts_sent"] == 1
    assert "Google review station hasn't had any taps" in outbox[-1]["body"]


def test_partners_without_phone_are_skipped(outbox):
    _partner(phone=None, last_sasquatch_tap_at=iso(NOW - timedelta(days=20)))

    results = station_health.run_station_health(now=NOW)

    assert results["partners_checked"] == 0
    assert outbox == []


def test_send_failure_is_collected_and_not_recorded(monkeypatch):
    _partner(last_sasquatch_tap_at=iso(NOW - timedelta(days=20)))

    def failing(phone, body, message_type=None):
        raise SmsGatewayError("SMS gateway HTTP 500", status_code=500)

    monkeypatch.setattr(station_health, "send_partner_sms", failing)

    results = station_health.run_station_health(now=NOW)

    assert results["alerts_sent"] == 0
    assert len(results["errors"]) == 1
    assert _alerts() == []
    log = RUN_LOGS.to_public(select(CONNECTOR.run_logs())[0])
    assert log["type"] == "STATION_HEALTH"
    assert log["status"] == "PARTIAL"


def test_display_name_fallbacks():
    assert station_health.partner_name({"location_name": None, "company_name": "Acme"}) == "Acme"
    assert station_health.partner_name({}) == "Partner"
