import httpx
import pytest

from leadengine import sms_gateway as gw
from leadengine.datastore import CONNECTOR, select
from leadengine.errors import SmsGatewayError
from leadengine.schema import SMS_LOG


@pytest.fixture
def twilio_env(set_env):
    set_env(TWILIO_ACCOUNT_SID="AC123", TWILIO_AUTH_TOKEN="secret", TWILIO_PHONE_NUMBER="+17195550100")


def _log_rows():
    return [SMS_LOG.to_public(r) for r in select(CONNECTOR.sms_log())]


def test_validate_payload_requires_from_number():
    with pytest.raises(SmsGatewayError) as exc:
        gw._validate_payload({"To": "+17195551234", "Body": "hello"})
    assert "From is required" in str(exc.value)


def test_validate_payload_rejects_long_body():
    with pytest.raises(SmsGatewayError) as exc:
        gw._validate_payload({"To": "+1", "From": "+2", "Body": "x" * 1601})
    assert "exceeds 1600" in str(exc.value)


def test_send_without_credentials_fails_and_is_logged(set_env):
    set_env(TWILIO_PHONE_NUMBER="+17195550100")

    with pytest.raises(SmsGatewayError):
        gw.send_customer_sms("7195551234", "hello", lead_id="rec_1", message_type="ai_dispatcher")

    rows = _log_rows()
    assert rows[0]["status"] == "failed"
    assert rows[0]["to"] == "+17195551234"
    assert rows[0]["lead_id"] == "rec_1"


def test_send_posts_and_logs_success(monkeypatch, twilio_env):
    captured = {}

    def fake_http_post(url, data, auth, timeout):
        captured.update(url=url, data=data, auth=auth)
        return {"sid": "SM123", "status": "queued"}

    monkeypatch.setattr(gw, "_http_post", fake_http_post)

    result = gw.send_partner_sms("(719) 555-0000", "  Thanks!  ", message_type="referral_received")

    assert result["sid"] == "SM123"
    assert captured["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert captured["data"] == {"To": "+17195550000", "From": "+17195550100", "Body": "Thanks!"}
    assert captured["auth"] == ("AC123", "secret")
    row = _log_rows()[0]
    assert (row["status"], row["recipient_type"], row["provider_sid"]) == ("sent", "partner", "SM123")


def test_rejected_provider_status_raises(monkeypatch, twilio_env):
    monkeypatch.setattr(gw, "_http_post", lambda *a, **k: {"sid": "SM9", "status": "failed"})

    with pytest.raises(SmsGatewayError):
        gw.send_customer_sms("7195551234", "hello")
    assert _log_rows()[0]["status"] == "failed"


def test_http_error_body_is_exposed(monkeypatch, twilio_env):
    def fake_post(url, data=None, auth=None, timeout=None):
        return httpx.Response(400, json={"message": "Invalid number"}, request=httpx.Request("POST", url))

    monkeypatch.setattr(gw.httpx, "post", fake_post)

    with pytest.raises(SmsGatewayError) as exc:
        gw.send_customer_sms("7195551234", "hello")

    assert exc.value.http_status == 400
    assert exc.value.body == {"message": "Invalid number"}
    assert "Invalid number" in str(exc.value)


def test_dry_run_skips_transport(monkeypatch, set_env):
    set_env(SMS_DRY_RUN="1", TWILIO_PHONE_NUMBER="+17195550100")

    def boom(*a, **k):
        raise AssertionError("network should not be used")

    monkeypatch.setattr(gw.httpx, "post", boom)

    result = gw.send_customer_sms("7195551234", "hello")
    assert result["sid"].startswith("SM_fake_")


def test_admin_send_requires_admin_number():
    with pytest.raises(SmsGatewayError):
        gw.send_admin_sms("ping")
    assert gw.notify_admin("ping") is False


def test_notify_helpers_swallow_gateway_errors(monkeypatch):
    def failing(*a, **k):
        raise SmsGatewayError("down")

    monkeypatch.setattr(gw, "send_partner_sms", failing)
    monkeypatch.setattr(gw, "send_customer_sms", failing)

    assert gw.notify_partner("+17195550000", "hi") is False
    assert gw.notify_customer("+17195551234", "hi") is False
