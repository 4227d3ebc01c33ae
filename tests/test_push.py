import httpx
import pytest

from leadengine import leads, push
from leadengine.datastore import CONNECTOR, count
from leadengine.errors import PushError


@pytest.fixture
def onesignal_env(set_env):
    set_env(ONESIGNAL_APP_ID="app-1", ONESIGNAL_API_KEY="key-1")


def _respond(monkeypatch, status_code, **kwargs):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers})
        return httpx.Response(status_code, request=httpx.Request("POST", url), **kwargs)

    monkeypatch.setattr(push.httpx, "post", fake_post)
    return calls


def test_send_push_broadcasts_to_subscribers(monkeypatch, onesignal_env):
    calls = _respond(monkeypatch, 200, json={"id": "n-1", "recipients": 2})

    assert push.send_push("New lead", "Pat", {"lead_id": "rec_1"}) == {"id": "n-1", "recipients": 2}
    assert calls[0]["json"]["included_segments"] == ["Subscribed Users"]
    assert calls[0]["json"]["data"] == {"lead_id": "rec_1"}
    assert calls[0]["headers"]["Authorization"] == "Basic key-1"


def test_plain_text_success_body_is_not_an_error(monkeypatch, onesignal_env):
    _respond(monkeypatch, 200, text="OK")

    assert push.send_push("New lead", "Pat") == {"raw": "OK"}
    assert push.notify("New lead", "Pat") is True


def test_notify_swallows_push_failures(monkeypatch, onesignal_env):
    _respond(monkeypatch, 500, text="boom")

    with pytest.raises(PushError):
        push.send_push("New lead", "Pat")
    assert push.notify("New lead", "Pat") is False


def test_notify_without_credentials_returns_false():
    assert push.notify("New lead", "Pat") is False


def test_lead_is_created_when_push_answers_with_plain_text(monkeypatch, onesignal_env):
    _respond(monkeypatch, 200, text="OK")

    lead, created = leads.create_lead({"source": "website", "phone": "7195551234", "name": "Pat"})

    assert created is True
    assert lead["phone"] == "+17195551234"
    assert count(CONNECTOR.leads()) == 1
