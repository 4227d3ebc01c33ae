import pytest

from leadengine.config import reset_settings
from leadengine.datastore import reset_state
from leadengine.idempotency import reset_idempotency

_ENV_KEYS = [
    "AIRTABLE_API_KEY",
    "AIRTABLE_BASE_ID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "ADMIN_PHONE_NUMBER",
    "SMS_DRY_RUN",
    "ONESIGNAL_APP_ID",
    "ONESIGNAL_API_KEY",
    "OPENAI_API_KEY",
    "AI_DISPATCHER_ENABLED",
    "CRON_SECRET",
    "WEBHOOK_TOKEN",
    "ADMIN_API_TOKEN",
    "REDIS_URL",
    "BUSINESS_TZ",
    "DEFAULT_REFERRAL_CREDIT",
]


@pytest.fixture(autouse=True)
def _reset_state(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LEADENGINE_FORCE_IN_MEMORY", "1")
    reset_settings()
    reset_state()
    reset_idempotency()
    yield
    reset_settings()
    reset_state()
    reset_idempotency()


@pytest.fixture
def set_env(monkeypatch):
    """Set env vars and drop the cached Settings so they take effect."""

    def _set(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, str(value))
        reset_settings()

    return _set
