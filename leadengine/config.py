from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Optional

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


def env_decimal(key: str, default: str) -> Decimal:
    raw = env_str(key, default) or default
    try:
        return Decimal(raw)
    except Exception:
        return Decimal(default)


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    # Storage
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    FORCE_IN_MEMORY: bool

    # SMS gateway
    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_PHONE_NUMBER: Optional[str]
    ADMIN_PHONE_NUMBER: Optional[str]
    SMS_DRY_RUN: bool
    SMS_TIMEOUT_SEC: float

    # Push
    ONESIGNAL_APP_ID: Optional[str]
    ONESIGNAL_API_KEY: Optional[str]

    # LLM
    OPENAI_API_KEY: Optional[str]
    OPENAI_MODEL: str
    OPENAI_TEMPERATURE: float
    OPENAI_MAX_TOKENS: int
    OPENAI_TIMEOUT: float
    AI_DISPATCHER_ENABLED: bool

    # Auth
    CRON_SECRET: Optional[str]
    WEBHOOK_TOKEN: Optional[str]
    ADMIN_API_TOKEN: Optional[str]

    # Idempotency / locks
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    IDEMPOTENCY_TTL_SEC: int
    LOCK_TIMEOUT_SEC: int

    # Business rules
    BUSINESS_NAME: str
    BUSINESS_PHONE_DISPLAY: str
    BOOKING_URL: str
    BUSINESS_TZ: str
    DEFAULT_REFERRAL_CREDIT: Decimal
    LEAD_DEDUPE_HOURS: int
    STATION_INACTIVE_DAYS: int
    STATION_ALERT_COOLDOWN_DAYS: int


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("LEADENGINE_FORCE_IN_MEMORY", False),
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=env_str("TWILIO_AUTH_TOKEN"),
        TWILIO_PHONE_NUMBER=env_str("TWILIO_PHONE_NUMBER"),
        ADMIN_PHONE_NUMBER=env_str("ADMIN_PHONE_NUMBER"),
        SMS_DRY_RUN=env_bool("SMS_DRY_RUN", False),
        SMS_TIMEOUT_SEC=env_float("SMS_TIMEOUT_SEC", 15.0),
        ONESIGNAL_APP_ID=env_str("ONESIGNAL_APP_ID"),
        ONESIGNAL_API_KEY=env_str("ONESIGNAL_API_KEY"),
        OPENAI_API_KEY=env_str("OPENAI_API_KEY"),
        OPENAI_MODEL=env_str("OPENAI_MODEL", "gpt-4o-mini"),
        OPENAI_TEMPERATURE=env_float("OPENAI_TEMPERATURE", 0.7),
        OPENAI_MAX_TOKENS=env_int("OPENAI_MAX_TOKENS", 300),
        OPENAI_TIMEOUT=env_float("OPENAI_TIMEOUT", 20.0),
        AI_DISPATCHER_ENABLED=env_bool("AI_DISPATCHER_ENABLED", False),
        CRON_SECRET=env_str("CRON_SECRET"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        ADMIN_API_TOKEN=env_str("ADMIN_API_TOKEN"),
        REDIS_URL=env_str("REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        IDEMPOTENCY_TTL_SEC=env_int("IDEMPOTENCY_TTL_SEC", 24 * 60 * 60),
        LOCK_TIMEOUT_SEC=env_int("LOCK_TIMEOUT_SEC", 30),
        BUSINESS_NAME=env_str("BUSINESS_NAME", "Sasquatch Carpet Cleaning"),
        BUSINESS_PHONE_DISPLAY=env_str("BUSINESS_PHONE_DISPLAY", "(719) 249-8791"),
        BOOKING_URL=env_str("BOOKING_URL", "https://book.housecallpro.com/book/Sasquatch-Carpet-Cleaning-LLC"),
        BUSINESS_TZ=env_str("BUSINESS_TZ", "America/Denver"),
        DEFAULT_REFERRAL_CREDIT=env_decimal("DEFAULT_REFERRAL_CREDIT", "20.00"),
        LEAD_DEDUPE_HOURS=env_int("LEAD_DEDUPE_HOURS", 24),
        STATION_INACTIVE_DAYS=env_int("STATION_INACTIVE_DAYS", 14),
        STATION_ALERT_COOLDOWN_DAYS=env_int("STATION_ALERT_COOLDOWN_DAYS", 7),
    )


def reset_settings() -> None:
    """Drop the cached Settings so env changes (tests) take effect."""
    settings.cache_clear()
