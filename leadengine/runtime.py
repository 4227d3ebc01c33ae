"""
Lead Engine Runtime Core
------------------------
Centralized utilities for logging, retries, and time handling.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar
from zoneinfo import ZoneInfo

T = TypeVar("T")

_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def mask_secret(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    if value is None:
        env_level = os.getenv("LEADENGINE_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True


def get_logger(name: str = "leadengine") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def install_global_exception_hook() -> None:
    """Route uncaught exceptions through logging (full traceback)."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        get_logger("uncaught").error(
            "Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb)
        )

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True


def log_core_env() -> None:
    """Logs a masked environment summary once per process."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    from leadengine.config import settings

    s = settings()
    get_logger("env").info(
        "Core env summary:\n"
        "• Airtable Key=%s | Base=%s | InMemory=%s\n"
        "• Twilio SID=%s | From=%s | DryRun=%s\n"
        "• OpenAI Key=%s | Model=%s | AI Dispatcher=%s\n"
        "• Redis=%s | CronSecret=%s",
        mask_secret(s.AIRTABLE_API_KEY),
        s.AIRTABLE_BASE_ID or "<missing>",
        s.FORCE_IN_MEMORY,
        mask_secret(s.TWILIO_ACCOUNT_SID),
        s.TWILIO_PHONE_NUMBER or "<missing>",
        s.SMS_DRY_RUN,
        mask_secret(s.OPENAI_API_KEY),
        s.OPENAI_MODEL,
        s.AI_DISPATCHER_ENABLED,
        bool(s.REDIS_URL),
        bool(s.CRON_SECRET),
    )
    _CORE_ENV_LOGGED = True


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Serialize a datetime as an ISO-8601 UTC string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def iso_now() -> str:
    return iso(utc_now())


def parse_ts(value) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into aware UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def business_tz() -> ZoneInfo:
    from leadengine.config import settings

    return ZoneInfo(settings().BUSINESS_TZ)


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    attempt = 0
    exceptions = tuple(exceptions)
    while True:
        try:
            return func()
        except exceptions as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s, sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
