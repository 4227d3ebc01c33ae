"""OneSignal push notifications to the operator app (best-effort)."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from leadengine.config import settings
from leadengine.errors import PushError
from leadengine.runtime import get_logger

logger = get_logger("push")

ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"


def send_push(heading: str, content: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Broadcast to subscribed operators; raises PushError on failure."""
    s = settings()
    if not (s.ONESIGNAL_APP_ID and s.ONESIGNAL_API_KEY):
        raise PushError("OneSignal credentials missing")

    payload = {
        "app_id": s.ONESIGNAL_APP_ID,
        "included_segments": ["Subscribed Users"],
        "headings": {"en": heading},
        "contents": {"en": content},
        "data": data or {},
    }
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Basic {s.ONESIGNAL_API_KEY}",
    }
    try:
        resp = httpx.post(ONESIGNAL_URL, json=payload, headers=headers, timeout=10)
    except httpx.HTTPError as exc:
        raise PushError(f"OneSignal transport error: {exc}") from exc
    if resp.is_error:
        raise PushError(f"OneSignal HTTP {resp.status_code}", detail=resp.text)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


def notify(heading: str, content: str, data: Optional[Dict[str, Any]] = None) -> bool:
    try:
        send_push(heading, content, data)
        logger.info("🔔 Push sent: %s", heading)
        return True
    except PushError as exc:
        logger.warning("⚠️ Push notification skipped (%s): %s", heading, exc)
        return False
