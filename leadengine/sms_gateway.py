"""
📡 SMS Gateway: Twilio-style REST transport + SMS Log
- Uses the 2010-04-01 Messages endpoint with basic auth
- Customer, partner and admin sends share one transport
- Every attempt is written to the SMS Log table (best-effort)
- notify_* helpers never raise; use them for notification-only sends
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from leadengine.config import settings
from leadengine.contacts import normalize_phone
from leadengine.datastore import CONNECTOR, create
from leadengine.errors import PersistenceError, SmsGatewayError, UpstreamError
from leadengine.runtime import get_logger, iso_now
from leadengine.schema import SMS_LOG

logger = get_logger("sms_gateway")

API_ROOT = "https://api.twilio.com/2010-04-01"
MAX_BODY_CHARS = 1600
OK_STATUSES = {"queued", "accepted", "submitted", "sending", "sent", "delivered"}


# =========================
# Small helpers
# =========================
def _api_url(account_sid: str) -> str:
    return f"{API_ROOT}/Accounts/{account_sid}/Messages.json"


def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_payload(payload: Dict[str, Any]) -> None:
    problems: List[str] = []
    for field in ("To", "From"):
        if not _has_value(payload.get(field)):
            problems.append(f"{field} is required")
    body = payload.get("Body")
    if not _has_value(body):
        problems.append("Body is required")
    elif len(str(body)) > MAX_BODY_CHARS:
        problems.append(f"Body exceeds {MAX_BODY_CHARS} characters")
    if problems:
        raise SmsGatewayError("Invalid SMS payload: " + "; ".join(problems), payload=dict(payload))


def _extract_error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except Exception:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            value = body.get(key)
            if _has_value(value):
                return str(value)
    return str(body or "")


def _http_post(url: str, data: Dict[str, Any], auth: Tuple[str, str], timeout: float) -> Dict[str, Any]:
    if settings().SMS_DRY_RUN:
        logger.info("[DRY RUN] POST %s to=%s body=%s", url, data.get("To"), str(data.get("Body"))[:60])
        return {"sid": f"SM_fake_{int(time.time() * 1000)}", "status": "queued"}

    try:
        resp = httpx.post(url, data=data, auth=auth, timeout=timeout)
    except httpx.HTTPError as exc:
        raise SmsGatewayError(f"SMS transport error: {exc}", payload=data) from exc

    if resp.status_code == 429:
        raise SmsGatewayError(
            f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
            status_code=429,
            body=resp.headers.get("Retry-After"),
            payload=data,
        )
    if resp.is_error:
        body = _extract_error_body(resp)
        logger.error("SMS gateway %s error body: %s", resp.status_code, body)
        message = f"SMS gateway HTTP {resp.status_code}"
        summary = _summarize_error_body(body)
        if summary:
            message = f"{message}: {summary}"
        raise SmsGatewayError(message, status_code=resp.status_code, body=body, payload=data)
    try:
        return resp.json()
    except Exception:
        return {"raw": resp.text}


def _log_send(
    *,
    to: str,
    body: str,
    recipient_type: str,
    message_type: Optional[str],
    lead_id: Optional[str],
    status: str,
    sid: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    try:
        create(
            CONNECTOR.sms_log(),
            SMS_LOG.to_fields(
                {
                    "to": to,
                    "body": body,
                    "recipient_type": recipient_type,
                    "message_type": message_type,
                    "lead_id": lead_id,
                    "status": status,
                    "provider_sid": sid,
                    "error": error,
                    "sent_at": iso_now(),
                }
            ),
        )
    except PersistenceError as exc:
        logger.warning("SMS log write failed for %s: %s", to, exc)


# =========================
# Core Sender
# =========================
def send_sms(
    to: str,
    body: str,
    *,
    recipient_type: str = "customer",
    message_type: Optional[str] = None,
    lead_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Send one SMS and log it.
    Returns ``{"status": "sent", "sid": ..., "raw": ...}``; raises SmsGatewayError.
    """
    s = settings()
    to_number = normalize_phone(to) or (to or "")
    text = (body or "").strip()
    data: Dict[str, Any] = {"To": to_number, "From": s.TWILIO_PHONE_NUMBER or "", "Body": text}

    try:
        _validate_payload(data)
        if not s.SMS_DRY_RUN and not (s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN):
            raise SmsGatewayError("SMS gateway credentials missing", payload=data)
        resp = _http_post(
            _api_url(s.TWILIO_ACCOUNT_SID or "dry-run"),
            data=data,
            auth=(s.TWILIO_ACCOUNT_SID or "", s.TWILIO_AUTH_TOKEN or ""),
            timeout=s.SMS_TIMEOUT_SEC,
        )
    except SmsGatewayError as exc:
        _log_send(
            to=to_number,
            body=text,
            recipient_type=recipient_type,
            message_type=message_type,
            lead_id=lead_id,
            status="failed",
            error=str(exc),
        )
        raise

    sid = (resp or {}).get("sid") or (resp or {}).get("id")
    provider_status = str((resp or {}).get("status") or "sent").lower()
    if provider_status not in OK_STATUSES:
        _log_send(
            to=to_number,
            body=text,
            recipient_type=recipient_type,
            message_type=message_type,
            lead_id=lead_id,
            status="failed",
            sid=sid,
            error=f"provider status {provider_status}",
        )
        raise SmsGatewayError(f"SMS rejected with status {provider_status}", body=resp, payload=data)

    _log_send(
        to=to_number,
        body=text,
        recipient_type=recipient_type,
        message_type=message_type,
        lead_id=lead_id,
        status="sent",
        sid=sid,
    )
    logger.info("📤 SMS sent → %s [%s] sid=%s", to_number, message_type or recipient_type, sid)
    return {"status": "sent", "sid": sid, "raw": resp}


def send_customer_sms(
    phone: str, body: str, lead_id: Optional[str] = None, message_type: Optional[str] = None
) -> Dict[str, Any]:
    return send_sms(phone, body, recipient_type="customer", message_type=message_type, lead_id=lead_id)


def send_partner_sms(phone: str, body: str, message_type: Optional[str] = None) -> Dict[str, Any]:
    return send_sms(phone, body, recipient_type="partner", message_type=message_type)


def send_admin_sms(body: str, message_type: Optional[str] = None) -> Dict[str, Any]:
    admin = settings().ADMIN_PHONE_NUMBER
    if not admin:
        raise SmsGatewayError("ADMIN_PHONE_NUMBER not configured")
    return send_sms(admin, body, recipient_type="admin", message_type=message_type)


# =========================
# Best-effort notifications
# =========================
def notify_admin(body: str, message_type: Optional[str] = None) -> bool:
    try:
        send_admin_sms(body, message_type=message_type)
        return True
    except UpstreamError as exc:
        logger.warning("⚠️ Admin notification failed (%s): %s", message_type, exc)
        return False


def notify_partner(phone: str, body: str, message_type: Optional[str] = None) -> bool:
    try:
        send_partner_sms(phone, body, message_type=message_type)
        return True
    except UpstreamError as exc:
        logger.warning("⚠️ Partner notification to %s failed: %s", phone, exc)
        return False


def notify_customer(
    phone: str, body: str, lead_id: Optional[str] = None, message_type: Optional[str] = None
) -> bool:
    try:
        send_customer_sms(phone, body, lead_id=lead_id, message_type=message_type)
        return True
    except UpstreamError as exc:
        logger.warning("⚠️ Customer notification to %s failed: %s", phone, exc)
        return False
