# leadengine/intake.py
"""
SMS Intake
----------
Rule-based reading of inbound customer texts:
partner-card mentions (which partner sent them) and the contact details a
customer volunteers during a conversation (name, email, address).
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from leadengine.datastore import CONNECTOR, select
from leadengine.runtime import get_logger
from leadengine.schema import PARTNERS

logger = get_logger("intake")

# -----------------------------
# Lexicons
# -----------------------------
PARTNER_PHRASES = (
    "found your card",
    "found the card",
    "scanned your card",
    "scanned the card",
    "saw your card",
    "card at",
    "from the barbershop",
    "from the gym",
    "from the coffee",
    "from the bar",
    "at the salon",
    "at the shop",
    "nfc",
    "tapped",
)

NAME_FALSE_POSITIVES = {"Hi", "Hello", "Hey", "Yes", "No", "Sure", "Thanks", "Great", "Ok", "Okay"}

SERVICE_KEYWORDS = {
    "carpet": ("carpet", "room", "bedroom", "living room", "basement"),
    "upholstery": ("couch", "sofa", "sectional", "loveseat", "chair", "furniture", "upholstery", "recliner"),
    "tile": ("tile", "grout", "floor"),
    "rug": ("rug",),
    "stairs": ("stairs", "stairway", "steps"),
    "leather": ("leather",),
    "pet": ("pet", "dog", "cat", "urine", "stain", "odor"),
}

NAME_PATTERNS = (
    re.compile(r"(?i:my name is|i'm|this is|it's|i am|name's|call me)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"),
    re.compile(r"^([A-Z][a-z]+)(?:\s+here|\s+speaking)?[.!]?\s*$", re.MULTILINE),
)
EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
ZIP_RE = re.compile(r"\b(8\d{4})\b")
STREET_SUFFIX = r"(?:street|st|avenue|ave|road|rd|drive|dr|lane|ln|way|court|ct|circle|cir|boulevard|blvd|place|pl)"
ADDRESS_PATTERNS = (
    re.compile(
        r"\b(\d{1,5}\s+[A-Za-z0-9 ]+?\s" + STREET_SUFFIX + r"\b\.?(?:\s*,?\s*(?:apt|apartment|unit|suite|ste|#)\.?\s*\d+[A-Za-z]?)?)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:live at|address is|i'm at|located at|we're at)\s+(\d{1,5}\s+[A-Za-z0-9 ,]+)", re.IGNORECASE),
)


# -----------------------------
# Partner mentions
# -----------------------------
def mentions_partner_card(message: str) -> bool:
    text = (message or "").lower()
    return any(phrase in text for phrase in PARTNER_PHRASES)


def partner_display_name(fields: Dict[str, Any]) -> Optional[str]:
    return fields.get(PARTNERS.field_name("LOCATION_NAME")) or fields.get(PARTNERS.field_name("COMPANY_NAME"))


def match_partner(message: str) -> Optional[Dict[str, Any]]:
    """
    Partner whose location (or company) name appears in ``message``.

    Returns ``{"partner_id", "partner_name", "coupon_code"}`` or None. The
    longest matching name wins so "Joe's Diner North" beats "Joe's Diner".
    """
    text = (message or "").lower()
    if not text:
        return None
    best: Optional[Dict[str, Any]] = None
    for rec in select(CONNECTOR.partners()):
        name = partner_display_name(rec["fields"])
        if not name or name.lower() not in text:
            continue
        if best is None or len(name) > len(best["partner_name"]):
            best = {
                "partner_id": rec["id"],
                "partner_name": name,
                "coupon_code": rec["fields"].get(PARTNERS.field_name("COUPON_CODE")),
            }
    if best:
        logger.info("🎯 Message matched partner %s (%s)", best["partner_name"], best["partner_id"])
    return best


# -----------------------------
# Customer details
# -----------------------------
def _user_text(messages: Iterable[Dict[str, Any]]) -> str:
    return "\n".join((m.get("content") or "").strip() for m in messages if m.get("role") == "user")


def _extract_name(text: str) -> Optional[str]:
    for pattern in NAME_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).strip()
            if name.split()[0] not in NAME_FALSE_POSITIVES:
                return name
    return None


def _extract_address(text: str) -> Optional[str]:
    for pattern in ADDRESS_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip(" ,")
    return None


def _match_words(text: str, words: Iterable[str]) -> bool:
    pattern = r"\b(" + "|".join(map(re.escape, words)) + r")s?\b"
    return bool(re.search(pattern, text))


def _services(text: str) -> List[str]:
    lower = text.lower()
    return [service for service, words in SERVICE_KEYWORDS.items() if _match_words(lower, words)]


def extract_customer_info(messages: Iterable[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Pull name/email/address/zip/services out of the customer's side of a thread."""
    text = _user_text(messages)
    email = EMAIL_RE.search(text)
    zip_code = ZIP_RE.search(text)
    services = _services(text)
    return {
        "name": _extract_name(text),
        "email": email.group(1).lower() if email else None,
        "address": _extract_address(text),
        "zip_code": zip_code.group(1) if zip_code else None,
        "service_needed": ", ".join(services) or None,
    }


def has_lead_details(info: Dict[str, Optional[str]]) -> bool:
    return bool(info.get("name") and info.get("email") and info.get("address"))


def lead_notes(info: Dict[str, Optional[str]]) -> str:
    lines = []
    if info.get("service_needed"):
        lines.append(f"Service: {info['service_needed']}")
    if info.get("zip_code"):
        lines.append(f"Zip: {info['zip_code']}")
    lines.append("Source: SMS conversation")
    return "\n".join(lines)
