"""Phone-number canonicalization shared by every inbound path."""

from __future__ import annotations

import re
from typing import Optional

_DIGIT_PATTERN = re.compile(r"\d")


def only_digits(value: str | None) -> str:
    """Extract all digits from a string."""
    if value is None:
        return ""
    return "".join(_DIGIT_PATTERN.findall(str(value)))


def last_10_digits(value: str | None) -> Optional[str]:
    """Return the last 10 digits from a phone number-like string."""
    digits = only_digits(value)
    return digits[-10:] if len(digits) >= 10 else None


def normalize_phone(value: str | None) -> Optional[str]:
    """
    Canonicalize a phone number to an E.164-like string.

    10 digits become ``+1XXXXXXXXXX``; 11 digits with a leading ``1`` become
    ``+1XXXXXXXXXX``; any other digit string is returned as ``+<digits>``
    without further validation. Input with no digits at all yields ``None``.
    """
    if not value:
        return None
    digits = only_digits(value)
    if not digits:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def is_nanp(value: str | None) -> bool:
    digits = only_digits(normalize_phone(value))
    return len(digits) == 11 and digits.startswith("1")


def format_display(value: str | None) -> str:
    """``+17195551234`` → ``(719) 555-1234``; non-NANP numbers pass through."""
    if not is_nanp(value):
        return value or ""
    ten = only_digits(normalize_phone(value))[1:]
    return f"({ten[:3]}) {ten[3:6]}-{ten[6:]}"
