# leadengine/ai/responder.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from openai import OpenAI, OpenAIError

from leadengine.config import settings
from leadengine.errors import AIResponderError
from leadengine.runtime import get_logger

logger = get_logger("ai.responder")


# ───────────────────────────────────────────────────────────
# Prompt
# ───────────────────────────────────────────────────────────
def system_prompt() -> str:
    s = settings()
    return (
        f"Role: You are the SMS dispatcher for {s.BUSINESS_NAME}.\n"
        "Goal: turn inquiries into bookings by answering questions and pointing customers "
        "to the online scheduler.\n"
        "Tone: professional, friendly, concise. A helpful neighbor, not a robot.\n"
        "Format: SMS. Keep replies under 160 characters when possible.\n\n"
        f"Booking link (always send the full URL): {s.BOOKING_URL}\n"
        "Minimum charge: $150 to dispatch the truck.\n\n"
        "Pricing guide (ranges only, never exact quotes):\n"
        "- Standard room up to 200 sq ft: $46\n"
        "- Large room 200-400 sq ft: $90\n"
        "- 400-600 sq ft: $138; 600-800 sq ft: $175; over 800 sq ft: $0.25/sq ft measured on-site\n"
        "- Stairs: $4 per step. Pet treatment: $25 per room\n"
        "- Sofa $150, loveseat $100, sectional $15 per linear foot (one seat is about 3 ft), "
        "recliner $75, ottoman $40\n"
        "- Tile & grout and area rugs: $0.80 per sq ft\n\n"
        "Process: brush agitation, truck-mounted hot water extraction, rotary extraction. "
        "Zero residue, safe for pets and kids. Drying time 12 to 24 hours.\n"
        "Payment: check or cash preferred; cards accepted with a small fee; Venmo or Zelle.\n\n"
        "Escalation rules:\n"
        "- Water emergency (flood, burst pipe, standing water): reply \"This sounds like an "
        "emergency. I'm flagging this for our Restoration Team immediately. Someone will call "
        "you in 5 minutes.\"\n"
        "- Angry customer (rude, missed spot, refund): reply \"I'm so sorry to hear that. I've "
        "sent an urgent message to the owner. He will call you personally to make it right.\"\n\n"
        "Keep the conversation in SMS and end with \"Questions? Just text back!\""
    )


ESCALATION_PHRASES = (
    "I'm flagging this for",
    "Restoration Team immediately",
    "urgent message to the owner",
    "call you personally",
    "owner will call you",
    "emergency",
    "flagging this",
    "sounds like an emergency",
)


# ───────────────────────────────────────────────────────────
# Client
# ───────────────────────────────────────────────────────────
def _client() -> Optional[OpenAI]:
    s = settings()
    if not s.OPENAI_API_KEY:
        return None
    try:
        return OpenAI(api_key=s.OPENAI_API_KEY, timeout=s.OPENAI_TIMEOUT)
    except Exception as e:
        logger.error("Client init failed: %s", e)
        return None


def is_ai_enabled() -> bool:
    """System-wide automation toggle: flag on and an API key configured."""
    s = settings()
    return bool(s.AI_DISPATCHER_ENABLED and s.OPENAI_API_KEY)


def _history_messages(history: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for msg in history or ():
        role = msg.get("role")
        if role not in ("user", "assistant"):
            continue
        content = (msg.get("content") or "").strip()
        if content:
            out.append({"role": role, "content": content})
    return out


# ───────────────────────────────────────────────────────────
# Public API
# ───────────────────────────────────────────────────────────
def partner_prompt(partner: Optional[Dict[str, Any]]) -> Optional[str]:
    """Extra system line for customers who came in through a partner card."""
    if not partner or not partner.get("partner_name"):
        return None
    line = f"This customer found us through our partner {partner['partner_name']}."
    if partner.get("coupon_code"):
        line += f" When pricing or booking comes up, remind them to use discount code {partner['coupon_code']}."
    return line


def generate(
    user_message: str,
    history: Iterable[Dict[str, Any]] = (),
    partner: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Produce the dispatcher reply for ``user_message`` given prior messages.

    ``history`` excludes ``user_message`` itself; system diagnostics in the
    history are not sent to the model. ``partner`` (``partner_name``,
    ``coupon_code``) adds the referring partner's discount to the prompt.
    Raises AIResponderError when the model is unavailable or the call fails;
    an empty string means "no reply".
    """
    cli = _client()
    if cli is None:
        raise AIResponderError("OpenAI not configured")

    s = settings()
    messages = [{"role": "system", "content": system_prompt()}]
    extra = partner_prompt(partner)
    if extra:
        messages.append({"role": "system", "content": extra})
    messages.extend(_history_messages(history))
    messages.append({"role": "user", "content": user_message})

    try:
        resp = cli.chat.completions.create(
            model=s.OPENAI_MODEL,
            messages=messages,
            temperature=s.OPENAI_TEMPERATURE,
            max_tokens=s.OPENAI_MAX_TOKENS,
        )
    except OpenAIError as exc:
        logger.error("Completion failed: %s", exc)
        raise AIResponderError(f"OpenAI completion failed: {exc}") from exc

    content = (resp.choices[0].message.content if resp and resp.choices else None) or ""
    return content.strip()


def should_escalate(reply: str) -> bool:
    text = (reply or "").lower()
    return any(phrase.lower() in text for phrase in ESCALATION_PHRASES)
