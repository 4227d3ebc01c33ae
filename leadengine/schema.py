from __future__ import annotations

"""
Central table schema definitions and helpers.

Canonical table and column names live here so the domain modules import
lightweight helpers instead of hard-coding strings. Environment variables can
override table names and individual column names (to line up with a custom
Airtable copy), but the defaults always reflect the live base.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents a table column.

    Args:
        default: Canonical column name.
        env_vars: Ordered env vars that can override the column name
                  (first non-empty wins).
        options: Allowed values for single-select columns (if applicable).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    options: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    """
    Table metadata with helpers to translate between logical keys and columns.

    Args:
        default: Table name in the base.
        env_vars: Env vars that can rename the table.
        fields: Mapping of logical keys (UPPER_CASE) → FieldDefinition.
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key.upper()].resolve()

    def field_names(self) -> Dict[str, str]:
        return {key: f.resolve() for key, f in self.fields.items()}

    def to_fields(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate ``{"phone": ..., "status": ...}`` into column names."""
        out: Dict[str, Any] = {}
        for key, value in values.items():
            if isinstance(value, Enum):
                value = value.value
            out[self.field_name(key)] = value
        return out

    def to_public(self, record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Flatten a stored record into ``{"id", <logical_key>: value}``."""
        if not record:
            return None
        stored = record.get("fields", {}) or {}
        out: Dict[str, Any] = {"id": record.get("id")}
        for key, column in self.field_names().items():
            out[key.lower()] = stored.get(column)
        return out


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LeadSource(str, Enum):
    CONTEST = "contest"
    PARTNER = "partner"
    MISSED_CALL = "missed_call"
    WEBSITE = "website"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUOTED = "quoted"
    SCHEDULED = "scheduled"
    WON = "won"
    LOST = "lost"


# status → one-way timestamp column key
LEAD_STATUS_STAMPS: Dict[str, str] = {
    LeadStatus.CONTACTED.value: "CONTACTED_AT",
    LeadStatus.SCHEDULED.value: "SCHEDULED_AT",
    LeadStatus.WON.value: "WON_AT",
}


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ESCALATED = "escalated"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    BOOKED = "booked"
    CONVERTED = "converted"
    LOST = "lost"


class StationType(str, Enum):
    SASQUATCH = "sasquatch"
    REVIEW = "review"


def _values(enum_cls) -> Tuple[str, ...]:
    return tuple(member.value for member in enum_cls)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

LEADS = TableDefinition(
    default="Leads",
    env_vars=("LEADS_TABLE",),
    fields={
        "SOURCE": FieldDefinition("source", options=_values(LeadSource)),
        "PHONE": FieldDefinition("phone", env_vars=("LEADS_PHONE_FIELD",)),
        "NAME": FieldDefinition("name"),
        "EMAIL": FieldDefinition("email"),
        "LOCATION": FieldDefinition("location"),
        "STATUS": FieldDefinition("status", options=_values(LeadStatus)),
        "NOTES": FieldDefinition("notes"),
        "PARTNER_ID": FieldDefinition("partner_id"),
        "SIGHTING_ID": FieldDefinition("sighting_id"),
        "CREATED_AT": FieldDefinition("created_at"),
        "UPDATED_AT": FieldDefinition("updated_at"),
        "CONTACTED_AT": FieldDefinition("contacted_at"),
        "SCHEDULED_AT": FieldDefinition("scheduled_at"),
        "WON_AT": FieldDefinition("won_at"),
        "DAY_3_SMS_SENT_AT": FieldDefinition("day_3_sms_sent_at"),
        "DAY_7_SMS_SENT_AT": FieldDefinition("day_7_sms_sent_at"),
        "DAY_14_SMS_SENT_AT": FieldDefinition("day_14_sms_sent_at"),
    },
)

CONVERSATIONS = TableDefinition(
    default="Conversations",
    env_vars=("CONVERSATIONS_TABLE",),
    fields={
        "PHONE_NUMBER": FieldDefinition("phone_number"),
        "SOURCE": FieldDefinition("source"),
        "LEAD_ID": FieldDefinition("lead_id"),
        "PARTNER_ID": FieldDefinition("partner_id"),
        "PARTNER_NAME": FieldDefinition("partner_name"),
        "COUPON_CODE": FieldDefinition("coupon_code"),
        "AI_ENABLED": FieldDefinition("ai_enabled"),
        "STATUS": FieldDefinition("status", options=_values(ConversationStatus)),
        "MESSAGE_COUNT": FieldDefinition("message_count"),
        "CREATED_AT": FieldDefinition("created_at"),
        "UPDATED_AT": FieldDefinition("updated_at"),
    },
)

CONVERSATION_MESSAGES = TableDefinition(
    default="Conversation Messages",
    env_vars=("CONVERSATION_MESSAGES_TABLE",),
    fields={
        "CONVERSATION_ID": FieldDefinition("conversation_id"),
        "SEQUENCE": FieldDefinition("sequence"),
        "ROLE": FieldDefinition("role", options=_values(MessageRole)),
        "CONTENT": FieldDefinition("content"),
        "TIMESTAMP": FieldDefinition("timestamp"),
        "PROVIDER_SID": FieldDefinition("provider_sid"),
        "SENT_BY": FieldDefinition("sent_by"),
    },
)

PARTNERS = TableDefinition(
    default="Partners",
    env_vars=("PARTNERS_TABLE",),
    fields={
        "PHONE": FieldDefinition("phone"),
        "LOCATION_NAME": FieldDefinition("location_name"),
        "COMPANY_NAME": FieldDefinition("company_name"),
        "CREDIT_BALANCE": FieldDefinition("credit_balance"),
        "TOTAL_TAPS": FieldDefinition("total_taps"),
        "TOTAL_CONVERSIONS": FieldDefinition("total_conversions"),
        "LAST_SASQUATCH_TAP_AT": FieldDefinition("last_sasquatch_tap_at"),
        "LAST_REVIEW_TAP_AT": FieldDefinition("last_review_tap_at"),
        "GOOGLE_REVIEW_URL": FieldDefinition("google_review_url"),
        "COUPON_CODE": FieldDefinition("coupon_code"),
    },
)

REFERRALS = TableDefinition(
    default="Referrals",
    env_vars=("REFERRALS_TABLE",),
    fields={
        "PARTNER_ID": FieldDefinition("partner_id"),
        "CLIENT_NAME": FieldDefinition("client_name"),
        "CLIENT_PHONE": FieldDefinition("client_phone"),
        "NOTES": FieldDefinition("notes"),
        "STATUS": FieldDefinition("status", options=_values(ReferralStatus)),
        "CREDIT_AMOUNT": FieldDefinition("credit_amount"),
        "CONVERTED_AT": FieldDefinition("converted_at"),
        "LEAD_ID": FieldDefinition("lead_id"),
        "CREATED_AT": FieldDefinition("created_at"),
        "UPDATED_AT": FieldDefinition("updated_at"),
    },
)

CREDIT_LEDGER = TableDefinition(
    default="Credit Ledger",
    env_vars=("CREDIT_LEDGER_TABLE",),
    fields={
        "PARTNER_ID": FieldDefinition("partner_id"),
        "REFERRAL_ID": FieldDefinition("referral_id"),
        "DELTA": FieldDefinition("delta"),
        "BALANCE_AFTER": FieldDefinition("balance_after"),
        "PREVIOUS_STATUS": FieldDefinition("previous_status"),
        "NEW_STATUS": FieldDefinition("new_status"),
        "TRANSITION_KEY": FieldDefinition("transition_key"),
        "CREATED_AT": FieldDefinition("created_at"),
    },
)

STATION_ALERTS = TableDefinition(
    default="Station Health Alerts",
    env_vars=("STATION_ALERTS_TABLE",),
    fields={
        "PARTNER_ID": FieldDefinition("partner_id"),
        "STATION_TYPE": FieldDefinition("station_type", options=_values(StationType)),
        "ALERT_TYPE": FieldDefinition("alert_type"),
        "SENT_AT": FieldDefinition("sent_at"),
    },
)

SMS_LOG = TableDefinition(
    default="SMS Log",
    env_vars=("SMS_LOG_TABLE",),
    fields={
        "TO": FieldDefinition("to"),
        "BODY": FieldDefinition("body"),
        "RECIPIENT_TYPE": FieldDefinition("recipient_type"),
        "MESSAGE_TYPE": FieldDefinition("message_type"),
        "LEAD_ID": FieldDefinition("lead_id"),
        "STATUS": FieldDefinition("status"),
        "PROVIDER_SID": FieldDefinition("provider_sid"),
        "ERROR": FieldDefinition("error"),
        "SENT_AT": FieldDefinition("sent_at"),
    },
)

RUN_LOGS = TableDefinition(
    default="Run Logs",
    env_vars=("RUN_LOGS_TABLE",),
    fields={
        "TYPE": FieldDefinition("Type"),
        "PROCESSED": FieldDefinition("Processed"),
        "BREAKDOWN": FieldDefinition("Breakdown"),
        "STATUS": FieldDefinition("Status"),
        "TIMESTAMP": FieldDefinition("Timestamp"),
    },
)

ALL_TABLES: Tuple[TableDefinition, ...] = (
    LEADS,
    CONVERSATIONS,
    CONVERSATION_MESSAGES,
    PARTNERS,
    REFERRALS,
    CREDIT_LEDGER,
    STATION_ALERTS,
    SMS_LOG,
    RUN_LOGS,
)
