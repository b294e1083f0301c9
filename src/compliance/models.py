"""Compliance domain models.

Closed ``str`` enums for every categorical field (consent type/source,
opt-out reason, DNC source, block codes, audit events) and pydantic v2
models for the persisted entities. Result objects returned by the engine
and gateway are plain dataclasses.

Key design decisions:
- Enums subclass ``str`` so records serialize to the same wire values the
  audit log and HTTP API use.
- Persisted entities are pydantic models (validated on construction,
  ``model_copy(update=...)`` for in-place upgrades).
- Timestamps are always timezone-aware UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Treat a naive datetime as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ConsentType(str, Enum):
    EXPRESS_WRITTEN = "express_written"
    EXPRESS_ORAL = "express_oral"
    IMPLIED = "implied"
    TRANSACTIONAL = "transactional"


class ConsentSource(str, Enum):
    WEB_FORM = "web_form"
    TEXT_OPTIN = "text_optin"
    PAPER_FORM = "paper_form"
    PHONE_RECORDING = "phone_recording"
    EXISTING_CUSTOMER = "existing_customer"
    MANUAL_ENTRY = "manual_entry"
    API_IMPORT = "api_import"


class OptOutReason(str, Enum):
    STOP_KEYWORD = "stop_keyword"
    UNSUBSCRIBE_LINK = "unsubscribe_link"
    MANUAL_REQUEST = "manual_request"
    COMPLAINT = "complaint"
    ADMIN_REMOVED = "admin_removed"
    DNC_MATCH = "dnc_match"
    BOUNCE = "bounce"


class DncSource(str, Enum):
    """Where a do-not-contact entry came from.

    ``COMPLAINT`` is the only source that also blocks transactional messages.
    """

    COMPLAINT = "complaint"
    NATIONAL_REGISTRY = "national_registry"
    INTERNAL = "internal"
    MANUAL_ENTRY = "manual_entry"
    API_IMPORT = "api_import"


class MessageCategory(str, Enum):
    MARKETING = "marketing"
    TRANSACTIONAL = "transactional"


class ConsentBasisType(str, Enum):
    """Why an outbound message is allowed to be the first contact."""

    MISSED_CALL = "missed_call"
    FORM_SUBMISSION = "form_submission"
    LEAD_REPLY = "lead_reply"
    EXISTING_CUSTOMER = "existing_customer"
    EXISTING_CONSENT = "existing_consent"


class BlockCode(str, Enum):
    """Machine-readable reason a message was not sent."""

    OPTED_OUT = "opted_out"
    DNC = "dnc"
    NO_CONSENT = "no_consent"
    CONSENT_EXPIRED = "consent_expired"
    QUIET_HOURS = "quiet_hours"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    MONTHLY_LIMIT = "monthly_limit"
    TENANT_NOT_FOUND = "tenant_not_found"
    INVALID_NUMBER = "invalid_number"
    LOOKUP_FAILED = "lookup_failed"


class AuditEventType(str, Enum):
    CHECK_BLOCKED = "check_blocked"
    CONSENT_EXPIRED = "consent_expired"
    MESSAGE_BLOCKED = "message_blocked"
    MESSAGE_QUEUED = "message_queued"
    MESSAGE_SENT = "message_sent"
    MESSAGE_SEND_FAILED = "message_send_failed"
    CONSENT_RECORDED = "consent_recorded"
    CONSENT_UPGRADED = "consent_upgraded"
    OPT_OUT_RECORDED = "opt_out_recorded"
    DNC_ADDED = "dnc_added"
    DNC_REMOVED = "dnc_removed"
    DNC_BULK_IMPORT = "dnc_bulk_import"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    API = "api"
    WEBHOOK = "webhook"


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class ConsentScope(BaseModel):
    """Message categories a consent record authorizes."""

    marketing: bool = False
    transactional: bool = False
    promotional: bool = False
    reminders: bool = False

    @property
    def allows_marketing(self) -> bool:
        return self.marketing or self.promotional

    @property
    def allows_transactional(self) -> bool:
        return self.transactional or self.reminders

    @classmethod
    def full(cls) -> ConsentScope:
        return cls(marketing=True, transactional=True, promotional=True, reminders=True)


class ConsentDetails(BaseModel):
    """Caller-supplied description of a consent grant."""

    consent_type: ConsentType
    consent_source: ConsentSource
    scope: ConsentScope
    consent_language: str = Field(..., min_length=1)
    ip_address: str | None = None
    user_agent: str | None = None
    form_url: str | None = None
    recording_url: str | None = None


class ConsentRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    phone_hash: str
    phone_number: str
    consent_type: ConsentType
    consent_source: ConsentSource
    scope: ConsentScope
    consent_language: str
    consent_timestamp: datetime = Field(default_factory=utcnow)
    ip_address: str | None = None
    user_agent: str | None = None
    form_url: str | None = None
    recording_url: str | None = None
    is_active: bool = True
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OptOutRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    phone_hash: str
    phone_number: str
    reason: OptOutReason
    opt_out_timestamp: datetime = Field(default_factory=utcnow)
    trigger_message: str | None = None
    trigger_message_id: str | None = None
    reopted_in_at: datetime | None = None
    reoptin_consent_id: str | None = None

    @property
    def is_current(self) -> bool:
        return self.reopted_in_at is None


class DoNotContactEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str | None = None  # None = global registry entry
    phone_hash: str
    phone_number: str
    source: DncSource
    source_reference: str | None = None
    added_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    is_active: bool = True
    removed_at: datetime | None = None
    remove_reason: str | None = None

    @field_validator("added_at", "expires_at", "removed_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def is_effective(self, now: datetime) -> bool:
        """Active and, when it carries an expiry, not yet expired."""
        return self.is_active and (self.expires_at is None or self.expires_at >= now)


class QuietHoursConfig(BaseModel):
    tenant_id: str
    quiet_start_hour: int = 21
    quiet_end_hour: int = 10
    weekend_quiet_start_hour: int | None = None
    weekend_quiet_end_hour: int | None = None
    enforce_quiet_hours: bool = True
    respect_federal_holidays: bool = True
    holiday_quiet_all_day: bool = False
    queue_during_quiet_hours: bool = True

    @field_validator(
        "quiet_start_hour",
        "quiet_end_hour",
        "weekend_quiet_start_hour",
        "weekend_quiet_end_hour",
    )
    @classmethod
    def validate_hour(cls, v: int | None) -> int | None:
        if v is not None and not 0 <= v <= 23:
            raise ValueError("quiet hours must be between 0 and 23")
        return v


class TenantAccount(BaseModel):
    tenant_id: str
    monthly_message_limit: int | None = None  # None = unlimited
    timezone: str | None = None
    is_active: bool = True


class RecipientProfile(BaseModel):
    """The tenant's lead/profile for a recipient, as seen by compliance."""

    tenant_id: str
    phone_hash: str
    phone_number: str
    status: str = "active"
    opted_out: bool = False
    opted_out_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class ComplianceCacheEntry(BaseModel):
    """Snapshot of the consent-derived part of a decision. Never quiet hours."""

    tenant_id: str
    phone_hash: str
    has_valid_consent: bool
    is_opted_out: bool
    is_on_dnc: bool
    can_receive_marketing: bool
    can_receive_transactional: bool
    consent_id: str | None = None
    last_checked_at: datetime
    expires_at: datetime


class AuditLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str | None = None
    event_type: AuditEventType
    event_timestamp: datetime = Field(default_factory=utcnow)
    phone_number: str | None = None
    phone_hash: str | None = None
    consent_id: str | None = None
    message_id: str | None = None
    event_data: dict[str, Any] = Field(default_factory=dict)
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: str | None = None
    success: bool = True
    error_message: str | None = None
    previous_hash: str = ""
    entry_hash: str = ""


class ConsentBasis(BaseModel):
    """Consent basis supplied by first-contact automation flows.

    ``missed_call`` requires ``call_sid``; the other fields are optional
    evidence for their respective types.
    """

    type: ConsentBasisType
    call_sid: str | None = None
    form_submission_id: str | None = None
    message_id: str | None = None
    transaction_date: datetime | None = None

    @model_validator(mode="after")
    def validate_evidence(self) -> ConsentBasis:
        if self.type == ConsentBasisType.MISSED_CALL and not self.call_sid:
            raise ValueError("missed_call consent basis requires call_sid")
        return self


class SendMessageRequest(BaseModel):
    tenant_id: str
    to: str
    from_: str
    body: str = Field(..., min_length=1)
    message_category: MessageCategory = MessageCategory.MARKETING
    consent_basis: ConsentBasis | None = None
    lead_id: str | None = None
    queue_on_quiet_hours: bool | None = None  # None = tenant QuietHoursConfig default
    recipient_timezone: str | None = None
    media_urls: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class QuietHoursResult:
    blocked: bool
    reason: str | None = None


@dataclass
class ComplianceCheckResult:
    can_send: bool
    can_send_marketing: bool
    can_send_transactional: bool
    has_consent: bool
    is_opted_out: bool = False
    is_on_dnc: bool = False
    is_quiet_hours: bool = False
    block_reason: str | None = None
    block_code: BlockCode | None = None
    consent_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class SendResult:
    """Outcome of ``send_compliant_message``; exactly one flag is True."""

    sent: bool = False
    queued: bool = False
    blocked: bool = False
    message_id: str | None = None
    block_reason: str | None = None
    block_code: BlockCode | None = None
    consent_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if [self.sent, self.queued, self.blocked].count(True) != 1:
            raise ValueError("exactly one of sent/queued/blocked must be True")


@dataclass
class InboundResult:
    is_opt_out: bool = False
    is_opt_in: bool = False
    handled: bool = False
    response_message: str | None = None


@dataclass
class DncImportResult:
    total: int = 0
    added: int = 0
    duplicates: int = 0
    errors: int = 0
