"""Pydantic v2 request/response models for the compliance gateway API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.compliance.models import (
    BlockCode,
    ConsentBasis,
    ConsentScope,
    ConsentSource,
    ConsentType,
    DncSource,
    MessageCategory,
    OptOutReason,
    as_utc,
)


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    state_backend: str
    transport: str


class ComplianceCheckRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    phone_number: str
    message_category: MessageCategory = MessageCategory.MARKETING
    recipient_timezone: str | None = None


class ComplianceCheckResponse(BaseModel):
    can_send: bool
    can_send_marketing: bool
    can_send_transactional: bool
    has_consent: bool
    is_opted_out: bool
    is_on_dnc: bool
    is_quiet_hours: bool
    block_reason: str | None = None
    block_code: BlockCode | None = None
    consent_id: str | None = None
    warnings: list[str] = Field(default_factory=list)


class SendSmsRequest(BaseModel):
    """Body of ``POST /sms/send``. ``from`` is accepted as the JSON key."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., min_length=1)
    to: str
    from_: str | None = Field(None, alias="from")  # defaults to SMS_FROM_NUMBER
    body: str = Field(..., min_length=1, max_length=1600)
    message_category: MessageCategory = MessageCategory.MARKETING
    consent_basis: ConsentBasis | None = None
    lead_id: str | None = None
    queue_on_quiet_hours: bool | None = None
    recipient_timezone: str | None = None
    media_urls: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SendSmsResponse(BaseModel):
    sent: bool
    queued: bool
    blocked: bool
    message_id: str | None = None
    block_reason: str | None = None
    block_code: BlockCode | None = None
    consent_id: str | None = None
    warnings: list[str] = Field(default_factory=list)


class InboundSmsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., min_length=1)
    from_: str = Field(..., alias="from")
    body: str = Field(..., max_length=1600)
    message_id: str | None = None


class InboundSmsResponse(BaseModel):
    is_opt_out: bool
    is_opt_in: bool
    handled: bool
    response_message: str | None = None


class RecordConsentRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    phone_number: str
    consent_type: ConsentType
    consent_source: ConsentSource
    scope: ConsentScope
    consent_language: str = Field(..., min_length=1)
    ip_address: str | None = None
    user_agent: str | None = None
    form_url: str | None = None
    recording_url: str | None = None
    actor_id: str | None = None


class RecordConsentResponse(BaseModel):
    consent_id: str


class OptOutRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    phone_number: str
    reason: OptOutReason = OptOutReason.MANUAL_REQUEST
    trigger_message: str | None = None
    trigger_message_id: str | None = None
    actor_id: str | None = None


class OptOutResponse(BaseModel):
    status: str = "opted_out"


class DncAddRequest(BaseModel):
    phone_number: str
    source: DncSource
    tenant_id: str | None = None  # None = global entry
    source_reference: str | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime | None) -> datetime | None:
        """Offset-less timestamps are taken as UTC."""
        return as_utc(v)


class DncAddResponse(BaseModel):
    added: bool


class DncRemoveRequest(BaseModel):
    phone_number: str
    tenant_id: str | None = None
    reason: str | None = None


class DncRemoveResponse(BaseModel):
    removed: int


class DncImportRequest(BaseModel):
    phone_numbers: list[str] = Field(..., min_length=1)
    source: DncSource
    tenant_id: str | None = None


class DncImportResponse(BaseModel):
    total: int
    added: int
    duplicates: int
    errors: int


class TenantRequest(BaseModel):
    monthly_message_limit: int | None = Field(None, ge=0)
    timezone: str | None = None
    is_active: bool = True


class QuietHoursRequest(BaseModel):
    quiet_start_hour: int = Field(21, ge=0, le=23)
    quiet_end_hour: int = Field(10, ge=0, le=23)
    weekend_quiet_start_hour: int | None = Field(None, ge=0, le=23)
    weekend_quiet_end_hour: int | None = Field(None, ge=0, le=23)
    enforce_quiet_hours: bool = True
    respect_federal_holidays: bool = True
    holiday_quiet_all_day: bool = False
    queue_during_quiet_hours: bool = True
