"""Compliance decision engine.

Answers one question for a (tenant, recipient, category): may a message be
sent right now? Checks run in a fixed order and the first block wins:

1. Decision cache (consent-derived fields only; quiet hours re-evaluated live)
2. Opt-out (always blocks)
3. Do-not-contact registry (complaint entries block everything, other
   sources block marketing only)
4. Consent presence and scope
5. Quiet hours in the recipient's local time (never cached)
6. Implied-consent expiry (CASL: 6 months for inquiries, 2 years for customers)

Policy blocks are returned as ``ComplianceCheckResult`` values, never raised.
Any store failure during a check fails closed with ``lookup_failed``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from .audit import AuditLogger
from .models import (
    AuditEventType,
    BlockCode,
    ComplianceCacheEntry,
    ComplianceCheckResult,
    ConsentRecord,
    ConsentSource,
    ConsentType,
    DncSource,
    MessageCategory,
    QuietHoursConfig,
    QuietHoursResult,
    utcnow,
)
from .phone import InvalidPhoneNumberError, mask_phone, phone_key
from .quiet_hours import QuietHoursEvaluator, platform_default_config
from .store import ComplianceStore

logger = logging.getLogger(__name__)

IMPLIED_INQUIRY_WINDOW = timedelta(days=180)
IMPLIED_CUSTOMER_WINDOW = timedelta(days=730)
EXPIRY_WARNING_WINDOW = timedelta(days=30)
RECONFIRM_AFTER = timedelta(days=365)


def implied_consent_window(consent: ConsentRecord) -> tuple[timedelta, str]:
    """Validity window and its statutory label for an implied consent record."""
    if consent.consent_source == ConsentSource.EXISTING_CUSTOMER:
        return IMPLIED_CUSTOMER_WINDOW, "2 years"
    return IMPLIED_INQUIRY_WINDOW, "6 months"


def _blocked(
    code: BlockCode,
    reason: str,
    *,
    has_consent: bool = False,
    **fields,
) -> ComplianceCheckResult:
    return ComplianceCheckResult(
        can_send=False,
        can_send_marketing=fields.pop("can_send_marketing", False),
        can_send_transactional=fields.pop("can_send_transactional", False),
        has_consent=has_consent,
        block_reason=reason,
        block_code=code,
        **fields,
    )


class ComplianceDecisionEngine:
    """Evaluates opt-out, DNC, consent, quiet hours and expiry for one recipient.

    Args:
        store: Authoritative compliance store (also owns the decision cache).
        audit: Audit logger; every blocked branch is written before returning.
        evaluator: Quiet-hours evaluator.
        clock: Returns the current UTC time.
        cache_ttl_seconds: TTL of the consent-derived decision cache.
        default_quiet_start: Quiet-hours start for tenants with no saved config.
        default_quiet_end: Quiet-hours end for tenants with no saved config.
    """

    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditLogger,
        evaluator: QuietHoursEvaluator | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        cache_ttl_seconds: int = 300,
        default_quiet_start: int = 21,
        default_quiet_end: int = 10,
    ) -> None:
        self._store = store
        self._audit = audit
        self._evaluator = evaluator or QuietHoursEvaluator()
        self._clock = clock
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._default_quiet_start = default_quiet_start
        self._default_quiet_end = default_quiet_end

    async def check_compliance(
        self,
        tenant_id: str,
        phone_number: str,
        message_category: MessageCategory = MessageCategory.MARKETING,
        recipient_timezone: str | None = None,
    ) -> ComplianceCheckResult:
        """Decide whether ``tenant_id`` may message ``phone_number`` now.

        Args:
            tenant_id: Sending tenant.
            phone_number: Recipient, any format ``normalize_phone`` accepts.
            message_category: Category of the message to be sent.
            recipient_timezone: IANA timezone; falls back to the tenant's
                timezone, then the platform default.

        Returns:
            ``ComplianceCheckResult``. Never raises for policy outcomes or
            store failures.
        """
        try:
            normalized, phone_hash = phone_key(phone_number)
        except InvalidPhoneNumberError:
            return _blocked(BlockCode.INVALID_NUMBER, "Invalid recipient phone number")

        try:
            return await self._evaluate(
                tenant_id, normalized, phone_hash, message_category, recipient_timezone
            )
        except Exception as exc:
            logger.exception(
                "Compliance lookup failed for tenant=%s phone=%s, failing closed",
                tenant_id,
                mask_phone(normalized),
            )
            result = _blocked(BlockCode.LOOKUP_FAILED, "Compliance lookup failed")
            await self._audit.log(
                AuditEventType.CHECK_BLOCKED,
                tenant_id,
                phone_number=normalized,
                phone_hash=phone_hash,
                event_data={
                    "block_code": BlockCode.LOOKUP_FAILED.value,
                    "message_category": message_category.value,
                },
                success=False,
                error_message=str(exc),
            )
            return result

    async def _evaluate(
        self,
        tenant_id: str,
        phone: str,
        phone_hash: str,
        category: MessageCategory,
        recipient_timezone: str | None,
    ) -> ComplianceCheckResult:
        now = self._clock()

        cached = await self._store.get_cached_decision(tenant_id, phone_hash)
        if cached is not None and cached.expires_at > now:
            logger.debug("Compliance cache hit tenant=%s phone=%s", tenant_id, mask_phone(phone))
            return await self._from_cache(cached, tenant_id, phone, category, recipient_timezone, now)

        opt_out = await self._store.get_current_opt_out(tenant_id, phone_hash)
        if opt_out is not None:
            result = _blocked(BlockCode.OPTED_OUT, "Recipient has opted out", is_opted_out=True)
            await self._log_block(result, tenant_id, phone, phone_hash, category)
            return result

        dnc = await self._store.find_effective_dnc(tenant_id, phone_hash, now)
        on_dnc = dnc is not None
        if dnc is not None:
            is_complaint = dnc.source == DncSource.COMPLAINT
            if is_complaint or category == MessageCategory.MARKETING:
                result = _blocked(
                    BlockCode.DNC,
                    f"Number on Do Not Contact list ({dnc.source.value})",
                    is_on_dnc=True,
                    can_send_transactional=not is_complaint,
                )
                await self._log_block(
                    result, tenant_id, phone, phone_hash, category, dnc_source=dnc.source.value
                )
                return result

        consent = await self._store.get_active_consent(tenant_id, phone_hash)
        if consent is None:
            result = _blocked(
                BlockCode.NO_CONSENT,
                "No valid consent record",
                is_on_dnc=on_dnc,
                warnings=["No consent on file; record consent before messaging this recipient"],
            )
            await self._log_block(result, tenant_id, phone, phone_hash, category)
            return result

        can_marketing = consent.scope.allows_marketing and not on_dnc
        can_transactional = consent.scope.allows_transactional

        quiet = await self._quiet_hours(tenant_id, recipient_timezone, now)
        if quiet.blocked:
            result = _blocked(
                BlockCode.QUIET_HOURS,
                quiet.reason or "Quiet hours",
                has_consent=True,
                is_on_dnc=on_dnc,
                is_quiet_hours=True,
                consent_id=consent.id,
            )
            await self._log_block(result, tenant_id, phone, phone_hash, category)
            return result

        warnings: list[str] = []
        age = now - consent.consent_timestamp
        expires_at: datetime | None = None
        if consent.consent_type == ConsentType.IMPLIED:
            window, label = implied_consent_window(consent)
            expires_at = consent.consent_timestamp + window
            if age > window:
                result = _blocked(
                    BlockCode.CONSENT_EXPIRED,
                    f"Implied consent expired ({label} under CASL)",
                    is_on_dnc=on_dnc,
                    consent_id=consent.id,
                )
                await self._audit.log(
                    AuditEventType.CONSENT_EXPIRED,
                    tenant_id,
                    phone_number=phone,
                    phone_hash=phone_hash,
                    consent_id=consent.id,
                    event_data={
                        "consent_source": consent.consent_source.value,
                        "consent_timestamp": consent.consent_timestamp.isoformat(),
                        "window": label,
                    },
                )
                logger.info(
                    "Implied consent expired tenant=%s phone=%s window=%s",
                    tenant_id,
                    mask_phone(phone),
                    label,
                )
                return result
            if age > window - EXPIRY_WARNING_WINDOW:
                days_left = (expires_at - now).days
                warnings.append(
                    f"Implied consent expiring soon ({days_left} days left); obtain express consent"
                )
        if age > RECONFIRM_AFTER:
            warnings.append("Consent is over a year old; consider re-confirming")

        if not on_dnc:
            await self._cache(tenant_id, phone_hash, consent, can_marketing, can_transactional, now, expires_at)

        result = ComplianceCheckResult(
            can_send=True,
            can_send_marketing=can_marketing,
            can_send_transactional=can_transactional,
            has_consent=True,
            is_on_dnc=on_dnc,
            consent_id=consent.id,
            warnings=warnings,
        )
        return await self._apply_scope(result, tenant_id, phone, phone_hash, category)

    async def _from_cache(
        self,
        cached: ComplianceCacheEntry,
        tenant_id: str,
        phone: str,
        category: MessageCategory,
        recipient_timezone: str | None,
        now: datetime,
    ) -> ComplianceCheckResult:
        quiet = await self._quiet_hours(tenant_id, recipient_timezone, now)
        if quiet.blocked:
            result = _blocked(
                BlockCode.QUIET_HOURS,
                quiet.reason or "Quiet hours",
                has_consent=cached.has_valid_consent,
                is_quiet_hours=True,
                consent_id=cached.consent_id,
            )
            await self._log_block(result, tenant_id, phone, cached.phone_hash, category, cached=True)
            return result

        result = ComplianceCheckResult(
            can_send=True,
            can_send_marketing=cached.can_receive_marketing,
            can_send_transactional=cached.can_receive_transactional,
            has_consent=cached.has_valid_consent,
            consent_id=cached.consent_id,
        )
        return await self._apply_scope(result, tenant_id, phone, cached.phone_hash, category)

    async def _apply_scope(
        self,
        result: ComplianceCheckResult,
        tenant_id: str,
        phone: str,
        phone_hash: str,
        category: MessageCategory,
    ) -> ComplianceCheckResult:
        allowed = (
            result.can_send_marketing
            if category == MessageCategory.MARKETING
            else result.can_send_transactional
        )
        if allowed:
            return result
        result.can_send = False
        result.block_code = BlockCode.INSUFFICIENT_SCOPE
        result.block_reason = f"Consent does not cover {category.value} messages"
        await self._log_block(result, tenant_id, phone, phone_hash, category)
        return result

    async def quiet_hours_config(self, tenant_id: str) -> QuietHoursConfig:
        """The tenant's saved config, or the platform default when none is saved."""
        config = await self._store.get_quiet_hours_config(tenant_id)
        if config is None:
            return platform_default_config(tenant_id, self._default_quiet_start, self._default_quiet_end)
        return config

    async def evaluate_quiet_hours(
        self, tenant_id: str, recipient_timezone: str | None = None
    ) -> QuietHoursResult:
        """Live quiet-hours evaluation at the engine clock's current time."""
        return await self._quiet_hours(tenant_id, recipient_timezone, self._clock())

    async def _quiet_hours(
        self, tenant_id: str, recipient_timezone: str | None, now: datetime
    ) -> QuietHoursResult:
        config = await self.quiet_hours_config(tenant_id)
        tz_name = recipient_timezone
        if not tz_name:
            tenant = await self._store.get_tenant(tenant_id)
            tz_name = tenant.timezone if tenant else None
        return self._evaluator.evaluate(config, now, tz_name)

    async def _cache(
        self,
        tenant_id: str,
        phone_hash: str,
        consent: ConsentRecord,
        can_marketing: bool,
        can_transactional: bool,
        now: datetime,
        consent_expires_at: datetime | None,
    ) -> None:
        expires_at = now + self._cache_ttl
        # A cached decision must never outlive the consent it was derived from.
        if consent_expires_at is not None and consent_expires_at < expires_at:
            expires_at = consent_expires_at
        await self._store.put_cached_decision(
            ComplianceCacheEntry(
                tenant_id=tenant_id,
                phone_hash=phone_hash,
                has_valid_consent=True,
                is_opted_out=False,
                is_on_dnc=False,
                can_receive_marketing=can_marketing,
                can_receive_transactional=can_transactional,
                consent_id=consent.id,
                last_checked_at=now,
                expires_at=expires_at,
            )
        )

    async def _log_block(
        self,
        result: ComplianceCheckResult,
        tenant_id: str,
        phone: str,
        phone_hash: str,
        category: MessageCategory,
        **extra,
    ) -> None:
        logger.info(
            "Compliance check blocked tenant=%s phone=%s code=%s",
            tenant_id,
            mask_phone(phone),
            result.block_code.value if result.block_code else None,
        )
        await self._audit.log(
            AuditEventType.CHECK_BLOCKED,
            tenant_id,
            phone_number=phone,
            phone_hash=phone_hash,
            consent_id=result.consent_id,
            event_data={
                "block_code": result.block_code.value if result.block_code else None,
                "reason": result.block_reason,
                "message_category": category.value,
                **extra,
            },
        )
