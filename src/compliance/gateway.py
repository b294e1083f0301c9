"""Single entry point for every outbound SMS.

``ComplianceGateway.send_compliant_message`` is the only way automation
code sends a message. Pipeline:

0. Normalize the recipient number
1. Tenant lookup and monthly cap (before any consent/DNC lookup)
2. Auto-record first-contact consent from the consent basis
3. Compliance decision (opt-out, DNC, consent, quiet hours, expiry)
4. Race window: consent just recorded but not yet visible, re-check once
5. Send through the transport, audit, atomically count the send

Every blocked outcome writes exactly one ``message_blocked`` audit entry.
Transport failures are audited and re-raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from src.state_backend import StateBackend, monthly_counter_key

from .audit import AuditLogger
from .consent import ConsentRecorder
from .engine import ComplianceDecisionEngine
from .models import (
    AuditEventType,
    BlockCode,
    ConsentBasisType,
    SendMessageRequest,
    SendResult,
    utcnow,
)
from .phone import InvalidPhoneNumberError, hash_phone, mask_phone, normalize_phone
from .store import ComplianceStore
from .transport import SmsTransport

logger = logging.getLogger(__name__)

QUEUED_WARNING = "Message queued for next available window (quiet hours)"
RACE_WARNING = (
    "Consent was just recorded but the compliance check returned no consent; "
    "proceeding with caution"
)


class ComplianceGateway:
    """Orchestrates consent recording, the compliance decision and the send.

    Args:
        store: Compliance store (tenants, consent, cache).
        state_backend: Counter backend holding per-tenant monthly send counts.
        engine: Compliance decision engine.
        recorder: Consent recorder used for first-contact consent.
        transport: Outbound SMS transport.
        audit: Audit logger.
        clock: Returns the current UTC time.
        counter_ttl_seconds: Expiry of a monthly counter key.
    """

    def __init__(
        self,
        store: ComplianceStore,
        state_backend: StateBackend,
        engine: ComplianceDecisionEngine,
        recorder: ConsentRecorder,
        transport: SmsTransport,
        audit: AuditLogger,
        *,
        clock: Callable[[], datetime] = utcnow,
        counter_ttl_seconds: int = 40 * 24 * 3600,
    ) -> None:
        self._store = store
        self._state = state_backend
        self._engine = engine
        self._recorder = recorder
        self._transport = transport
        self._audit = audit
        self._clock = clock
        self._counter_ttl = counter_ttl_seconds

    async def send_compliant_message(self, request: SendMessageRequest) -> SendResult:
        """Check compliance for ``request`` and send, queue or block it.

        Returns:
            ``SendResult`` with exactly one of ``sent``, ``queued``, ``blocked``.

        Raises:
            Exception: Whatever the transport raised (``TransportError`` for
                the Telnyx transport), after a ``message_send_failed`` audit.
        """
        try:
            to = normalize_phone(request.to)
        except InvalidPhoneNumberError:
            return await self._block(
                request, None, None, BlockCode.INVALID_NUMBER, "Invalid recipient phone number"
            )
        phone_hash = hash_phone(to)

        try:
            tenant = await self._store.get_tenant(request.tenant_id)
            if tenant is None or not tenant.is_active:
                return await self._block(request, to, phone_hash, BlockCode.TENANT_NOT_FOUND, "Tenant not found")

            counter_key = monthly_counter_key(request.tenant_id, self._clock())
            if tenant.monthly_message_limit is not None:
                sent_this_month = await asyncio.to_thread(self._state.get_count, counter_key)
                if sent_this_month >= tenant.monthly_message_limit:
                    return await self._block(
                        request,
                        to,
                        phone_hash,
                        BlockCode.MONTHLY_LIMIT,
                        f"Monthly message limit reached ({tenant.monthly_message_limit})",
                        extra={"sent_this_month": sent_this_month},
                    )

            auto_consent_id: str | None = None
            basis = request.consent_basis
            if basis is not None and basis.type != ConsentBasisType.EXISTING_CONSENT:
                auto_consent_id = await self._recorder.ensure_consent_recorded(request.tenant_id, to, basis)
        except Exception:
            return await self._lookup_failed(request, to, phone_hash)

        check = await self._engine.check_compliance(
            request.tenant_id, to, request.message_category, request.recipient_timezone
        )
        warnings = list(check.warnings)
        consent_id = check.consent_id or auto_consent_id

        if check.block_code == BlockCode.NO_CONSENT and auto_consent_id is not None:
            logger.warning(
                "Consent just recorded but not visible tenant=%s phone=%s, re-checking",
                request.tenant_id,
                mask_phone(to),
            )
            try:
                await self._store.invalidate_cached_decision(request.tenant_id, phone_hash)
            except Exception:
                return await self._lookup_failed(request, to, phone_hash, consent_id=auto_consent_id)
            check = await self._engine.check_compliance(
                request.tenant_id, to, request.message_category, request.recipient_timezone
            )
            warnings = list(check.warnings)
            consent_id = check.consent_id or auto_consent_id
            if check.block_code == BlockCode.NO_CONSENT:
                # Opt-out and DNC were already clear; only quiet hours remain to check.
                warnings = [RACE_WARNING]
                try:
                    quiet = await self._engine.evaluate_quiet_hours(request.tenant_id, request.recipient_timezone)
                except Exception:
                    return await self._lookup_failed(request, to, phone_hash, consent_id=consent_id)
                if quiet.blocked:
                    return await self._quiet_hours_outcome(
                        request, to, phone_hash, quiet.reason or "Quiet hours", consent_id, warnings
                    )
                return await self._send(request, to, phone_hash, consent_id, warnings)

        if not check.can_send:
            if check.block_code == BlockCode.QUIET_HOURS:
                return await self._quiet_hours_outcome(
                    request, to, phone_hash, check.block_reason or "Quiet hours", consent_id, warnings
                )
            return await self._block(
                request,
                to,
                phone_hash,
                check.block_code or BlockCode.LOOKUP_FAILED,
                check.block_reason or "Blocked by compliance check",
                consent_id=consent_id,
                warnings=warnings,
            )

        return await self._send(request, to, phone_hash, consent_id, warnings)

    async def _quiet_hours_outcome(
        self,
        request: SendMessageRequest,
        to: str,
        phone_hash: str,
        reason: str,
        consent_id: str | None,
        warnings: list[str],
    ) -> SendResult:
        queue = request.queue_on_quiet_hours
        if queue is None:
            try:
                config = await self._engine.quiet_hours_config(request.tenant_id)
            except Exception:
                return await self._lookup_failed(request, to, phone_hash, consent_id=consent_id)
            queue = config.queue_during_quiet_hours

        if not queue:
            return await self._block(
                request,
                to,
                phone_hash,
                BlockCode.QUIET_HOURS,
                reason,
                consent_id=consent_id,
                warnings=warnings,
            )

        logger.info("Message queued for quiet hours tenant=%s phone=%s", request.tenant_id, mask_phone(to))
        await self._audit.log(
            AuditEventType.MESSAGE_QUEUED,
            request.tenant_id,
            phone_number=to,
            phone_hash=phone_hash,
            consent_id=consent_id,
            event_data=self._event_data(request, reason=reason),
        )
        return SendResult(
            queued=True,
            consent_id=consent_id,
            block_reason=reason,
            block_code=BlockCode.QUIET_HOURS,
            warnings=[*warnings, QUEUED_WARNING],
        )

    async def _send(
        self,
        request: SendMessageRequest,
        to: str,
        phone_hash: str,
        consent_id: str | None,
        warnings: list[str],
    ) -> SendResult:
        try:
            message_id = await self._transport.send_raw_message(
                to, request.from_, request.body, request.media_urls
            )
        except Exception as exc:
            logger.error(
                "Transport send failed tenant=%s phone=%s: %s",
                request.tenant_id,
                mask_phone(to),
                exc,
            )
            await self._audit.log(
                AuditEventType.MESSAGE_SEND_FAILED,
                request.tenant_id,
                phone_number=to,
                phone_hash=phone_hash,
                consent_id=consent_id,
                event_data=self._event_data(request, error_type=type(exc).__name__),
                success=False,
                error_message=str(exc),
            )
            raise

        await self._audit.log(
            AuditEventType.MESSAGE_SENT,
            request.tenant_id,
            phone_number=to,
            phone_hash=phone_hash,
            consent_id=consent_id,
            message_id=message_id,
            event_data=self._event_data(request),
        )
        counter_key = monthly_counter_key(request.tenant_id, self._clock())
        try:
            await asyncio.to_thread(self._state.increment, counter_key, self._counter_ttl)
        except Exception:
            # The message is already out; an uncounted send must not turn into an error.
            logger.exception("Monthly counter increment failed tenant=%s", request.tenant_id)

        logger.info(
            "Message sent tenant=%s phone=%s message_id=%s",
            request.tenant_id,
            mask_phone(to),
            message_id,
        )
        return SendResult(sent=True, message_id=message_id, consent_id=consent_id, warnings=warnings)

    async def _lookup_failed(
        self,
        request: SendMessageRequest,
        to: str,
        phone_hash: str,
        *,
        consent_id: str | None = None,
    ) -> SendResult:
        logger.exception(
            "Compliance lookup failed tenant=%s phone=%s, failing closed",
            request.tenant_id,
            mask_phone(to),
        )
        return await self._block(
            request, to, phone_hash, BlockCode.LOOKUP_FAILED, "Compliance lookup failed", consent_id=consent_id
        )

    async def _block(
        self,
        request: SendMessageRequest,
        to: str | None,
        phone_hash: str | None,
        code: BlockCode,
        reason: str,
        *,
        consent_id: str | None = None,
        warnings: list[str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> SendResult:
        logger.info(
            "Message blocked tenant=%s phone=%s code=%s",
            request.tenant_id,
            mask_phone(to or request.to),
            code.value,
        )
        await self._audit.log(
            AuditEventType.MESSAGE_BLOCKED,
            request.tenant_id,
            phone_number=to,
            phone_hash=phone_hash,
            consent_id=consent_id,
            event_data=self._event_data(request, reason=reason, block_code=code.value, **(extra or {})),
        )
        return SendResult(
            blocked=True,
            block_reason=reason,
            block_code=code,
            consent_id=consent_id,
            warnings=warnings or [],
        )

    @staticmethod
    def _event_data(request: SendMessageRequest, **fields: Any) -> dict[str, Any]:
        return {
            **request.metadata,
            "message_category": request.message_category.value,
            "lead_id": request.lead_id,
            "consent_basis": request.consent_basis.type.value if request.consent_basis else None,
            **fields,
        }
