"""Consent and opt-out state transitions.

``ConsentRecorder`` is the only writer of consent and opt-out records. The
store methods it calls delete the pair's cached decision before returning,
so a recorded revocation is visible to the very next compliance check.

Consent invariants:
- At most one active ``ConsentRecord`` per (tenant, recipient). Recording
  consent for a recipient who already has one upgrades that record in place;
  each grant is preserved in the audit log.
- An explicit consent grant re-opts the recipient in: every open opt-out is
  stamped with ``reopted_in_at`` and a link to the new consent record.
- Auto-recorded first-contact consent never clears an opt-out.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .audit import AuditLogger
from .models import (
    ActorType,
    AuditEventType,
    ConsentBasis,
    ConsentBasisType,
    ConsentDetails,
    ConsentRecord,
    ConsentScope,
    ConsentSource,
    ConsentType,
    OptOutReason,
    OptOutRecord,
    utcnow,
)
from .phone import mask_phone, phone_key
from .store import ComplianceStore, DuplicateActiveConsentError

logger = logging.getLogger(__name__)

# Auto-recorded consent covers everything except promotional offers.
FIRST_CONTACT_SCOPE = ConsentScope(marketing=True, transactional=True, promotional=False, reminders=True)

_BASIS_SOURCE: dict[ConsentBasisType, ConsentSource] = {
    ConsentBasisType.MISSED_CALL: ConsentSource.PHONE_RECORDING,
    ConsentBasisType.FORM_SUBMISSION: ConsentSource.WEB_FORM,
    ConsentBasisType.LEAD_REPLY: ConsentSource.TEXT_OPTIN,
    ConsentBasisType.EXISTING_CUSTOMER: ConsentSource.EXISTING_CUSTOMER,
}

_BASIS_LANGUAGE: dict[ConsentBasisType, str] = {
    ConsentBasisType.MISSED_CALL: (
        "Implied consent from inbound call (inquiry) under CASL s.10(9)(b). Valid for 6 months."
    ),
    ConsentBasisType.FORM_SUBMISSION: (
        "Implied consent from form submission (inquiry) under CASL s.10(9)(b). Valid for 6 months."
    ),
    ConsentBasisType.LEAD_REPLY: "Express consent from SMS reply. Lead initiated further conversation.",
    ConsentBasisType.EXISTING_CUSTOMER: (
        "Implied consent from existing business relationship under CASL s.10(9)(a). "
        "Valid for 2 years from last transaction."
    ),
}

LEAD_REPLY_UPGRADE_LANGUAGE = "Lead replied to automated message, constituting express consent under CASL."


def consent_details_for_basis(basis: ConsentBasis) -> ConsentDetails:
    """Consent details auto-recorded for a first-contact basis.

    Raises:
        ValueError: For ``existing_consent``, which never records anything.
    """
    if basis.type not in _BASIS_SOURCE:
        raise ValueError(f"consent basis {basis.type.value} does not record consent")
    return ConsentDetails(
        consent_type=(
            ConsentType.EXPRESS_WRITTEN
            if basis.type == ConsentBasisType.LEAD_REPLY
            else ConsentType.IMPLIED
        ),
        consent_source=_BASIS_SOURCE[basis.type],
        scope=FIRST_CONTACT_SCOPE,
        consent_language=_BASIS_LANGUAGE[basis.type],
        recording_url=f"twilio:call:{basis.call_sid}" if basis.call_sid else None,
        form_url=f"form:submission:{basis.form_submission_id}" if basis.form_submission_id else None,
    )


class ConsentRecorder:
    """Records consent grants, upgrades, opt-outs and re-opt-ins."""

    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    async def record_consent(
        self,
        tenant_id: str,
        phone: str,
        details: ConsentDetails,
        *,
        actor_type: ActorType = ActorType.API,
        actor_id: str | None = None,
    ) -> str:
        """Record a consent grant and re-opt the recipient in.

        Args:
            tenant_id: Tenant the consent is granted to.
            phone: Recipient phone number (any normalizable format).
            details: Type, source, scope, language and evidence of the grant.
            actor_type: Who recorded it, for the audit trail.
            actor_id: Optional identifier of the actor.

        Returns:
            ID of the active consent record (new or upgraded).

        Raises:
            InvalidPhoneNumberError: If ``phone`` cannot be normalized.
        """
        normalized, phone_hash = phone_key(phone)
        now = self._clock()

        record, upgraded = await self._write_consent(tenant_id, normalized, phone_hash, details, now)
        reopted = await self._store.mark_opt_outs_reopted(tenant_id, phone_hash, record.id, now)

        logger.info(
            "Consent %s tenant=%s phone=%s type=%s source=%s reopted=%d",
            "upgraded" if upgraded else "recorded",
            tenant_id,
            mask_phone(normalized),
            details.consent_type.value,
            details.consent_source.value,
            reopted,
        )
        await self._audit.log(
            AuditEventType.CONSENT_UPGRADED if upgraded else AuditEventType.CONSENT_RECORDED,
            tenant_id,
            phone_number=normalized,
            phone_hash=phone_hash,
            consent_id=record.id,
            event_data={
                "consent_type": details.consent_type.value,
                "consent_source": details.consent_source.value,
                "scope": details.scope.model_dump(),
                "consent_language": details.consent_language,
                "reopted_in": reopted > 0,
            },
            actor_type=actor_type,
            actor_id=actor_id,
        )
        return record.id

    async def _write_consent(
        self,
        tenant_id: str,
        phone: str,
        phone_hash: str,
        details: ConsentDetails,
        now: datetime,
    ) -> tuple[ConsentRecord, bool]:
        existing = await self._store.get_active_consent(tenant_id, phone_hash)
        if existing is not None:
            return await self._upgrade(existing, details, now), True

        record = ConsentRecord(
            tenant_id=tenant_id,
            phone_hash=phone_hash,
            phone_number=phone,
            consent_timestamp=now,
            created_at=now,
            updated_at=now,
            **details.model_dump(),
        )
        try:
            return await self._store.insert_consent(record), False
        except DuplicateActiveConsentError as exc:
            # A concurrent writer won the insert; fold this grant into its record.
            logger.info("Concurrent consent insert for phone=%s, upgrading winner", mask_phone(phone))
            return await self._upgrade(exc.existing, details, now), True

    async def _upgrade(self, existing: ConsentRecord, details: ConsentDetails, now: datetime) -> ConsentRecord:
        updated = existing.model_copy(
            update={
                **details.model_dump(exclude={"scope"}),
                "scope": details.scope.model_copy(),
                "consent_timestamp": now,
                "updated_at": now,
            }
        )
        return await self._store.update_consent(updated)

    async def record_opt_out(
        self,
        tenant_id: str,
        phone: str,
        reason: OptOutReason,
        trigger_message: str | None = None,
        trigger_message_id: str | None = None,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ) -> None:
        """Record an opt-out and deactivate the recipient's active consent.

        Raises:
            InvalidPhoneNumberError: If ``phone`` cannot be normalized.
        """
        normalized, phone_hash = phone_key(phone)
        now = self._clock()

        record = await self._store.insert_opt_out(
            OptOutRecord(
                tenant_id=tenant_id,
                phone_hash=phone_hash,
                phone_number=normalized,
                reason=reason,
                opt_out_timestamp=now,
                trigger_message=trigger_message,
                trigger_message_id=trigger_message_id,
            )
        )
        revoked = await self._store.deactivate_consents(
            tenant_id, phone_hash, revoked_at=now, reason=f"Opted out: {reason.value}"
        )

        logger.info(
            "Opt-out recorded tenant=%s phone=%s reason=%s revoked=%d",
            tenant_id,
            mask_phone(normalized),
            reason.value,
            revoked,
        )
        await self._audit.log(
            AuditEventType.OPT_OUT_RECORDED,
            tenant_id,
            phone_number=normalized,
            phone_hash=phone_hash,
            message_id=trigger_message_id,
            event_data={
                "opt_out_id": record.id,
                "reason": reason.value,
                "trigger_message": trigger_message,
                "consents_revoked": revoked,
            },
            actor_type=actor_type,
            actor_id=actor_id,
        )

    async def ensure_consent_recorded(
        self, tenant_id: str, phone: str, basis: ConsentBasis
    ) -> str | None:
        """Auto-record consent for a first-contact flow.

        An existing active record is kept; a ``lead_reply`` upgrades an
        implied record to express written consent. A recipient who is
        currently opted out is left untouched.

        Returns:
            The active consent ID, or ``None`` when nothing was recorded.
        """
        if basis.type == ConsentBasisType.EXISTING_CONSENT:
            return None

        normalized, phone_hash = phone_key(phone)
        existing = await self._store.get_active_consent(tenant_id, phone_hash)
        if existing is not None:
            if basis.type == ConsentBasisType.LEAD_REPLY and existing.consent_type == ConsentType.IMPLIED:
                await self._upgrade_lead_reply(existing, normalized)
            return existing.id

        if await self._store.get_current_opt_out(tenant_id, phone_hash) is not None:
            logger.info(
                "Skipping auto-consent for opted-out phone=%s tenant=%s basis=%s",
                mask_phone(normalized),
                tenant_id,
                basis.type.value,
            )
            return None

        return await self.record_consent(
            tenant_id, normalized, consent_details_for_basis(basis), actor_type=ActorType.SYSTEM
        )

    async def _upgrade_lead_reply(self, existing: ConsentRecord, phone: str) -> None:
        now = self._clock()
        updated = existing.model_copy(
            update={
                "consent_type": ConsentType.EXPRESS_WRITTEN,
                "consent_source": ConsentSource.TEXT_OPTIN,
                "consent_language": LEAD_REPLY_UPGRADE_LANGUAGE,
                "updated_at": now,
            }
        )
        await self._store.update_consent(updated)
        await self._audit.log(
            AuditEventType.CONSENT_UPGRADED,
            existing.tenant_id,
            phone_number=phone,
            phone_hash=existing.phone_hash,
            consent_id=existing.id,
            event_data={
                "from_type": existing.consent_type.value,
                "to_type": ConsentType.EXPRESS_WRITTEN.value,
                "basis": ConsentBasisType.LEAD_REPLY.value,
            },
        )
