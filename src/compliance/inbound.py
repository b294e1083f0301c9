"""Inbound SMS keyword handling (STOP / START).

All keyword handling is deterministic. Matching is exact or
"keyword followed by a space", never substring, so "don't stop calling me"
or "startled" never flip a recipient's state.

The handler records state changes and returns a suggested confirmation
reply. It never sends anything itself.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .consent import ConsentRecorder
from .models import (
    ActorType,
    ConsentDetails,
    ConsentScope,
    ConsentSource,
    ConsentType,
    InboundResult,
    OptOutReason,
    RecipientProfile,
    utcnow,
)
from .phone import mask_phone, phone_key
from .store import ComplianceStore

logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS: frozenset[str] = frozenset(
    {
        "stop",
        "unsubscribe",
        "cancel",
        "end",
        "quit",
        "stopall",
        "stop all",
        "opt out",
        "optout",
        "remove",
    }
)

OPT_IN_KEYWORDS: frozenset[str] = frozenset(
    {
        "start",
        "yes",
        "unstop",
        "subscribe",
        "optin",
        "opt in",
    }
)

OPT_OUT_REPLY = (
    "You have been unsubscribed and will no longer receive messages from us. "
    "Reply START to resubscribe."
)
OPT_IN_REPLY = (
    "You have been resubscribed! You will now receive messages from us. "
    "Reply STOP to unsubscribe."
)
OPT_IN_CONSENT_LANGUAGE = (
    "By replying START, you consent to receive automated text messages from us. "
    "Reply STOP to unsubscribe."
)


def _matches(body: str, keywords: frozenset[str]) -> bool:
    normalized = body.strip().lower()
    return any(normalized == kw or normalized.startswith(kw + " ") for kw in keywords)


def is_opt_out_message(body: str) -> bool:
    """Whether an inbound body is an opt-out request."""
    return _matches(body, OPT_OUT_KEYWORDS)


def is_opt_in_message(body: str) -> bool:
    """Whether an inbound body is an opt-in request."""
    return _matches(body, OPT_IN_KEYWORDS)


class OptOutInboundHandler:
    """Applies STOP / START replies to consent, opt-out and profile state."""

    def __init__(
        self,
        store: ComplianceStore,
        recorder: ConsentRecorder,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._clock = clock

    async def classify_inbound_and_handle(
        self,
        tenant_id: str,
        from_phone: str,
        body: str,
        message_id: str | None = None,
    ) -> InboundResult:
        """Classify an inbound message and apply any opt-out or opt-in.

        Args:
            tenant_id: Tenant whose number received the message.
            from_phone: Sender phone number.
            body: Raw inbound text.
            message_id: Provider message ID, linked from the opt-out record.

        Returns:
            ``InboundResult`` with the classification and a suggested reply.
        """
        if is_opt_out_message(body):
            await self._recorder.record_opt_out(
                tenant_id,
                from_phone,
                OptOutReason.STOP_KEYWORD,
                trigger_message=body,
                trigger_message_id=message_id,
                actor_type=ActorType.WEBHOOK,
            )
            await self._mark_profile(tenant_id, from_phone, opted_out=True)
            logger.info("STOP keyword from %s -- opted out", mask_phone(from_phone))
            return InboundResult(is_opt_out=True, handled=True, response_message=OPT_OUT_REPLY)

        if is_opt_in_message(body):
            await self._recorder.record_consent(
                tenant_id,
                from_phone,
                ConsentDetails(
                    consent_type=ConsentType.EXPRESS_WRITTEN,
                    consent_source=ConsentSource.TEXT_OPTIN,
                    scope=ConsentScope.full(),
                    consent_language=OPT_IN_CONSENT_LANGUAGE,
                ),
                actor_type=ActorType.WEBHOOK,
            )
            await self._mark_profile(tenant_id, from_phone, opted_out=False)
            logger.info("START keyword from %s -- opted in", mask_phone(from_phone))
            return InboundResult(is_opt_in=True, handled=True, response_message=OPT_IN_REPLY)

        return InboundResult()

    async def _mark_profile(self, tenant_id: str, phone: str, *, opted_out: bool) -> None:
        normalized, phone_hash = phone_key(phone)
        now = self._clock()
        profile = await self._store.get_recipient_profile(tenant_id, phone_hash) or RecipientProfile(
            tenant_id=tenant_id, phone_hash=phone_hash, phone_number=normalized
        )
        profile.status = "opted_out" if opted_out else "active"
        profile.opted_out = opted_out
        profile.opted_out_at = now if opted_out else None
        profile.updated_at = now
        await self._store.save_recipient_profile(profile)
