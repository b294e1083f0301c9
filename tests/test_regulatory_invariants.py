"""Regulatory invariant tests -- assert guarantees that must NEVER be violated.

These tests verify fundamental regulatory properties that are independent
of implementation details. They are the "safety net" that prevents
regressions in compliance-critical paths.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

PHONE = "+14165550123"


def _details(consent_type="express_written", source="web_form", **scope):
    from src.compliance.models import ConsentDetails, ConsentScope, ConsentSource, ConsentType

    return ConsentDetails(
        consent_type=ConsentType(consent_type),
        consent_source=ConsentSource(source),
        scope=ConsentScope(**scope) if scope else ConsentScope.full(),
        consent_language="Consent on file.",
    )


class TestOptOutPrecedence:
    """An opted-out recipient can never be messaged, whatever else is on file."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("consent_type", ["express_written", "express_oral", "implied", "transactional"])
    @pytest.mark.parametrize("category", ["marketing", "transactional"])
    async def test_opt_out_always_blocks(self, engine, recorder, store, consent_type, category):
        from src.compliance.models import MessageCategory, OptOutReason
        from src.compliance.phone import hash_phone

        await recorder.record_consent("t1", PHONE, _details(consent_type))
        await recorder.record_opt_out("t1", PHONE, OptOutReason.STOP_KEYWORD)
        # Even a consent record reactivated behind the recorder's back must not win.
        consent = (await store.list_consents("t1"))[0]
        await store.update_consent(consent.model_copy(update={"is_active": True}))
        assert await store.get_active_consent("t1", hash_phone(PHONE)) is not None

        result = await engine.check_compliance("t1", PHONE, MessageCategory(category))
        assert result.can_send is False
        assert result.is_opted_out


class TestDncComplaintHardness:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("source", ["national_registry", "internal", "manual_entry", "api_import"])
    async def test_non_complaint_blocks_marketing_only(self, engine, recorder, dnc, source):
        from src.compliance.models import DncSource, MessageCategory

        await recorder.record_consent("t1", PHONE, _details())
        await dnc.add_to_dnc(PHONE, DncSource(source), tenant_id="t1")
        assert not (await engine.check_compliance("t1", PHONE, MessageCategory.MARKETING)).can_send
        assert (await engine.check_compliance("t1", PHONE, MessageCategory.TRANSACTIONAL)).can_send

    @pytest.mark.asyncio
    async def test_complaint_blocks_both(self, engine, recorder, dnc):
        from src.compliance.models import DncSource, MessageCategory

        await recorder.record_consent("t1", PHONE, _details())
        await dnc.add_to_dnc(PHONE, DncSource.COMPLAINT, tenant_id="t1")
        assert not (await engine.check_compliance("t1", PHONE, MessageCategory.MARKETING)).can_send
        assert not (await engine.check_compliance("t1", PHONE, MessageCategory.TRANSACTIONAL)).can_send


class TestQuietHoursWraparound:
    @pytest.mark.parametrize("hour", range(24))
    def test_window_21_to_8(self, hour):
        from src.compliance.models import QuietHoursConfig
        from src.compliance.quiet_hours import QuietHoursEvaluator

        config = QuietHoursConfig(tenant_id="t1", quiet_start_hour=21, quiet_end_hour=8)
        now = datetime(2026, 3, 18, hour, tzinfo=timezone.utc)
        blocked = QuietHoursEvaluator().evaluate(config, now, "UTC").blocked
        assert blocked == (hour >= 21 or hour < 8)


class TestConsentExpiryBoundaries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "source,window,label",
        [("web_form", 180, "6 months"), ("existing_customer", 730, "2 years")],
    )
    async def test_expired_one_second_past_window(self, engine, recorder, clock, source, window, label):
        from src.compliance.models import BlockCode

        await recorder.record_consent("t1", PHONE, _details("implied", source))
        clock.advance(days=window, seconds=1)
        result = await engine.check_compliance("t1", PHONE)
        assert result.block_code == BlockCode.CONSENT_EXPIRED
        assert label in result.block_reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,window", [("web_form", 180), ("existing_customer", 730)])
    async def test_valid_one_day_before_window(self, engine, recorder, clock, source, window):
        await recorder.record_consent("t1", PHONE, _details("implied", source))
        clock.advance(days=window - 1)
        result = await engine.check_compliance("t1", PHONE)
        assert result.can_send
        assert any("expiring soon" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_no_expiry_warning_outside_last_30_days(self, engine, recorder, clock):
        await recorder.record_consent("t1", PHONE, _details("implied"))
        clock.advance(days=149)
        result = await engine.check_compliance("t1", PHONE)
        assert result.can_send
        assert not any("expiring soon" in w for w in result.warnings)


class TestReOptIn:
    @pytest.mark.asyncio
    async def test_consent_after_opt_out_reenables(self, engine, recorder, store):
        from src.compliance.models import OptOutReason

        await recorder.record_opt_out("t1", PHONE, OptOutReason.STOP_KEYWORD)
        await recorder.record_consent("t1", PHONE, _details())

        result = await engine.check_compliance("t1", PHONE)
        assert result.has_consent
        assert result.can_send
        assert (await store.list_opt_outs("t1"))[0].reopted_in_at is not None


class TestCacheNeverMasksRevocation:
    @pytest.mark.asyncio
    async def test_next_check_after_opt_out_is_blocked(self, engine, recorder, store):
        from src.compliance.models import OptOutReason
        from src.compliance.phone import hash_phone

        await recorder.record_consent("t1", PHONE, _details())
        assert (await engine.check_compliance("t1", PHONE)).can_send
        assert await store.get_cached_decision("t1", hash_phone(PHONE)) is not None

        await recorder.record_opt_out("t1", PHONE, OptOutReason.STOP_KEYWORD)
        assert not (await engine.check_compliance("t1", PHONE)).can_send


class TestMonthlyCapFirst:
    @pytest.mark.asyncio
    async def test_cap_blocks_before_any_compliance_lookup(self, store, state, recorder, transport, audit, clock):
        from src.compliance.gateway import ComplianceGateway
        from src.compliance.models import BlockCode, SendMessageRequest, TenantAccount
        from src.state_backend import monthly_counter_key

        await store.save_tenant(TenantAccount(tenant_id="t1", monthly_message_limit=1))
        await recorder.record_consent("t1", PHONE, _details())
        state.increment(monthly_counter_key("t1", clock.now))

        engine = MagicMock()
        engine.check_compliance = AsyncMock()
        gateway = ComplianceGateway(store, state, engine, recorder, transport, audit, clock=clock)
        result = await gateway.send_compliant_message(
            SendMessageRequest(tenant_id="t1", to=PHONE, from_="+14165559999", body="hi")
        )
        assert result.block_code == BlockCode.MONTHLY_LIMIT
        engine.check_compliance.assert_not_awaited()
        transport.send_raw_message.assert_not_awaited()


class TestBulkImportIdempotence:
    @pytest.mark.asyncio
    async def test_second_import_adds_nothing(self, dnc):
        from src.compliance.models import DncSource

        phones = [f"+1416555{n:04d}" for n in range(50)]
        await dnc.bulk_import(phones, DncSource.NATIONAL_REGISTRY)
        second = await dnc.bulk_import(phones, DncSource.NATIONAL_REGISTRY)
        assert second.added == 0
        assert second.duplicates == second.total == 50


class TestEndToEndFirstContact:
    @pytest.mark.asyncio
    async def test_missed_call_under_monthly_limit(self, gateway, store, state, clock):
        from src.compliance.models import (
            BlockCode,
            ConsentBasis,
            ConsentBasisType,
            ConsentSource,
            ConsentType,
            SendMessageRequest,
            TenantAccount,
        )
        from src.compliance.phone import hash_phone
        from src.state_backend import monthly_counter_key

        await store.save_tenant(TenantAccount(tenant_id="t1", monthly_message_limit=2))
        key = monthly_counter_key("t1", clock.now)
        state.increment(key)

        request = SendMessageRequest(
            tenant_id="t1",
            to=PHONE,
            from_="+14165559999",
            body="Sorry we missed your call!",
            consent_basis=ConsentBasis(type=ConsentBasisType.MISSED_CALL, call_sid="CA123"),
        )
        result = await gateway.send_compliant_message(request)
        assert result.sent

        consent = await store.get_active_consent("t1", hash_phone(PHONE))
        assert consent.consent_type == ConsentType.IMPLIED
        assert consent.consent_source == ConsentSource.PHONE_RECORDING
        assert state.get_count(key) == 2

        clock.advance(minutes=1)
        third = await gateway.send_compliant_message(request)
        assert third.blocked
        assert third.block_code == BlockCode.MONTHLY_LIMIT
        assert "limit" in third.block_reason

    @pytest.mark.asyncio
    async def test_month_end_send_counts_in_its_own_month(self, gateway, recorder, store, state, clock):
        """Sends near month end count against the month they were sent in."""
        from src.compliance.models import SendMessageRequest, TenantAccount
        from src.state_backend import monthly_counter_key

        await store.save_tenant(TenantAccount(tenant_id="t1", monthly_message_limit=5))
        await recorder.record_consent("t1", PHONE, _details())
        clock.now = datetime(2026, 3, 31, 15, 0, tzinfo=timezone.utc)
        await gateway.send_compliant_message(
            SendMessageRequest(tenant_id="t1", to=PHONE, from_="+14165559999", body="hi")
        )
        assert state.get_count(monthly_counter_key("t1", clock.now)) == 1
        assert state.get_count(monthly_counter_key("t1", clock.now + timedelta(days=1))) == 0
