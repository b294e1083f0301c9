"""Tests for the do-not-contact registry."""

from datetime import timedelta

import pytest

PHONE = "+14165550123"


class TestAddRemove:
    @pytest.mark.asyncio
    async def test_add_and_lookup(self, dnc, store):
        from src.compliance.models import AuditEventType, DncSource

        assert await dnc.add_to_dnc("416-555-0123", DncSource.MANUAL_ENTRY, tenant_id="t1")
        assert await dnc.is_on_dnc(PHONE, tenant_id="t1")
        assert not await dnc.is_on_dnc(PHONE, tenant_id="t2")
        assert (await store.list_audit("t1"))[-1].event_type == AuditEventType.DNC_ADDED

    @pytest.mark.asyncio
    async def test_duplicate_in_same_scope(self, dnc, store, clock):
        from src.compliance.models import DncSource

        assert await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, tenant_id="t1")
        assert not await dnc.add_to_dnc(PHONE, DncSource.COMPLAINT, tenant_id="t1")
        assert await store.count_effective_dnc("t1", clock.now) == 1

    @pytest.mark.asyncio
    async def test_same_number_in_different_scopes(self, dnc, store, clock):
        from src.compliance.models import DncSource

        assert await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, tenant_id="t1")
        assert await dnc.add_to_dnc(PHONE, DncSource.NATIONAL_REGISTRY)
        assert await store.count_effective_dnc("t1", clock.now) == 2

    @pytest.mark.asyncio
    async def test_global_lookup_ignores_tenant_entries(self, dnc):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, tenant_id="t1")
        assert not await dnc.is_on_dnc(PHONE)

        await dnc.add_to_dnc(PHONE, DncSource.NATIONAL_REGISTRY)
        assert await dnc.is_on_dnc(PHONE)
        assert await dnc.is_on_dnc(PHONE, tenant_id="t2")

    @pytest.mark.asyncio
    async def test_remove(self, dnc, store):
        from src.compliance.models import AuditEventType, DncSource

        await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, tenant_id="t1")
        assert await dnc.remove_from_dnc(PHONE, tenant_id="t1", reason="customer request") == 1
        assert not await dnc.is_on_dnc(PHONE, tenant_id="t1")
        last = (await store.list_audit("t1"))[-1]
        assert last.event_type == AuditEventType.DNC_REMOVED
        assert last.event_data["reason"] == "customer request"

    @pytest.mark.asyncio
    async def test_remove_only_touches_given_scope(self, dnc):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc(PHONE, DncSource.NATIONAL_REGISTRY)
        assert await dnc.remove_from_dnc(PHONE, tenant_id="t1") == 0
        assert await dnc.is_on_dnc(PHONE)

    @pytest.mark.asyncio
    async def test_removed_number_can_be_re_added(self, dnc):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc(PHONE, DncSource.INTERNAL)
        await dnc.remove_from_dnc(PHONE)
        assert await dnc.add_to_dnc(PHONE, DncSource.INTERNAL)

    @pytest.mark.asyncio
    async def test_expiry(self, dnc, clock):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, expires_at=clock.now + timedelta(days=30))
        assert await dnc.is_on_dnc(PHONE)
        clock.advance(days=31)
        assert not await dnc.is_on_dnc(PHONE)
        assert not await dnc.is_on_dnc(PHONE, tenant_id="t1")

    @pytest.mark.asyncio
    async def test_naive_expiry_is_read_as_utc(self, dnc, store, clock):
        from datetime import datetime, timezone

        from src.compliance.models import DncSource
        from src.compliance.phone import hash_phone

        await dnc.add_to_dnc(PHONE, DncSource.NATIONAL_REGISTRY, expires_at=datetime(2030, 1, 1))
        assert await dnc.is_on_dnc(PHONE)
        assert await dnc.is_on_dnc(PHONE, tenant_id="t1")
        entry = await store.find_effective_dnc("t1", hash_phone(PHONE), clock.now)
        assert entry.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_re_add_after_expiry(self, dnc, engine, recorder, clock, full_consent):
        from src.compliance.models import BlockCode, DncSource, MessageCategory

        await recorder.record_consent("t1", PHONE, full_consent)
        await dnc.add_to_dnc(PHONE, DncSource.INTERNAL, tenant_id="t1", expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)
        assert not await dnc.is_on_dnc(PHONE, tenant_id="t1")

        assert await dnc.add_to_dnc(PHONE, DncSource.COMPLAINT, tenant_id="t1")
        assert await dnc.is_on_dnc(PHONE, tenant_id="t1")
        result = await engine.check_compliance("t1", PHONE, MessageCategory.MARKETING)
        assert result.block_code == BlockCode.DNC

    @pytest.mark.asyncio
    async def test_complaint_surfaces_first(self, dnc, store, clock):
        from src.compliance.models import DncSource
        from src.compliance.phone import hash_phone

        await dnc.add_to_dnc(PHONE, DncSource.NATIONAL_REGISTRY)
        await dnc.add_to_dnc(PHONE, DncSource.COMPLAINT, tenant_id="t1")
        entry = await store.find_effective_dnc("t1", hash_phone(PHONE), clock.now)
        assert entry.source == DncSource.COMPLAINT

    @pytest.mark.asyncio
    async def test_invalid_number_raises(self, dnc):
        from src.compliance.models import DncSource
        from src.compliance.phone import InvalidPhoneNumberError

        with pytest.raises(InvalidPhoneNumberError):
            await dnc.add_to_dnc("555", DncSource.INTERNAL)


class TestBulkImport:
    @pytest.mark.asyncio
    async def test_import_counts(self, dnc):
        from src.compliance.models import DncSource

        result = await dnc.bulk_import(
            ["+14165550001", "416-555-0002", "(416) 555-0001", "garbage", "+14165550003"],
            DncSource.NATIONAL_REGISTRY,
        )
        assert result.total == 5
        assert result.added == 3
        assert result.duplicates == 1
        assert result.errors == 1

    @pytest.mark.asyncio
    async def test_import_is_idempotent(self, dnc, store, clock):
        from src.compliance.models import DncSource

        phones = [f"+1416555{n:04d}" for n in range(25)]
        first = await dnc.bulk_import(phones, DncSource.API_IMPORT, tenant_id="t1")
        second = await dnc.bulk_import(phones, DncSource.API_IMPORT, tenant_id="t1")

        assert first.added == 25
        assert second.added == 0
        assert second.duplicates == second.total == 25
        assert await store.count_effective_dnc("t1", clock.now) == 25

    @pytest.mark.asyncio
    async def test_import_batches(self, store, audit, clock):
        from unittest.mock import AsyncMock

        from src.compliance.dnc import DncRegistry
        from src.compliance.models import DncSource

        registry = DncRegistry(store, audit, clock=clock, batch_size=10)
        store.insert_dnc_entries = AsyncMock(side_effect=store.insert_dnc_entries)

        result = await registry.bulk_import([f"+1416555{n:04d}" for n in range(25)], DncSource.API_IMPORT)
        assert result.added == 25
        assert [len(call.args[0]) for call in store.insert_dnc_entries.await_args_list] == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_import_skips_existing_entries(self, dnc):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc("+14165550001", DncSource.INTERNAL)
        result = await dnc.bulk_import(["+14165550001", "+14165550002"], DncSource.NATIONAL_REGISTRY)
        assert result.added == 1
        assert result.duplicates == 1

    @pytest.mark.asyncio
    async def test_import_is_audited(self, dnc, store):
        from src.compliance.models import AuditEventType, DncSource

        await dnc.bulk_import(["+14165550001"], DncSource.API_IMPORT, tenant_id="t1")
        last = (await store.list_audit("t1"))[-1]
        assert last.event_type == AuditEventType.DNC_BULK_IMPORT
        assert last.event_data["added"] == 1

    @pytest.mark.asyncio
    async def test_import_replaces_expired_entries(self, dnc, clock):
        from src.compliance.models import DncSource

        await dnc.add_to_dnc("+14165550001", DncSource.INTERNAL, expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)
        result = await dnc.bulk_import(["+14165550001"], DncSource.NATIONAL_REGISTRY)
        assert result.added == 1
        assert result.duplicates == 0
        assert await dnc.is_on_dnc("+14165550001")
