"""Do-not-contact registry.

DNC entries are independent of consent: they are checked even for numbers
that never interacted with the tenant. An entry with ``tenant_id=None`` is
global and applies to every tenant.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from .audit import AuditLogger
from .models import ActorType, AuditEventType, DncImportResult, DncSource, DoNotContactEntry, as_utc, utcnow
from .phone import InvalidPhoneNumberError, mask_phone, phone_key
from .store import ComplianceStore

logger = logging.getLogger(__name__)


class DncRegistry:
    """Adds, removes, imports and looks up do-not-contact entries."""

    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 1000,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock
        self._batch_size = batch_size

    async def add_to_dnc(
        self,
        phone: str,
        source: DncSource,
        tenant_id: str | None = None,
        source_reference: str | None = None,
        expires_at: datetime | None = None,
        *,
        actor_type: ActorType = ActorType.API,
    ) -> bool:
        """Add a number to the registry.

        Returns:
            ``False`` if an unexpired active entry already exists in the same scope.

        Raises:
            InvalidPhoneNumberError: If ``phone`` cannot be normalized.
        """
        normalized, phone_hash = phone_key(phone)
        expires_at = as_utc(expires_at)
        now = self._clock()
        if await self._store.find_effective_dnc_in_scope(tenant_id, phone_hash, now) is not None:
            logger.debug("DNC entry already active phone=%s tenant=%s", mask_phone(normalized), tenant_id)
            return False

        entry = DoNotContactEntry(
            tenant_id=tenant_id,
            phone_hash=phone_hash,
            phone_number=normalized,
            source=source,
            source_reference=source_reference,
            added_at=now,
            expires_at=expires_at,
        )
        await self._store.insert_dnc_entries([entry])
        logger.info("DNC entry added phone=%s tenant=%s source=%s", mask_phone(normalized), tenant_id, source.value)
        await self._audit.log(
            AuditEventType.DNC_ADDED,
            tenant_id,
            phone_number=normalized,
            phone_hash=phone_hash,
            event_data={
                "source": source.value,
                "source_reference": source_reference,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            actor_type=actor_type,
        )
        return True

    async def remove_from_dnc(
        self,
        phone: str,
        tenant_id: str | None = None,
        reason: str | None = None,
        *,
        actor_type: ActorType = ActorType.API,
    ) -> int:
        """Deactivate active entries for a number in one scope.

        Returns:
            Number of entries deactivated.
        """
        normalized, phone_hash = phone_key(phone)
        removed = await self._store.deactivate_dnc(tenant_id, phone_hash, self._clock(), reason)
        if removed:
            logger.info("DNC entry removed phone=%s tenant=%s count=%d", mask_phone(normalized), tenant_id, removed)
            await self._audit.log(
                AuditEventType.DNC_REMOVED,
                tenant_id,
                phone_number=normalized,
                phone_hash=phone_hash,
                event_data={"reason": reason, "removed": removed},
                actor_type=actor_type,
            )
        return removed

    async def is_on_dnc(self, phone: str, tenant_id: str | None = None) -> bool:
        """Whether an effective entry applies to ``phone``.

        With ``tenant_id`` both global and that tenant's entries count;
        without it only global entries do.
        """
        _, phone_hash = phone_key(phone)
        if tenant_id is None:
            return await self._store.find_effective_dnc_in_scope(None, phone_hash, self._clock()) is not None
        return await self._store.find_effective_dnc(tenant_id, phone_hash, self._clock()) is not None

    async def bulk_import(
        self,
        phones: Iterable[str],
        source: DncSource,
        tenant_id: str | None = None,
        *,
        actor_type: ActorType = ActorType.API,
    ) -> DncImportResult:
        """Import a list of numbers in batches.

        Malformed numbers count as ``errors``. Numbers already active in the
        same scope, or repeated within the import, count as ``duplicates``.
        Importing the same list twice adds nothing the second time.
        """
        result = DncImportResult()
        seen: set[str] = set()
        batch: list[tuple[str, str]] = []

        for raw in phones:
            result.total += 1
            try:
                normalized, phone_hash = phone_key(raw)
            except InvalidPhoneNumberError:
                result.errors += 1
                continue
            if phone_hash in seen:
                result.duplicates += 1
                continue
            seen.add(phone_hash)
            batch.append((normalized, phone_hash))
            if len(batch) >= self._batch_size:
                await self._import_batch(batch, source, tenant_id, result)
                batch = []
        if batch:
            await self._import_batch(batch, source, tenant_id, result)

        logger.info(
            "DNC bulk import tenant=%s source=%s total=%d added=%d duplicates=%d errors=%d",
            tenant_id,
            source.value,
            result.total,
            result.added,
            result.duplicates,
            result.errors,
        )
        await self._audit.log(
            AuditEventType.DNC_BULK_IMPORT,
            tenant_id,
            event_data={
                "source": source.value,
                "total": result.total,
                "added": result.added,
                "duplicates": result.duplicates,
                "errors": result.errors,
            },
            actor_type=actor_type,
        )
        return result

    async def _import_batch(
        self,
        batch: list[tuple[str, str]],
        source: DncSource,
        tenant_id: str | None,
        result: DncImportResult,
    ) -> None:
        now = self._clock()
        existing = await self._store.effective_dnc_hashes(tenant_id, [h for _, h in batch], now)
        entries = [
            DoNotContactEntry(
                tenant_id=tenant_id,
                phone_hash=phone_hash,
                phone_number=normalized,
                source=source,
                added_at=now,
            )
            for normalized, phone_hash in batch
            if phone_hash not in existing
        ]
        result.duplicates += len(batch) - len(entries)
        if entries:
            result.added += await self._store.insert_dnc_entries(entries)
