"""Compliance persistence: consent, opt-out, DNC, tenant config, cache, audit.

``ComplianceStore`` is the single seam between the policy components and
whatever database backs them. Every component receives a store through its
constructor; nothing in the subsystem opens its own connection.

The decision cache lives behind the same interface. Every mutation of
consent, opt-out, or DNC state deletes the affected cache entries inside the
mutating method itself, so no caller can write state and forget to
invalidate.

``InMemoryComplianceStore`` is the default backend (local dev, tests,
single-container deployments). Its methods never yield to the event loop
between a check and the write that depends on it, so each method is atomic
on the event loop.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache

from cachetools import TTLCache

from .models import (
    AuditLogEntry,
    ComplianceCacheEntry,
    ConsentRecord,
    DncSource,
    DoNotContactEntry,
    OptOutRecord,
    QuietHoursConfig,
    RecipientProfile,
    TenantAccount,
)

logger = logging.getLogger(__name__)


class DuplicateActiveConsentError(Exception):
    """An active consent record already exists for the (tenant, recipient) pair."""

    def __init__(self, existing: ConsentRecord) -> None:
        super().__init__(f"active consent {existing.id} already exists")
        self.existing = existing


class ComplianceStore(ABC):
    """Async data access for the compliance subsystem."""

    # -- Consent -------------------------------------------------------------

    @abstractmethod
    async def get_active_consent(self, tenant_id: str, phone_hash: str) -> ConsentRecord | None: ...

    @abstractmethod
    async def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        """Insert a new active record.

        Raises:
            DuplicateActiveConsentError: If the pair already has an active record.
        """

    @abstractmethod
    async def update_consent(self, record: ConsentRecord) -> ConsentRecord: ...

    @abstractmethod
    async def deactivate_consents(
        self, tenant_id: str, phone_hash: str, revoked_at: datetime, reason: str
    ) -> int: ...

    @abstractmethod
    async def list_consents(self, tenant_id: str) -> list[ConsentRecord]: ...

    # -- Opt-out -------------------------------------------------------------

    @abstractmethod
    async def get_current_opt_out(self, tenant_id: str, phone_hash: str) -> OptOutRecord | None: ...

    @abstractmethod
    async def insert_opt_out(self, record: OptOutRecord) -> OptOutRecord: ...

    @abstractmethod
    async def mark_opt_outs_reopted(
        self, tenant_id: str, phone_hash: str, consent_id: str, reopted_at: datetime
    ) -> int: ...

    @abstractmethod
    async def list_opt_outs(self, tenant_id: str) -> list[OptOutRecord]: ...

    # -- Do-not-contact ------------------------------------------------------

    @abstractmethod
    async def find_effective_dnc(
        self, tenant_id: str, phone_hash: str, now: datetime
    ) -> DoNotContactEntry | None:
        """Most restrictive effective global or tenant-scoped entry, if any."""

    @abstractmethod
    async def find_effective_dnc_in_scope(
        self, tenant_id: str | None, phone_hash: str, now: datetime
    ) -> DoNotContactEntry | None:
        """Unexpired active entry in exactly this scope (``None`` = global only)."""

    @abstractmethod
    async def effective_dnc_hashes(
        self, tenant_id: str | None, phone_hashes: list[str], now: datetime
    ) -> set[str]: ...

    @abstractmethod
    async def insert_dnc_entries(self, entries: list[DoNotContactEntry]) -> int: ...

    @abstractmethod
    async def deactivate_dnc(
        self, tenant_id: str | None, phone_hash: str, removed_at: datetime, reason: str | None
    ) -> int: ...

    @abstractmethod
    async def count_effective_dnc(self, tenant_id: str, now: datetime) -> int:
        """Unexpired active entries that apply to ``tenant_id`` (global + its own)."""

    # -- Tenant configuration and profiles -----------------------------------

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> TenantAccount | None: ...

    @abstractmethod
    async def save_tenant(self, tenant: TenantAccount) -> None: ...

    @abstractmethod
    async def get_quiet_hours_config(self, tenant_id: str) -> QuietHoursConfig | None: ...

    @abstractmethod
    async def save_quiet_hours_config(self, config: QuietHoursConfig) -> None: ...

    @abstractmethod
    async def get_recipient_profile(self, tenant_id: str, phone_hash: str) -> RecipientProfile | None: ...

    @abstractmethod
    async def save_recipient_profile(self, profile: RecipientProfile) -> None: ...

    # -- Decision cache ------------------------------------------------------

    @abstractmethod
    async def get_cached_decision(self, tenant_id: str, phone_hash: str) -> ComplianceCacheEntry | None: ...

    @abstractmethod
    async def put_cached_decision(self, entry: ComplianceCacheEntry) -> None: ...

    @abstractmethod
    async def invalidate_cached_decision(self, tenant_id: str | None, phone_hash: str) -> None:
        """Delete cached decisions for the pair; ``tenant_id=None`` means every tenant."""

    # -- Audit log (append only) ---------------------------------------------

    @abstractmethod
    async def append_audit(self, entry: AuditLogEntry) -> None: ...

    @abstractmethod
    async def list_audit(
        self,
        tenant_id: str | None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditLogEntry]: ...


class InMemoryComplianceStore(ComplianceStore):
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self, cache_ttl_seconds: int = 300, cache_maxsize: int = 10_000) -> None:
        self._consents: dict[str, ConsentRecord] = {}
        self._opt_outs: dict[str, OptOutRecord] = {}
        self._dnc: dict[str, DoNotContactEntry] = {}
        self._tenants: dict[str, TenantAccount] = {}
        self._quiet_hours: dict[str, QuietHoursConfig] = {}
        self._profiles: dict[tuple[str, str], RecipientProfile] = {}
        self._audit: list[AuditLogEntry] = []
        # TTLCache bounds memory; logical expiry is enforced by the engine via expires_at.
        self._cache: TTLCache = TTLCache(maxsize=cache_maxsize, ttl=cache_ttl_seconds)

    # -- Consent -------------------------------------------------------------

    async def get_active_consent(self, tenant_id: str, phone_hash: str) -> ConsentRecord | None:
        record = self._active_consent(tenant_id, phone_hash)
        return record.model_copy(deep=True) if record else None

    def _active_consent(self, tenant_id: str, phone_hash: str) -> ConsentRecord | None:
        active = [
            r
            for r in self._consents.values()
            if r.tenant_id == tenant_id and r.phone_hash == phone_hash and r.is_active
        ]
        if not active:
            return None
        return max(active, key=lambda r: r.consent_timestamp)

    async def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        existing = self._active_consent(record.tenant_id, record.phone_hash)
        if existing is not None:
            raise DuplicateActiveConsentError(existing.model_copy(deep=True))
        self._consents[record.id] = record.model_copy(deep=True)
        self._drop_cache(record.tenant_id, record.phone_hash)
        return record

    async def update_consent(self, record: ConsentRecord) -> ConsentRecord:
        if record.id not in self._consents:
            raise KeyError(f"consent {record.id} not found")
        self._consents[record.id] = record.model_copy(deep=True)
        self._drop_cache(record.tenant_id, record.phone_hash)
        return record

    async def deactivate_consents(
        self, tenant_id: str, phone_hash: str, revoked_at: datetime, reason: str
    ) -> int:
        count = 0
        for rid, r in self._consents.items():
            if r.tenant_id == tenant_id and r.phone_hash == phone_hash and r.is_active:
                self._consents[rid] = r.model_copy(
                    update={
                        "is_active": False,
                        "revoked_at": revoked_at,
                        "revoked_reason": reason,
                        "updated_at": revoked_at,
                    }
                )
                count += 1
        self._drop_cache(tenant_id, phone_hash)
        return count

    async def list_consents(self, tenant_id: str) -> list[ConsentRecord]:
        return [r.model_copy(deep=True) for r in self._consents.values() if r.tenant_id == tenant_id]

    # -- Opt-out -------------------------------------------------------------

    async def get_current_opt_out(self, tenant_id: str, phone_hash: str) -> OptOutRecord | None:
        current = [
            r
            for r in self._opt_outs.values()
            if r.tenant_id == tenant_id and r.phone_hash == phone_hash and r.is_current
        ]
        if not current:
            return None
        return max(current, key=lambda r: r.opt_out_timestamp).model_copy(deep=True)

    async def insert_opt_out(self, record: OptOutRecord) -> OptOutRecord:
        self._opt_outs[record.id] = record.model_copy(deep=True)
        self._drop_cache(record.tenant_id, record.phone_hash)
        return record

    async def mark_opt_outs_reopted(
        self, tenant_id: str, phone_hash: str, consent_id: str, reopted_at: datetime
    ) -> int:
        count = 0
        for rid, r in self._opt_outs.items():
            if r.tenant_id == tenant_id and r.phone_hash == phone_hash and r.is_current:
                self._opt_outs[rid] = r.model_copy(
                    update={"reopted_in_at": reopted_at, "reoptin_consent_id": consent_id}
                )
                count += 1
        self._drop_cache(tenant_id, phone_hash)
        return count

    async def list_opt_outs(self, tenant_id: str) -> list[OptOutRecord]:
        return [r.model_copy(deep=True) for r in self._opt_outs.values() if r.tenant_id == tenant_id]

    # -- Do-not-contact ------------------------------------------------------

    async def find_effective_dnc(
        self, tenant_id: str, phone_hash: str, now: datetime
    ) -> DoNotContactEntry | None:
        matches = [
            e
            for e in self._dnc.values()
            if e.phone_hash == phone_hash
            and e.tenant_id in (None, tenant_id)
            and e.is_effective(now)
        ]
        if not matches:
            return None
        # Complaint entries block transactional traffic too; surface them first.
        matches.sort(key=lambda e: (e.source != DncSource.COMPLAINT, e.added_at))
        return matches[0].model_copy(deep=True)

    async def find_effective_dnc_in_scope(
        self, tenant_id: str | None, phone_hash: str, now: datetime
    ) -> DoNotContactEntry | None:
        for e in self._dnc.values():
            if e.phone_hash == phone_hash and e.tenant_id == tenant_id and e.is_effective(now):
                return e.model_copy(deep=True)
        return None

    async def effective_dnc_hashes(
        self, tenant_id: str | None, phone_hashes: list[str], now: datetime
    ) -> set[str]:
        wanted = set(phone_hashes)
        return {
            e.phone_hash
            for e in self._dnc.values()
            if e.is_effective(now) and e.tenant_id == tenant_id and e.phone_hash in wanted
        }

    async def insert_dnc_entries(self, entries: list[DoNotContactEntry]) -> int:
        for entry in entries:
            self._dnc[entry.id] = entry.model_copy(deep=True)
            self._drop_cache(entry.tenant_id, entry.phone_hash)
        return len(entries)

    async def deactivate_dnc(
        self, tenant_id: str | None, phone_hash: str, removed_at: datetime, reason: str | None
    ) -> int:
        count = 0
        for eid, e in self._dnc.items():
            if e.phone_hash == phone_hash and e.tenant_id == tenant_id and e.is_active:
                self._dnc[eid] = e.model_copy(
                    update={"is_active": False, "removed_at": removed_at, "remove_reason": reason}
                )
                count += 1
        self._drop_cache(tenant_id, phone_hash)
        return count

    async def count_effective_dnc(self, tenant_id: str, now: datetime) -> int:
        return sum(1 for e in self._dnc.values() if e.tenant_id in (None, tenant_id) and e.is_effective(now))

    # -- Tenant configuration and profiles -----------------------------------

    async def get_tenant(self, tenant_id: str) -> TenantAccount | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy() if tenant else None

    async def save_tenant(self, tenant: TenantAccount) -> None:
        self._tenants[tenant.tenant_id] = tenant.model_copy()

    async def get_quiet_hours_config(self, tenant_id: str) -> QuietHoursConfig | None:
        config = self._quiet_hours.get(tenant_id)
        return config.model_copy() if config else None

    async def save_quiet_hours_config(self, config: QuietHoursConfig) -> None:
        self._quiet_hours[config.tenant_id] = config.model_copy()

    async def get_recipient_profile(self, tenant_id: str, phone_hash: str) -> RecipientProfile | None:
        profile = self._profiles.get((tenant_id, phone_hash))
        return profile.model_copy() if profile else None

    async def save_recipient_profile(self, profile: RecipientProfile) -> None:
        self._profiles[(profile.tenant_id, profile.phone_hash)] = profile.model_copy()

    # -- Decision cache ------------------------------------------------------

    async def get_cached_decision(self, tenant_id: str, phone_hash: str) -> ComplianceCacheEntry | None:
        entry = self._cache.get((tenant_id, phone_hash))
        return entry.model_copy() if entry else None

    async def put_cached_decision(self, entry: ComplianceCacheEntry) -> None:
        self._cache[(entry.tenant_id, entry.phone_hash)] = entry.model_copy()

    async def invalidate_cached_decision(self, tenant_id: str | None, phone_hash: str) -> None:
        self._drop_cache(tenant_id, phone_hash)

    def _drop_cache(self, tenant_id: str | None, phone_hash: str) -> None:
        if tenant_id is not None:
            self._cache.pop((tenant_id, phone_hash), None)
            return
        for key in [k for k in self._cache.keys() if k[1] == phone_hash]:
            self._cache.pop(key, None)

    # -- Audit log -----------------------------------------------------------

    async def append_audit(self, entry: AuditLogEntry) -> None:
        self._audit.append(entry.model_copy(deep=True))

    async def list_audit(
        self,
        tenant_id: str | None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditLogEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._audit
            if e.tenant_id == tenant_id
            and (start is None or e.event_timestamp >= start)
            and (end is None or e.event_timestamp <= end)
        ]


@lru_cache(maxsize=1)
def get_compliance_store() -> ComplianceStore:
    """Return the process-wide store used by the HTTP surface."""
    from src.config import get_settings

    settings = get_settings()
    logger.info("Using in-memory compliance store (cache_ttl=%ds)", settings.COMPLIANCE_CACHE_TTL_SECONDS)
    return InMemoryComplianceStore(cache_ttl_seconds=settings.COMPLIANCE_CACHE_TTL_SECONDS)
