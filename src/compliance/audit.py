"""Append-only compliance audit trail with a tamper-evident hash chain.

Every decision, block, send, consent grant, opt-out and DNC change is
written as one ``AuditLogEntry``. Entries for a tenant form an HMAC-SHA256
chain: each entry's hash incorporates the previous entry's hash, so any
retroactive edit, deletion or reordering breaks ``verify_audit_chain``.

Audit writes never change a compliance outcome. A failing store is logged
with a traceback and the caller's decision stands.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac as hmac_mod
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .models import ActorType, AuditEventType, AuditLogEntry, utcnow
from .store import ComplianceStore

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
_GLOBAL_CHAIN = "__global__"


def _payload(entry: AuditLogEntry, previous_hash: str) -> str:
    data = json.dumps(entry.event_data, sort_keys=True, default=str)
    return (
        f"{previous_hash}|{entry.id}|{entry.event_type.value}|{entry.tenant_id or ''}"
        f"|{entry.phone_hash or ''}|{entry.event_timestamp.isoformat()}"
        f"|{entry.consent_id or ''}|{entry.message_id or ''}|{entry.success}|{data}"
    )


def compute_entry_hash(entry: AuditLogEntry, previous_hash: str, secret: str | None) -> str:
    """SHA-256 (or HMAC-SHA256 when ``secret`` is set) of an entry's chained payload."""
    payload = _payload(entry, previous_hash).encode()
    if secret:
        return hmac_mod.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hashlib.sha256(payload).hexdigest()


def verify_audit_chain(entries: list[AuditLogEntry], secret: str | None) -> bool:
    """Verify the integrity of one tenant's audit chain.

    Args:
        entries: The tenant's entries in append order.
        secret: The HMAC key the entries were written with.

    Returns:
        ``True`` if every entry links to its predecessor and its hash matches
        a fresh recomputation. ``False`` at the first mismatch.
    """
    previous_hash = GENESIS_HASH
    for i, entry in enumerate(entries):
        if entry.previous_hash != previous_hash:
            logger.warning("Audit chain broken at index %d: previous hash mismatch", i)
            return False
        expected = compute_entry_hash(entry, previous_hash, secret)
        if not hmac_mod.compare_digest(expected, entry.entry_hash):
            logger.warning(
                "Audit chain integrity failure at index %d: expected %s, got %s",
                i,
                expected[:12],
                entry.entry_hash[:12],
            )
            return False
        previous_hash = entry.entry_hash
    return True


class AuditLogger:
    """Writes chained audit entries through a ``ComplianceStore``.

    The last hash of each tenant chain is held in memory and seeded lazily
    from the store on first use. Appends are serialized by an ``asyncio.Lock``
    so two concurrent writers never link to the same predecessor.
    """

    def __init__(
        self,
        store: ComplianceStore,
        hmac_secret: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._secret = hmac_secret
        self._clock = clock
        self._last_hash: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.write_failures = 0

    async def log(
        self,
        event_type: AuditEventType,
        tenant_id: str | None,
        *,
        phone_number: str | None = None,
        phone_hash: str | None = None,
        consent_id: str | None = None,
        message_id: str | None = None,
        event_data: dict[str, Any] | None = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> AuditLogEntry | None:
        """Append one audit entry.

        Returns:
            The stored entry, or ``None`` if the write failed. Failures are
            logged and counted, never raised.
        """
        entry = AuditLogEntry(
            tenant_id=tenant_id,
            event_type=event_type,
            event_timestamp=self._clock(),
            phone_number=phone_number,
            phone_hash=phone_hash,
            consent_id=consent_id,
            message_id=message_id,
            event_data=event_data or {},
            actor_type=actor_type,
            actor_id=actor_id,
            success=success,
            error_message=error_message,
        )
        chain = tenant_id or _GLOBAL_CHAIN
        try:
            async with self._lock:
                previous_hash = await self._chain_head(chain, tenant_id)
                entry.previous_hash = previous_hash
                entry.entry_hash = compute_entry_hash(entry, previous_hash, self._secret)
                await self._store.append_audit(entry)
                self._last_hash[chain] = entry.entry_hash
        except Exception:
            self.write_failures += 1
            logger.exception(
                "Audit write failed: event=%s tenant=%s",
                event_type.value,
                tenant_id,
            )
            return None
        return entry

    async def _chain_head(self, chain: str, tenant_id: str | None) -> str:
        if chain not in self._last_hash:
            existing = await self._store.list_audit(tenant_id)
            self._last_hash[chain] = existing[-1].entry_hash if existing else GENESIS_HASH
        return self._last_hash[chain]
