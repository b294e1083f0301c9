"""Per-tenant compliance reporting.

Aggregates consent, opt-out, DNC and audit activity for a period and flags
risks that warrant attention before a regulator or carrier does.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from .models import AuditEventType, ConsentType, OptOutReason, utcnow
from .store import ComplianceStore

logger = logging.getLogger(__name__)

HIGH_OPT_OUT_RATE_PCT = 5.0
IMPLIED_SHARE_THRESHOLD = 0.3
TREND_DAYS = 30


class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class ReportSummary(BaseModel):
    total_consents: int
    active_consents: int
    total_opt_outs: int
    opt_out_rate: float
    dnc_list_size: int
    messages_blocked: int


class ConsentBreakdown(BaseModel):
    by_type: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)


class TrendPoint(BaseModel):
    date: str
    count: int


class OptOutBreakdown(BaseModel):
    by_reason: dict[str, int] = Field(default_factory=dict)
    trend: list[TrendPoint] = Field(default_factory=list)


class EventCount(BaseModel):
    type: str
    count: int


class ComplianceReport(BaseModel):
    tenant_id: str
    generated_at: datetime
    period: ReportPeriod
    summary: ReportSummary
    consent_breakdown: ConsentBreakdown
    opt_out_breakdown: OptOutBreakdown
    compliance_events: list[EventCount]
    risks: list[str]
    recommendations: list[str]


class ComplianceReportGenerator:
    def __init__(self, store: ComplianceStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def generate_report(self, tenant_id: str, start: datetime, end: datetime) -> ComplianceReport:
        """Build the compliance report for ``tenant_id`` over ``[start, end]``.

        The opt-out trend always covers the 30 days before generation,
        independent of the requested period.
        """
        now = self._clock()

        consents = await self._store.list_consents(tenant_id)
        in_period = [c for c in consents if start <= c.created_at <= end]
        active = sum(1 for c in consents if c.is_active)

        opt_outs = await self._store.list_opt_outs(tenant_id)
        opt_outs_in_period = [o for o in opt_outs if start <= o.opt_out_timestamp <= end]

        audit = await self._store.list_audit(tenant_id, start, end)
        events = Counter(e.event_type.value for e in audit)

        by_type = Counter(c.consent_type.value for c in in_period)
        by_source = Counter(c.consent_source.value for c in in_period)
        by_reason = Counter(o.reason.value for o in opt_outs_in_period)

        trend_start = now - timedelta(days=TREND_DAYS)
        trend = Counter(
            o.opt_out_timestamp.date().isoformat() for o in opt_outs if o.opt_out_timestamp >= trend_start
        )

        total = len(in_period)
        opt_out_rate = len(opt_outs_in_period) / total * 100 if total else 0.0

        risks: list[str] = []
        recommendations: list[str] = []
        if opt_out_rate > HIGH_OPT_OUT_RATE_PCT:
            risks.append(f"High opt-out rate: {opt_out_rate:.1f}%")
            recommendations.append(
                "Review message frequency and content. Consider A/B testing different approaches."
            )
        if by_type[ConsentType.IMPLIED.value] > total * IMPLIED_SHARE_THRESHOLD:
            risks.append("Over 30% of consents are implied only")
            recommendations.append("Implement clear opt-in forms to capture express written consent.")
        complaints = by_reason[OptOutReason.COMPLAINT.value]
        if complaints:
            risks.append(f"{complaints} complaint-based opt-outs recorded")
            recommendations.append("Review complaint causes immediately. Consider reducing message frequency.")

        logger.info(
            "Compliance report tenant=%s consents=%d opt_outs=%d risks=%d",
            tenant_id,
            total,
            len(opt_outs_in_period),
            len(risks),
        )
        return ComplianceReport(
            tenant_id=tenant_id,
            generated_at=now,
            period=ReportPeriod(start=start, end=end),
            summary=ReportSummary(
                total_consents=total,
                active_consents=active,
                total_opt_outs=len(opt_outs_in_period),
                opt_out_rate=opt_out_rate,
                dnc_list_size=await self._store.count_effective_dnc(tenant_id, now),
                messages_blocked=events[AuditEventType.MESSAGE_BLOCKED.value],
            ),
            consent_breakdown=ConsentBreakdown(by_type=dict(by_type), by_source=dict(by_source)),
            opt_out_breakdown=OptOutBreakdown(
                by_reason=dict(by_reason),
                trend=[TrendPoint(date=d, count=n) for d, n in sorted(trend.items())],
            ),
            compliance_events=[EventCount(type=t, count=n) for t, n in sorted(events.items())],
            risks=risks,
            recommendations=recommendations,
        )
