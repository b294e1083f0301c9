"""Outbound SMS compliance gateway.

Decides, for every message a tenant's automation wants to send, whether it
may be sent now (opt-out, do-not-contact, CASL consent and expiry, quiet
hours, monthly cap), sends it through the transport when it may, and keeps
an append-only, hash-chained audit trail of every decision.
"""

from .audit import AuditLogger, verify_audit_chain
from .consent import ConsentRecorder
from .dnc import DncRegistry
from .engine import ComplianceDecisionEngine
from .gateway import ComplianceGateway
from .inbound import OptOutInboundHandler, is_opt_in_message, is_opt_out_message
from .phone import InvalidPhoneNumberError, hash_phone, normalize_phone
from .quiet_hours import QuietHoursEvaluator
from .report import ComplianceReportGenerator
from .store import ComplianceStore, InMemoryComplianceStore, get_compliance_store
from .transport import DryRunTransport, SmsTransport, TelnyxTransport, TransportError

__all__ = [
    "AuditLogger",
    "verify_audit_chain",
    "ConsentRecorder",
    "DncRegistry",
    "ComplianceDecisionEngine",
    "ComplianceGateway",
    "OptOutInboundHandler",
    "is_opt_in_message",
    "is_opt_out_message",
    "InvalidPhoneNumberError",
    "hash_phone",
    "normalize_phone",
    "QuietHoursEvaluator",
    "ComplianceReportGenerator",
    "ComplianceStore",
    "InMemoryComplianceStore",
    "get_compliance_store",
    "TransportError",
    "SmsTransport",
    "TelnyxTransport",
    "DryRunTransport",
]
