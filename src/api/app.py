"""FastAPI application for the outbound SMS compliance gateway.

Exposes the gateway to automation callers, the inbound SMS webhook, and
admin tooling (consent, opt-out, DNC, tenant config, reports). Uses a
lifespan context manager and pure ASGI middleware (no BaseHTTPMiddleware).
"""

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.compliance.audit import AuditLogger, verify_audit_chain
from src.compliance.consent import ConsentRecorder
from src.compliance.dnc import DncRegistry
from src.compliance.engine import ComplianceDecisionEngine
from src.compliance.gateway import ComplianceGateway
from src.compliance.inbound import OptOutInboundHandler
from src.compliance.models import (
    ActorType,
    ConsentDetails,
    QuietHoursConfig,
    SendMessageRequest,
    TenantAccount,
    as_utc,
    utcnow,
)
from src.compliance.phone import InvalidPhoneNumberError
from src.compliance.quiet_hours import QuietHoursEvaluator
from src.compliance.report import ComplianceReport, ComplianceReportGenerator
from src.compliance.store import ComplianceStore, get_compliance_store
from src.compliance.transport import DryRunTransport, SmsTransport, TelnyxTransport, TransportError
from src.config import Settings, get_settings
from src.state_backend import StateBackend, get_state_backend

from .errors import ErrorCode, error_response
from .middleware import (
    ApiKeyMiddleware,
    ErrorHandlingMiddleware,
    RequestBodyLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from .models import (
    ComplianceCheckRequest,
    ComplianceCheckResponse,
    DncAddRequest,
    DncAddResponse,
    DncImportRequest,
    DncImportResponse,
    DncRemoveRequest,
    DncRemoveResponse,
    HealthResponse,
    InboundSmsRequest,
    InboundSmsResponse,
    OptOutRequest,
    OptOutResponse,
    QuietHoursRequest,
    RecordConsentRequest,
    RecordConsentResponse,
    SendSmsRequest,
    SendSmsResponse,
    TenantRequest,
)

# Note: settings are accessed via get_settings() at call sites rather than
# frozen at module level, so test monkeypatching works.
logger = logging.getLogger(__name__)

REPORT_DEFAULT_DAYS = 30


@dataclass
class ComplianceServices:
    """Every component the routes need, wired around one store."""

    store: ComplianceStore
    state_backend: StateBackend
    transport: SmsTransport
    audit: AuditLogger
    engine: ComplianceDecisionEngine
    recorder: ConsentRecorder
    dnc: DncRegistry
    inbound: OptOutInboundHandler
    gateway: ComplianceGateway
    reports: ComplianceReportGenerator


def build_transport(settings: Settings) -> SmsTransport:
    """Telnyx when credentials are configured, otherwise a dry-run transport."""
    api_key = settings.TELNYX_API_KEY.get_secret_value()
    if api_key:
        return TelnyxTransport(api_key, settings.TELNYX_MESSAGING_PROFILE_ID)
    logger.warning("TELNYX_API_KEY not set: outbound SMS will be logged, not sent")
    return DryRunTransport()


def build_services(
    settings: Settings,
    store: ComplianceStore,
    state_backend: StateBackend,
    transport: SmsTransport,
    clock: Callable[[], datetime] = utcnow,
) -> ComplianceServices:
    """Wire the compliance components with explicit dependencies."""
    audit = AuditLogger(store, settings.AUDIT_HMAC_SECRET.get_secret_value() or None, clock=clock)
    engine = ComplianceDecisionEngine(
        store,
        audit,
        QuietHoursEvaluator(settings.DEFAULT_TIMEZONE),
        clock=clock,
        cache_ttl_seconds=settings.COMPLIANCE_CACHE_TTL_SECONDS,
        default_quiet_start=settings.QUIET_HOURS_START,
        default_quiet_end=settings.QUIET_HOURS_END,
    )
    recorder = ConsentRecorder(store, audit, clock=clock)
    return ComplianceServices(
        store=store,
        state_backend=state_backend,
        transport=transport,
        audit=audit,
        engine=engine,
        recorder=recorder,
        dnc=DncRegistry(store, audit, clock=clock, batch_size=settings.DNC_IMPORT_BATCH_SIZE),
        inbound=OptOutInboundHandler(store, recorder, clock=clock),
        gateway=ComplianceGateway(
            store,
            state_backend,
            engine,
            recorder,
            transport,
            audit,
            clock=clock,
            counter_ttl_seconds=settings.MONTHLY_COUNTER_TTL_SECONDS,
        ),
        reports=ComplianceReportGenerator(store, clock=clock),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Wire compliance services on startup, close the transport on shutdown."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(
            settings,
            get_compliance_store(),
            get_state_backend(),
            build_transport(settings),
        )
    logger.info("Compliance gateway ready (environment=%s)", settings.ENVIRONMENT)
    app.state.ready = True
    yield
    app.state.ready = False
    transport = app.state.services.transport
    if isinstance(transport, TelnyxTransport):
        await transport.close()
    logger.info("Application shutdown complete.")


def _services(request: Request) -> ComplianceServices:
    return request.app.state.services


def create_app(services: ComplianceServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-wired services (tests). Built from settings at
            startup when omitted.
    """
    settings = get_settings()
    app = FastAPI(
        title="SMS Compliance Gateway",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # Pure ASGI middleware: Starlette executes in REVERSE add order.
    #   ApiKey           (added 1st, executes last / innermost)
    #   Security         (added 2nd)
    #   BodyLimit        (added 3rd)
    #   Logging          (added 4th)
    #   ErrorHandling    (added 5th, executes first / outermost)
    app.add_middleware(ApiKeyMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestBodyLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)

    @app.exception_handler(InvalidPhoneNumberError)
    async def invalid_phone_handler(request: Request, exc: InvalidPhoneNumberError):
        return JSONResponse(
            status_code=422,
            content=error_response(ErrorCode.INVALID_PHONE_NUMBER, str(exc)),
        )

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError):
        return JSONResponse(
            status_code=502,
            content=error_response(ErrorCode.TRANSPORT_ERROR, str(exc)),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()))
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorCode.VALIDATION_ERROR,
                f"{location}: {first.get('msg', 'invalid request')}",
            ),
        )

    # ------------------------------------------------------------------
    # GET /health: readiness check (no API key)
    # ------------------------------------------------------------------
    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        ready = getattr(request.app.state, "ready", False)
        services = getattr(request.app.state, "services", None)
        settings = get_settings()
        body = HealthResponse(
            status="healthy" if ready and services is not None else "starting",
            version=settings.VERSION,
            environment=settings.ENVIRONMENT,
            state_backend=type(services.state_backend).__name__ if services else "unknown",
            transport=type(services.transport).__name__ if services else "unknown",
        )
        return JSONResponse(content=body.model_dump(), status_code=200 if body.status == "healthy" else 503)

    # ------------------------------------------------------------------
    # Compliance decisions and sending
    # ------------------------------------------------------------------
    @app.post("/compliance/check", response_model=ComplianceCheckResponse)
    async def compliance_check(request: Request, body: ComplianceCheckRequest):
        result = await _services(request).engine.check_compliance(
            body.tenant_id, body.phone_number, body.message_category, body.recipient_timezone
        )
        return ComplianceCheckResponse(**result.__dict__)

    @app.post("/sms/send", response_model=SendSmsResponse)
    async def send_sms(request: Request, body: SendSmsRequest):
        """Send through the gateway. Blocked and queued outcomes are 200s."""
        sender = body.from_ or get_settings().SMS_FROM_NUMBER
        if not sender:
            return JSONResponse(
                status_code=422,
                content=error_response(
                    ErrorCode.VALIDATION_ERROR, "body.from: sender number required (SMS_FROM_NUMBER is not set)"
                ),
            )
        result = await _services(request).gateway.send_compliant_message(
            SendMessageRequest(**body.model_dump(exclude={"from_"}), from_=sender)
        )
        return SendSmsResponse(**result.__dict__)

    @app.post("/sms/inbound", response_model=InboundSmsResponse)
    async def sms_inbound(request: Request, body: InboundSmsRequest):
        """Apply STOP / START replies. Returns the suggested confirmation reply."""
        result = await _services(request).inbound.classify_inbound_and_handle(
            body.tenant_id, body.from_, body.body, body.message_id
        )
        return InboundSmsResponse(**result.__dict__)

    # ------------------------------------------------------------------
    # Consent and opt-out
    # ------------------------------------------------------------------
    @app.post("/consent", response_model=RecordConsentResponse)
    async def record_consent(request: Request, body: RecordConsentRequest):
        details = ConsentDetails(
            **body.model_dump(exclude={"tenant_id", "phone_number", "actor_id"}),
        )
        consent_id = await _services(request).recorder.record_consent(
            body.tenant_id,
            body.phone_number,
            details,
            actor_type=ActorType.API,
            actor_id=body.actor_id,
        )
        return RecordConsentResponse(consent_id=consent_id)

    @app.post("/opt-out", response_model=OptOutResponse)
    async def record_opt_out(request: Request, body: OptOutRequest):
        await _services(request).recorder.record_opt_out(
            body.tenant_id,
            body.phone_number,
            body.reason,
            body.trigger_message,
            body.trigger_message_id,
            actor_type=ActorType.API,
            actor_id=body.actor_id,
        )
        return OptOutResponse()

    # ------------------------------------------------------------------
    # Do-not-contact registry
    # ------------------------------------------------------------------
    @app.post("/dnc", response_model=DncAddResponse)
    async def dnc_add(request: Request, body: DncAddRequest):
        added = await _services(request).dnc.add_to_dnc(
            body.phone_number,
            body.source,
            tenant_id=body.tenant_id,
            source_reference=body.source_reference,
            expires_at=body.expires_at,
        )
        return DncAddResponse(added=added)

    @app.delete("/dnc", response_model=DncRemoveResponse)
    async def dnc_remove(request: Request, body: DncRemoveRequest):
        removed = await _services(request).dnc.remove_from_dnc(
            body.phone_number, tenant_id=body.tenant_id, reason=body.reason
        )
        return DncRemoveResponse(removed=removed)

    @app.post("/dnc/import", response_model=DncImportResponse)
    async def dnc_import(request: Request, body: DncImportRequest):
        result = await _services(request).dnc.bulk_import(
            body.phone_numbers, body.source, tenant_id=body.tenant_id
        )
        return DncImportResponse(**result.__dict__)

    # ------------------------------------------------------------------
    # Tenant configuration
    # ------------------------------------------------------------------
    @app.put("/tenants/{tenant_id}", response_model=TenantAccount)
    async def put_tenant(request: Request, tenant_id: str, body: TenantRequest):
        tenant = TenantAccount(tenant_id=tenant_id, **body.model_dump())
        await _services(request).store.save_tenant(tenant)
        logger.info("Tenant %s saved (limit=%s)", tenant_id, tenant.monthly_message_limit)
        return tenant

    @app.put("/tenants/{tenant_id}/quiet-hours", response_model=QuietHoursConfig)
    async def put_quiet_hours(request: Request, tenant_id: str, body: QuietHoursRequest):
        config = QuietHoursConfig(tenant_id=tenant_id, **body.model_dump())
        await _services(request).store.save_quiet_hours_config(config)
        return config

    # ------------------------------------------------------------------
    # Reporting and audit integrity
    # ------------------------------------------------------------------
    @app.get("/compliance/report/{tenant_id}", response_model=ComplianceReport)
    async def compliance_report(
        request: Request,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ):
        end = as_utc(end) if end else utcnow()
        start = as_utc(start) if start else end - timedelta(days=REPORT_DEFAULT_DAYS)
        return await _services(request).reports.generate_report(tenant_id, start, end)

    @app.get("/audit/{tenant_id}/verify")
    async def verify_audit(request: Request, tenant_id: str):
        entries = await _services(request).store.list_audit(tenant_id)
        secret = get_settings().AUDIT_HMAC_SECRET.get_secret_value() or None
        return {"tenant_id": tenant_id, "entries": len(entries), "valid": verify_audit_chain(entries, secret)}

    return app


app = create_app()

if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "src.api.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8080")),
        reload=True,
    )
