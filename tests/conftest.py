"""Shared test fixtures for the compliance gateway tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

# Wednesday 2026-03-18 15:00 UTC = 11:00 America/New_York (EDT): outside quiet hours.
BASE_TIME = datetime(2026, 3, 18, 15, 0, tzinfo=timezone.utc)
AUDIT_SECRET = "test-audit-secret"


class FakeClock:
    """Mutable clock injected wherever components read the current time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _clear_singleton_caches():
    """Reset all @lru_cache singletons between tests.

    Prevents test pollution from cached Settings, state backends and
    compliance stores leaking state across test modules.
    """
    yield
    from src.config import get_settings

    get_settings.cache_clear()

    from src.state_backend import get_state_backend

    get_state_backend.cache_clear()

    from src.compliance.store import get_compliance_store

    get_compliance_store.cache_clear()

    try:
        from src.api.middleware import _access_logger

        # Remove all handlers to prevent handler accumulation across tests
        _access_logger.handlers.clear()
    except (ImportError, AttributeError):
        pass


@pytest.fixture
def clock():
    return FakeClock(BASE_TIME)


@pytest.fixture
def store():
    from src.compliance.store import InMemoryComplianceStore

    return InMemoryComplianceStore()


@pytest.fixture
def state():
    from src.state_backend import InMemoryBackend

    return InMemoryBackend()


@pytest.fixture
def audit(store, clock):
    from src.compliance.audit import AuditLogger

    return AuditLogger(store, AUDIT_SECRET, clock=clock)


@pytest.fixture
def engine(store, audit, clock):
    from src.compliance.engine import ComplianceDecisionEngine

    return ComplianceDecisionEngine(store, audit, clock=clock)


@pytest.fixture
def recorder(store, audit, clock):
    from src.compliance.consent import ConsentRecorder

    return ConsentRecorder(store, audit, clock=clock)


@pytest.fixture
def dnc(store, audit, clock):
    from src.compliance.dnc import DncRegistry

    return DncRegistry(store, audit, clock=clock)


@pytest.fixture
def inbound(store, recorder, clock):
    from src.compliance.inbound import OptOutInboundHandler

    return OptOutInboundHandler(store, recorder, clock=clock)


@pytest.fixture
def transport():
    t = AsyncMock()
    t.send_raw_message = AsyncMock(return_value="msg-123")
    return t


@pytest.fixture
def gateway(store, state, engine, recorder, transport, audit, clock):
    from src.compliance.gateway import ComplianceGateway

    return ComplianceGateway(store, state, engine, recorder, transport, audit, clock=clock)


@pytest.fixture
def full_consent():
    from src.compliance.models import ConsentDetails, ConsentScope, ConsentSource, ConsentType

    return ConsentDetails(
        consent_type=ConsentType.EXPRESS_WRITTEN,
        consent_source=ConsentSource.WEB_FORM,
        scope=ConsentScope.full(),
        consent_language="I agree to receive text messages.",
    )
