"""
AIGate - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Smoke test handling (skip with SKIP_SMOKE=1)
- Isolated pipeline components backed by in-memory stores
"""

import os

os.environ.setdefault("MODE", "test")
os.environ.setdefault("LOG_FORMAT", "text")

import logging
from typing import List, Optional

import pytest
from prometheus_client import CollectorRegistry

from aigate.core.models import (
    Identity,
    Organization,
    ProviderType,
    RequestMeta,
)
from aigate.context.provider import ContextProvider
from aigate.db.memory import InMemoryAccountStore, InMemoryAuditSink, InMemorySecretStore
from aigate.db.models import AccountRecord
from aigate.observability.metrics import MetricsCollector
from aigate.providers.base import ProviderConfig
from aigate.providers.stub_provider import StubProvider
from aigate.security.assessor import SecurityAssessor
from aigate.services.factory import ServiceFactory
from aigate.subscription.manager import SubscriptionManager
from aigate.tokens.manager import TokenManager
from aigate.usage.tracker import UsageTracker


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))
SKIP_SMOKE = _is_truthy(os.getenv("SKIP_SMOKE"))

OPENAI_TEST_KEY = "sk-" + "a" * 40
ANTHROPIC_TEST_KEY = "sk-ant-" + "b" * 40
BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )
    config.addinivalue_line(
        "markers",
        "smoke: mark test as smoke test (skip with SKIP_SMOKE=1)"
    )


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration and smoke tests.

    - Integration tests: Skip unless RUN_INTEGRATION=1
    - Smoke tests: Skip if SKIP_SMOKE=1
    """
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    skip_smoke = pytest.mark.skip(
        reason="Smoke test skipped - SKIP_SMOKE=1"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)
        if "smoke" in item.keywords and SKIP_SMOKE:
            item.add_marker(skip_smoke)


# ============================================================
# Stub provider clients
# ============================================================

class StubClientFactory:
    """Client factory that hands out StubProviders and remembers them."""

    def __init__(self):
        self.clients: List[StubProvider] = []

    def __call__(self, provider: ProviderType, api_key: str, timeout: Optional[float] = None):
        client = StubProvider(ProviderConfig(api_key=api_key, timeout=timeout or 30.0), provider)
        self.clients.append(client)
        return client

    @property
    def calls(self) -> int:
        return sum(c.calls for c in self.clients)


@pytest.fixture
def stub_clients() -> StubClientFactory:
    return StubClientFactory()


# ============================================================
# Components
# ============================================================

@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector bound to a private registry so counters start at zero."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def account_store() -> InMemoryAccountStore:
    return InMemoryAccountStore(
        accounts=[
            AccountRecord(user_id="user-free", plan="FREE", credits_limit=5),
            AccountRecord(user_id="user-broke", plan="FREE", credits_limit=5, credits_used=5),
            AccountRecord(user_id="user-basic", plan="BASIC", credits_limit=50),
            AccountRecord(user_id="user-premium", plan="PREMIUM", credits_limit=10),
            AccountRecord(
                user_id="user-enterprise",
                plan="ENTERPRISE",
                credits_limit=500,
                organization_id="org-1",
            ),
        ],
        organizations=[Organization(id="org-1", name="Acme", compliance=frozenset({"gdpr"}))],
    )


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore({
        ProviderType.OPENAI: OPENAI_TEST_KEY,
        ProviderType.ANTHROPIC: ANTHROPIC_TEST_KEY,
    })


@pytest.fixture
def subscription_manager(account_store, metrics) -> SubscriptionManager:
    return SubscriptionManager(account_store, metrics=metrics)


@pytest.fixture
def security_assessor() -> SecurityAssessor:
    return SecurityAssessor(blocked_networks=["198.51.100.0/24"])


@pytest.fixture
def context_provider(subscription_manager, security_assessor, account_store, metrics) -> ContextProvider:
    return ContextProvider(subscription_manager, security_assessor, account_store, metrics=metrics)


@pytest.fixture
def token_manager(secret_store, stub_clients, metrics) -> TokenManager:
    return TokenManager(secret_store, client_factory=stub_clients, metrics=metrics)


@pytest.fixture
def usage_tracker(audit_sink, metrics) -> UsageTracker:
    return UsageTracker(audit_sink, metrics=metrics, queue_size=100)


@pytest.fixture
def service_factory(subscription_manager, token_manager, usage_tracker, metrics) -> ServiceFactory:
    return ServiceFactory(subscription_manager, token_manager, usage_tracker, metrics=metrics)


@pytest.fixture
def request_meta() -> RequestMeta:
    return RequestMeta(ip="203.0.113.7", user_agent=BROWSER_UA)


@pytest.fixture
def make_context(context_provider, request_meta):
    """Build a context for one of the seeded users."""

    async def _make(user_id: str, meta: Optional[RequestMeta] = None, **identity_fields):
        identity = Identity(user_id=user_id, session_id="sess-1", **identity_fields)
        return await context_provider.create_context(identity, meta or request_meta)

    return _make


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield


# ============================================================
# Skip Helpers
# ============================================================

requires_integration = pytest.mark.skipif(
    not RUN_INTEGRATION,
    reason="Requires RUN_INTEGRATION=1"
)
