"""
Tests for the credential cache and provider resolution.
"""

import asyncio
from datetime import timedelta

import pytest

from aigate.core.errors import (
    InvalidTokenFormatError,
    NoProviderForModelError,
    SecretNotFoundError,
)
from aigate.core.models import ProviderType, utcnow
from aigate.db.memory import InMemorySecretStore
from aigate.providers.stub_provider import StubProvider
from aigate.tokens.manager import (
    ROTATION_THRESHOLD,
    TokenManager,
    resolve_provider,
    validate_token_format,
)
from aigate.tokens.secrets import EnvSecretStore, mask_secret

from conftest import ANTHROPIC_TEST_KEY, OPENAI_TEST_KEY


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def manager(secret_store, stub_clients, metrics, clock):
    return TokenManager(secret_store, client_factory=stub_clients, metrics=metrics, clock=clock)


class TestProviderResolution:
    """Tests for model to provider mapping and key formats."""

    def test_known_models(self):
        assert resolve_provider("gpt-4o") == ProviderType.OPENAI
        assert resolve_provider("claude-3-5-sonnet-20241022") == ProviderType.ANTHROPIC
        assert resolve_provider("gemini-1.5-pro") == ProviderType.GOOGLE

    def test_unknown_model(self):
        with pytest.raises(NoProviderForModelError) as exc_info:
            resolve_provider("llama-99")
        assert exc_info.value.error.details["requested_model"] == "llama-99"

    def test_key_formats(self):
        assert validate_token_format(ProviderType.OPENAI, OPENAI_TEST_KEY)
        assert validate_token_format(ProviderType.ANTHROPIC, ANTHROPIC_TEST_KEY)
        assert validate_token_format(ProviderType.GOOGLE, "AIza" + "x" * 35)
        assert not validate_token_format(ProviderType.OPENAI, "not-a-key")
        assert not validate_token_format(ProviderType.GOOGLE, "AIza-short")


class TestGetProvider:
    """Tests for TokenManager.get_provider caching."""

    @pytest.mark.asyncio
    async def test_returns_authenticated_client(self, manager, secret_store):
        handle = await manager.get_provider(None, "gpt-4o", timeout=12)

        assert handle.provider == ProviderType.OPENAI
        assert handle.model == "gpt-4o"
        assert isinstance(handle.client, StubProvider)
        assert handle.client.config.api_key == OPENAI_TEST_KEY
        assert handle.client.config.timeout == 12
        assert secret_store.reads == 1

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_reread(self, manager, secret_store):
        await manager.get_provider(None, "gpt-4o")
        await manager.get_provider(None, "gpt-4o-mini")

        assert secret_store.reads == 1
        assert manager.cached_record(ProviderType.OPENAI).metadata.usage_count == 2

    @pytest.mark.asyncio
    async def test_rotation_threshold_forces_fresh_read(self, manager, secret_store):
        await manager.get_provider(None, "gpt-4o")
        record = manager.cached_record(ProviderType.OPENAI)
        record.metadata.usage_count = ROTATION_THRESHOLD

        assert manager.is_valid(record) is False
        await manager.get_provider(None, "gpt-4o")

        assert secret_store.reads == 2
        fresh = manager.cached_record(ProviderType.OPENAI)
        assert fresh is not record
        assert fresh.metadata.usage_count == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, manager, secret_store, clock):
        await manager.get_provider(None, "gpt-4o")
        clock.now += 299
        await manager.get_provider(None, "gpt-4o")
        assert secret_store.reads == 1

        clock.now += 2
        await manager.get_provider(None, "gpt-4o")
        assert secret_store.reads == 2

    @pytest.mark.asyncio
    async def test_inactive_or_expired_record_is_invalid(self, manager):
        await manager.get_provider(None, "gpt-4o")
        record = manager.cached_record(ProviderType.OPENAI)

        record.metadata.expires_at = utcnow() - timedelta(seconds=1)
        assert manager.is_valid(record) is False
        record.metadata.expires_at = None
        record.metadata.is_active = False
        assert manager.is_valid(record) is False

    @pytest.mark.asyncio
    async def test_records_are_per_user(self, manager, make_context, secret_store):
        alice = await make_context("user-basic")
        bob = await make_context("user-premium")

        await manager.get_provider(alice, "gpt-4o")
        await manager.get_provider(bob, "gpt-4o")
        await manager.get_provider(alice, "gpt-4o")

        assert secret_store.reads == 2
        assert manager.cached_record(ProviderType.OPENAI, "user-basic").metadata.usage_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_read_secret_once(self, manager, secret_store):
        handles = await asyncio.gather(*[manager.get_provider(None, "gpt-4o") for _ in range(10)])

        assert len(handles) == 10
        assert secret_store.reads == 1
        assert manager.cached_record(ProviderType.OPENAI).metadata.usage_count == 10

    @pytest.mark.asyncio
    async def test_missing_secret(self, manager):
        with pytest.raises(SecretNotFoundError):
            await manager.get_provider(None, "gemini-1.5-pro")

    @pytest.mark.asyncio
    async def test_invalid_format_is_not_cached(self, metrics, stub_clients):
        store = InMemorySecretStore({ProviderType.OPENAI: "sk-short"})
        manager = TokenManager(store, client_factory=stub_clients, metrics=metrics)

        with pytest.raises(InvalidTokenFormatError):
            await manager.get_provider(None, "gpt-4o")
        assert manager.cached_record(ProviderType.OPENAI) is None
        assert stub_clients.clients == []

    @pytest.mark.asyncio
    async def test_cache_events_are_counted(self, manager, metrics):
        await manager.get_provider(None, "gpt-4o")
        await manager.get_provider(None, "gpt-4o")

        def sample(event):
            return metrics.registry.get_sample_value(
                "aigate_token_cache_events_total", {"provider": "openai", "event": event}
            )

        assert sample("miss") == 1.0
        assert sample("hit") == 1.0


class TestRotation:
    """Tests for invalidation and the expiry sweep."""

    @pytest.mark.asyncio
    async def test_invalidate(self, manager, secret_store):
        await manager.get_provider(None, "gpt-4o")
        assert await manager.invalidate(ProviderType.OPENAI) is True
        assert await manager.invalidate(ProviderType.OPENAI) is False

        await manager.get_provider(None, "gpt-4o")
        assert secret_store.reads == 2

    @pytest.mark.asyncio
    async def test_rotate_expired_tokens_is_idempotent(self, manager, clock):
        await manager.get_provider(None, "gpt-4o")
        await manager.get_provider(None, "claude-3-5-sonnet-20241022")
        manager.cached_record(ProviderType.ANTHROPIC).metadata.usage_count = ROTATION_THRESHOLD

        assert await manager.rotate_expired_tokens() == 1
        assert manager.cached_record(ProviderType.ANTHROPIC) is None
        assert manager.cached_record(ProviderType.OPENAI) is not None

        clock.now += 600
        assert await manager.rotate_expired_tokens() == 1
        assert await manager.rotate_expired_tokens() == 0

    @pytest.mark.asyncio
    async def test_sweep_runs_in_background(self, manager, clock):
        await manager.get_provider(None, "gpt-4o")
        clock.now += 600

        manager.start_rotation_sweep(interval=0.01)
        await asyncio.sleep(0.05)
        await manager.stop_rotation_sweep()

        assert manager.cached_record(ProviderType.OPENAI) is None


class TestTokenHealth:
    """Tests for get_token_health."""

    @pytest.mark.asyncio
    async def test_reports_each_provider(self, manager):
        report = await manager.get_token_health()

        assert report["openai"]["status"] == "healthy"
        assert report["anthropic"]["status"] == "healthy"
        assert report["google"]["status"] == "error"
        assert report["google"]["message"] == "credential not configured"

    @pytest.mark.asyncio
    async def test_usage_near_threshold_warns(self, manager):
        await manager.get_provider(None, "gpt-4o")
        manager.cached_record(ProviderType.OPENAI).metadata.usage_count = 40

        report = await manager.get_token_health()
        assert report["openai"]["status"] == "warning"
        assert report["openai"]["max_usage_count"] == 40
        assert report["openai"]["cached_records"] == 1

    @pytest.mark.asyncio
    async def test_expiring_credential_warns(self, manager):
        await manager.get_provider(None, "gpt-4o")
        manager.cached_record(ProviderType.OPENAI).metadata.expires_at = utcnow() + timedelta(hours=2)

        report = await manager.get_token_health()
        assert report["openai"]["status"] == "warning"

    @pytest.mark.asyncio
    async def test_health_does_not_change_cache(self, manager):
        await manager.get_provider(None, "gpt-4o")
        before = manager.cached_record(ProviderType.OPENAI).metadata.usage_count
        await manager.get_token_health()
        assert manager.cached_record(ProviderType.OPENAI).metadata.usage_count == before

    @pytest.mark.asyncio
    async def test_bad_format_reports_error(self, metrics):
        store = InMemorySecretStore({ProviderType.ANTHROPIC: "sk-ant-short"})
        report = await TokenManager(store, metrics=metrics).get_token_health()
        assert report["anthropic"]["message"] == "credential has invalid format"


class TestSecrets:
    """Tests for the environment secret store."""

    @pytest.mark.asyncio
    async def test_env_secret_store(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", f"  {OPENAI_TEST_KEY}\n")
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        store = EnvSecretStore()

        assert await store.get_secret(ProviderType.OPENAI) == OPENAI_TEST_KEY
        assert await store.get_secret(ProviderType.GOOGLE) is None

    def test_mask_secret(self):
        assert mask_secret("short") == "***"
        masked = mask_secret(OPENAI_TEST_KEY)
        assert masked.startswith("sk-aaa")
        assert OPENAI_TEST_KEY not in masked
