"""
AIGate - Token Manager

Maps models to providers, caches provider credentials and hands out
authenticated provider clients.

Cache entries are TokenRecords keyed by provider + user. A record is valid
while it is active, not expired, younger than the TTL and has been handed
out fewer than ROTATION_THRESHOLD times. Each key has its own asyncio.Lock so
unrelated users never wait on each other.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..core.errors import (
    InvalidTokenFormatError,
    NoProviderForModelError,
    SecretNotFoundError,
)
from ..core.models import (
    ProviderType,
    RequestContext,
    TokenMetadata,
    TokenRecord,
    utcnow,
)
from ..db.base import SecretStore
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from ..providers.base import BaseProvider
from ..providers.registry import create_provider_client
from .secrets import mask_secret

logger = get_logger(__name__)

ROTATION_THRESHOLD = 50
CACHE_TTL_SECONDS = 300
SWEEP_INTERVAL_SECONDS = 60

# Share of ROTATION_THRESHOLD at which health reports a warning
USAGE_WARNING_RATIO = 0.8
EXPIRY_WARNING_WINDOW = timedelta(days=1)

MODEL_PROVIDERS: Dict[str, ProviderType] = {
    # OpenAI
    "gpt-4o": ProviderType.OPENAI,
    "gpt-4o-mini": ProviderType.OPENAI,
    "gpt-4-turbo": ProviderType.OPENAI,
    "gpt-4": ProviderType.OPENAI,
    "gpt-3.5-turbo": ProviderType.OPENAI,
    # Anthropic
    "claude-3-5-sonnet-20241022": ProviderType.ANTHROPIC,
    "claude-3-5-haiku-20241022": ProviderType.ANTHROPIC,
    "claude-3-opus-20240229": ProviderType.ANTHROPIC,
    "claude-3-haiku-20240307": ProviderType.ANTHROPIC,
    # Google
    "gemini-1.5-flash": ProviderType.GOOGLE,
    "gemini-1.5-pro": ProviderType.GOOGLE,
    "gemini-pro": ProviderType.GOOGLE,
}

KEY_PATTERNS: Dict[ProviderType, "re.Pattern[str]"] = {
    ProviderType.OPENAI: re.compile(r"^sk-[A-Za-z0-9_\-]{20,}$"),
    ProviderType.ANTHROPIC: re.compile(r"^sk-ant-[A-Za-z0-9_\-]{20,}$"),
    ProviderType.GOOGLE: re.compile(r"^AIza[0-9A-Za-z_\-]{35}$"),
}

ClientFactory = Callable[..., BaseProvider]


@dataclass
class ProviderHandle:
    """Authenticated client for one request. The caller closes it."""
    provider: ProviderType
    model: str
    client: BaseProvider

    async def close(self) -> None:
        await self.client.close()


def resolve_provider(model: str) -> ProviderType:
    """
    Provider serving a model.

    Raises:
        NoProviderForModelError: The model is not in MODEL_PROVIDERS.
    """
    provider = MODEL_PROVIDERS.get(model)
    if provider is None:
        raise NoProviderForModelError(model)
    return provider


def validate_token_format(provider: ProviderType, secret: str) -> bool:
    return bool(KEY_PATTERNS[provider].match(secret))


class TokenManager:
    """
    Credential cache and provider-client source.

    Args:
        secret_store: Where raw credentials are read on a cache miss.
        client_factory: Builds a provider client from (provider, api_key, timeout).
        metrics: Prometheus collector; the process-wide one by default.
        ttl_seconds: Maximum age of a cached record.
        rotation_threshold: Hand-outs after which a record must be re-read.
        clock: Monotonic clock for TTL; injectable for tests.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        client_factory: ClientFactory = create_provider_client,
        metrics: Optional[MetricsCollector] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        rotation_threshold: int = ROTATION_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.secret_store = secret_store
        self.client_factory = client_factory
        self.metrics = metrics or get_metrics()
        self.ttl_seconds = ttl_seconds
        self.rotation_threshold = rotation_threshold
        self._clock = clock

        self._cache: Dict[str, TokenRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    # ============================================================
    # Cache keys & validity
    # ============================================================

    @staticmethod
    def cache_key(provider: ProviderType, user_id: Optional[str] = None) -> str:
        return f"{provider.value}:{user_id}" if user_id else provider.value

    def is_valid(self, record: TokenRecord) -> bool:
        meta = record.metadata
        if not meta.is_active:
            return False
        if meta.expires_at is not None and meta.expires_at <= utcnow():
            return False
        if meta.usage_count >= self.rotation_threshold:
            return False
        return self._clock() - record.cached_at < self.ttl_seconds

    def cached_record(
        self,
        provider: ProviderType,
        user_id: Optional[str] = None,
    ) -> Optional[TokenRecord]:
        return self._cache.get(self.cache_key(provider, user_id))

    async def _lock_for(self, key: str) -> asyncio.Lock:
        async with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    # ============================================================
    # Provider acquisition
    # ============================================================

    async def get_provider(
        self,
        context: Optional[RequestContext],
        model: str,
        timeout: Optional[float] = None,
    ) -> ProviderHandle:
        """
        Authenticated client for the model's provider.

        Raises:
            NoProviderForModelError: Unknown model.
            SecretNotFoundError: No credential stored for the provider.
            InvalidTokenFormatError: Stored credential has the wrong shape.
        """
        provider = resolve_provider(model)
        user_id = context.user_id if context is not None else None
        key = self.cache_key(provider, user_id)

        lock = await self._lock_for(key)
        async with lock:
            record = self._cache.get(key)
            if record is not None and self.is_valid(record):
                self.metrics.record_token_cache_event(provider.value, "hit")
            else:
                if record is not None:
                    self.metrics.record_token_cache_event(provider.value, "invalid")
                    logger.info(
                        "Cached credential no longer valid, refreshing",
                        provider=provider.value,
                        usage_count=record.metadata.usage_count,
                    )
                else:
                    self.metrics.record_token_cache_event(provider.value, "miss")
                record = await self._load_record(provider)
                self._cache[key] = record

            record.metadata.usage_count += 1
            api_key = record.key

        client = self.client_factory(provider, api_key, timeout)
        return ProviderHandle(provider=provider, model=model, client=client)

    async def _load_record(self, provider: ProviderType) -> TokenRecord:
        raw = await self.secret_store.get_secret(provider)
        if not raw:
            raise SecretNotFoundError(provider.value)

        secret = raw.strip()
        if not validate_token_format(provider, secret):
            logger.error(
                "Credential has invalid format",
                provider=provider.value,
                credential=mask_secret(secret),
            )
            raise InvalidTokenFormatError(provider.value)

        return TokenRecord(
            key=secret,
            metadata=TokenMetadata(provider=provider),
            cached_at=self._clock(),
        )

    # ============================================================
    # Rotation
    # ============================================================

    async def invalidate(self, provider: ProviderType, user_id: Optional[str] = None) -> bool:
        """Explicit rotation: drop the cached record so the next use re-reads it."""
        key = self.cache_key(provider, user_id)
        lock = await self._lock_for(key)
        async with lock:
            return self._cache.pop(key, None) is not None

    async def rotate_expired_tokens(self) -> int:
        """
        Remove every invalid cache entry. Idempotent.

        Returns the number of entries removed.
        """
        async with self._locks_guard:
            stale = [key for key, record in self._cache.items() if not self.is_valid(record)]
            for key in stale:
                record = self._cache.pop(key)
                self.metrics.record_token_cache_event(record.metadata.provider.value, "evict")
            for key in [k for k, lock in self._locks.items() if k not in self._cache and not lock.locked()]:
                del self._locks[key]

        if stale:
            logger.info("Rotated expired credentials", removed=len(stale))
        return len(stale)

    def start_rotation_sweep(self, interval: float = SWEEP_INTERVAL_SECONDS) -> asyncio.Task:
        """Run rotate_expired_tokens every interval seconds in the background."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))
        return self._sweep_task

    async def stop_rotation_sweep(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.rotate_expired_tokens()
            except Exception:
                logger.exception("Credential rotation sweep failed")

    # ============================================================
    # Diagnostics
    # ============================================================

    async def get_token_health(self) -> Dict[str, Dict[str, object]]:
        """
        Per-provider credential status: healthy, warning or error.

        Reads the secret store and the cache; changes neither.
        """
        now = utcnow()
        records: Dict[ProviderType, List[TokenRecord]] = {p: [] for p in ProviderType}
        for record in list(self._cache.values()):
            records[record.metadata.provider].append(record)

        report: Dict[str, Dict[str, object]] = {}
        for provider in ProviderType:
            cached = records[provider]
            max_usage = max((r.metadata.usage_count for r in cached), default=0)
            entry: Dict[str, object] = {
                "status": "healthy",
                "cached_records": len(cached),
                "max_usage_count": max_usage,
            }

            secret = await self.secret_store.get_secret(provider)
            if not secret:
                entry.update(status="error", message="credential not configured")
            elif not validate_token_format(provider, secret.strip()):
                entry.update(status="error", message="credential has invalid format")
            elif max_usage >= self.rotation_threshold * USAGE_WARNING_RATIO:
                entry.update(status="warning", message="credential nearing rotation threshold")
            elif any(self._expires_soon(r, now) for r in cached):
                entry.update(status="warning", message="credential expires within a day")
            elif any(not r.metadata.is_active for r in cached):
                entry.update(status="warning", message="inactive credential cached")

            report[provider.value] = entry
        return report

    @staticmethod
    def _expires_soon(record: TokenRecord, now: datetime) -> bool:
        expires_at = record.metadata.expires_at
        return expires_at is not None and expires_at - now <= EXPIRY_WARNING_WINDOW
