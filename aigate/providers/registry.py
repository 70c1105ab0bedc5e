"""
AIGate - Provider Registry

Maps each ProviderType to its client class.
"""

from typing import Dict, Optional, Type

from ..core.config import get_provider_timeout, use_stub_providers
from ..core.models import ProviderType
from .anthropic_provider import AnthropicProvider
from .base import BaseProvider, ProviderConfig
from .google_provider import GoogleProvider
from .openai_provider import OpenAIProvider
from .stub_provider import StubProvider

PROVIDER_CLASSES: Dict[ProviderType, Type[BaseProvider]] = {
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.ANTHROPIC: AnthropicProvider,
    ProviderType.GOOGLE: GoogleProvider,
}


def create_provider_client(
    provider: ProviderType,
    api_key: str,
    timeout: Optional[float] = None,
    use_stub: Optional[bool] = None,
) -> BaseProvider:
    """
    Build an authenticated client for a provider.

    USE_STUB_PROVIDERS (or use_stub=True) returns the deterministic stub for
    every provider type.
    """
    config = ProviderConfig(
        api_key=api_key,
        timeout=timeout if timeout is not None else get_provider_timeout(),
    )
    if use_stub is None:
        use_stub = use_stub_providers()
    if use_stub:
        return StubProvider(config, provider=provider)
    return PROVIDER_CLASSES[provider](config)
