"""
AIGate - Provider Clients

OpenAI, Anthropic and Google chat-completion clients behind one interface,
plus a deterministic stub.
"""

from .base import BaseProvider, ProviderConfig, ProviderHealth
from .openai_provider import OpenAIProvider
from .anthropic_provider import AnthropicProvider
from .google_provider import GoogleProvider
from .stub_provider import StubProvider
from .registry import PROVIDER_CLASSES, create_provider_client

__all__ = [
    "BaseProvider",
    "ProviderConfig",
    "ProviderHealth",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "StubProvider",
    "PROVIDER_CLASSES",
    "create_provider_client",
]
