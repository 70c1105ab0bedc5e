"""
AIGate - Provider Client Base

Uniform chat-completion interface. One implementation per ProviderType;
the pipeline treats providers as interchangeable behind this class.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..core.models import ChatMessage, CompletionResult, FunctionSpec, ProviderType, Role


@dataclass
class ProviderConfig:
    """Configuration for a provider client."""
    api_key: str
    base_url: Optional[str] = None
    timeout: float = 30.0


@dataclass
class ProviderHealth:
    """Health status of a provider."""
    provider: ProviderType
    is_healthy: bool
    latency_ms: Optional[int] = None
    last_error: Optional[str] = None


class BaseProvider(ABC):
    """
    Abstract provider client.

    A client is responsible for:
    1. Converting the uniform messages/functions to the provider's format
    2. Making the API call
    3. Converting the response back to a CompletionResult
    4. Raising canonical ProviderError subclasses on failure
    """

    provider: ProviderType

    def __init__(self, config: ProviderConfig):
        self.config = config

    @abstractmethod
    async def generate_completion(
        self,
        model: str,
        messages: List[ChatMessage],
        functions: Optional[List[FunctionSpec]] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        request_id: str = "",
    ) -> CompletionResult:
        """
        Generate a completion.

        When functions are given the model is asked to call the first one and
        the result carries function_call instead of content.
        """

    @abstractmethod
    async def health_check(self) -> ProviderHealth:
        ...

    async def close(self) -> None:
        """Release network resources. Safe to call more than once."""

    # ============================================================
    # Helper methods for subclasses
    # ============================================================

    @staticmethod
    def split_system(messages: List[ChatMessage]):
        """Split system prompts (joined) from the conversation messages."""
        system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM)
        rest = [m for m in messages if m.role != Role.SYSTEM]
        return system or None, rest
