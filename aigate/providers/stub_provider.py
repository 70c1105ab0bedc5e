"""
AIGate - Stub Provider

Deterministic in-process provider used for local mode and tests.
No network calls, no real provider keys required.
"""

import json
from typing import Any, Dict, List, Optional

from .base import BaseProvider, ProviderConfig, ProviderHealth
from ..core.models import (
    ChatMessage,
    CompletionResult,
    FunctionCall,
    FunctionSpec,
    ProviderType,
    TokenUsage,
)


def sample_from_schema(schema: Dict[str, Any]) -> Any:
    """Smallest deterministic value satisfying a JSON schema fragment."""
    if "enum" in schema and schema["enum"]:
        return schema["enum"][0]

    schema_type = schema.get("type", "object")
    if schema_type == "object":
        return {
            name: sample_from_schema(prop)
            for name, prop in schema.get("properties", {}).items()
        }
    if schema_type == "array":
        count = max(1, schema.get("minItems", 1))
        return [sample_from_schema(schema.get("items", {})) for _ in range(count)]
    if schema_type == "integer":
        return schema.get("minimum", 0)
    if schema_type == "number":
        return float(schema.get("minimum", 0))
    if schema_type == "boolean":
        return False
    return "stub"


class StubProvider(BaseProvider):
    """Deterministic provider for tests/smoke checks."""

    def __init__(self, config: ProviderConfig, provider: ProviderType = ProviderType.OPENAI):
        super().__init__(config)
        self.provider = provider
        self.calls = 0
        self.closed = False

    async def generate_completion(
        self,
        model: str,
        messages: List[ChatMessage],
        functions: Optional[List[FunctionSpec]] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        request_id: str = "",
    ) -> CompletionResult:
        self.calls += 1
        prompt_tokens = sum(len(m.content.split()) for m in messages)
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=6)

        if functions:
            arguments = sample_from_schema(functions[0].parameters)
            return CompletionResult(
                function_call=FunctionCall(
                    name=functions[0].name,
                    arguments=json.dumps(arguments),
                ),
                usage=usage,
            )

        return CompletionResult(content="stub: deterministic response", usage=usage)

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(provider=self.provider, is_healthy=True, latency_ms=5)

    async def close(self):
        self.closed = True
