"""
AIGate - Anthropic Provider

Claude models over the Anthropic Messages API.
"""

import json
import time
from typing import Any, Dict, List, Optional

import httpx

from .base import BaseProvider, ProviderConfig, ProviderHealth
from ..core.errors import handle_provider_error
from ..core.models import (
    ChatMessage,
    CompletionResult,
    FunctionCall,
    FunctionSpec,
    ProviderType,
    TokenUsage,
)


class AnthropicProvider(BaseProvider):
    """
    Client for the Anthropic Messages API.

    System prompts travel in the top-level "system" field; functions map to
    tools with a forced tool_choice.
    """

    provider = ProviderType.ANTHROPIC
    DEFAULT_BASE_URL = "https://api.anthropic.com"
    API_VERSION = "2023-06-01"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.base_url = config.base_url or self.DEFAULT_BASE_URL
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "x-api-key": config.api_key,
                "anthropic-version": self.API_VERSION,
                "Content-Type": "application/json",
            },
            timeout=config.timeout
        )

    async def generate_completion(
        self,
        model: str,
        messages: List[ChatMessage],
        functions: Optional[List[FunctionSpec]] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        request_id: str = "",
    ) -> CompletionResult:
        payload = self._build_payload(model, messages, functions, temperature, max_tokens)

        try:
            response = await self.client.post("/v1/messages", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise handle_provider_error(self.provider.value, e, request_id)

        return self._parse_response(data)

    async def health_check(self) -> ProviderHealth:
        """Check Anthropic API health with a one-token request."""
        try:
            start = time.time()
            response = await self.client.post(
                "/v1/messages",
                json={
                    "model": "claude-3-haiku-20240307",
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}]
                }
            )
            latency = int((time.time() - start) * 1000)

            return ProviderHealth(
                provider=self.provider,
                is_healthy=response.status_code == 200,
                latency_ms=latency
            )
        except httpx.HTTPError as e:
            return ProviderHealth(
                provider=self.provider,
                is_healthy=False,
                last_error=str(e)
            )

    async def close(self):
        await self.client.aclose()

    # ============================================================
    # Private helper methods
    # ============================================================

    def _build_payload(
        self,
        model: str,
        messages: List[ChatMessage],
        functions: Optional[List[FunctionSpec]],
        temperature: float,
        max_tokens: int,
    ) -> Dict[str, Any]:
        system, conversation = self.split_system(messages)

        payload: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in conversation],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            payload["system"] = system
        if functions:
            payload["tools"] = [
                {
                    "name": fn.name,
                    "description": fn.description,
                    "input_schema": fn.parameters,
                }
                for fn in functions
            ]
            payload["tool_choice"] = {"type": "tool", "name": functions[0].name}
        return payload

    def _parse_response(self, data: Dict[str, Any]) -> CompletionResult:
        text_parts = []
        function_call = None

        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use" and function_call is None:
                function_call = FunctionCall(
                    name=block["name"],
                    arguments=json.dumps(block.get("input", {})),
                )

        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("input_tokens", 0),
            completion_tokens=usage_data.get("output_tokens", 0),
        )

        return CompletionResult(
            content="".join(text_parts) or None,
            function_call=function_call,
            usage=usage,
        )
