"""
AIGate - OpenAI Provider

Chat completions over the OpenAI REST API.
"""

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


class OpenAIProvider(BaseProvider):
    """Client for OpenAI chat completions with tool calling."""

    provider = ProviderType.OPENAI
    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.base_url = config.base_url or self.DEFAULT_BASE_URL
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {config.api_key}",
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
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise handle_provider_error(self.provider.value, e, request_id)

        return self._parse_response(data)

    async def health_check(self) -> ProviderHealth:
        """Check OpenAI API health."""
        try:
            start = time.time()
            response = await self.client.get("/models")
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
        """Close the HTTP client."""
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
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if functions:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": fn.name,
                        "description": fn.description,
                        "parameters": fn.parameters,
                    },
                }
                for fn in functions
            ]
            payload["tool_choice"] = {
                "type": "function",
                "function": {"name": functions[0].name},
            }
        return payload

    def _parse_response(self, data: Dict[str, Any]) -> CompletionResult:
        message = data["choices"][0]["message"]

        function_call = None
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            fn = tool_calls[0]["function"]
            function_call = FunctionCall(name=fn["name"], arguments=fn["arguments"])

        usage = None
        if data.get("usage"):
            usage = TokenUsage(
                prompt_tokens=data["usage"].get("prompt_tokens", 0),
                completion_tokens=data["usage"].get("completion_tokens", 0),
                total_tokens=data["usage"].get("total_tokens", 0),
            )

        return CompletionResult(
            content=message.get("content"),
            function_call=function_call,
            usage=usage,
        )
