"""
AIGate - Google Provider

Gemini models over the Generative Language API.
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
    Role,
    TokenUsage,
)


class GoogleProvider(BaseProvider):
    """Client for Gemini generateContent with function declarations."""

    provider = ProviderType.GOOGLE
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.base_url = config.base_url or self.DEFAULT_BASE_URL
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-goog-api-key": config.api_key},
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
        payload = self._build_payload(messages, functions, temperature, max_tokens)

        try:
            response = await self.client.post(f"/models/{model}:generateContent", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise handle_provider_error(self.provider.value, e, request_id)

        return self._parse_response(data)

    async def health_check(self) -> ProviderHealth:
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
        await self.client.aclose()

    # ============================================================
    # Private helper methods
    # ============================================================

    def _build_payload(
        self,
        messages: List[ChatMessage],
        functions: Optional[List[FunctionSpec]],
        temperature: float,
        max_tokens: int,
    ) -> Dict[str, Any]:
        system, conversation = self.split_system(messages)

        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == Role.ASSISTANT else "user",
                    "parts": [{"text": m.content}],
                }
                for m in conversation
            ],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if functions:
            payload["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": fn.name,
                        "description": fn.description,
                        "parameters": fn.parameters,
                    }
                    for fn in functions
                ]
            }]
            payload["toolConfig"] = {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [functions[0].name],
                }
            }
        return payload

    def _parse_response(self, data: Dict[str, Any]) -> CompletionResult:
        text_content = ""
        function_call = None

        candidates = data.get("candidates", [])
        if candidates:
            for part in candidates[0].get("content", {}).get("parts", []):
                if "text" in part:
                    text_content += part["text"]
                elif "functionCall" in part and function_call is None:
                    fc = part["functionCall"]
                    function_call = FunctionCall(
                        name=fc["name"],
                        arguments=json.dumps(fc.get("args", {})),
                    )

        usage_metadata = data.get("usageMetadata", {})
        usage = TokenUsage(
            prompt_tokens=usage_metadata.get("promptTokenCount", 0),
            completion_tokens=usage_metadata.get("candidatesTokenCount", 0),
            total_tokens=usage_metadata.get("totalTokenCount", 0),
        )

        return CompletionResult(
            content=text_content or None,
            function_call=function_call,
            usage=usage,
        )
