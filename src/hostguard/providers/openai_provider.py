"""OpenAI chat completions provider."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..models.gateway import CompletionResult
from .base import BaseProvider


class OpenAIProvider(BaseProvider):
    name = "openai"
    default_model = "gpt-4.1"
    API_URL = "https://api.openai.com/v1/chat/completions"

    def _get_api_key(self) -> Optional[str]:
        env_var = self.config.get("api_key_env", "OPENAI_API_KEY")
        return os.environ.get(env_var)

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 0) -> CompletionResult:
        api_key = self._get_api_key()
        if not api_key:
            env_var = self.config.get("api_key_env", "OPENAI_API_KEY")
            return CompletionResult(success=False, error=f"401 | API key not found in environment variable: {env_var}")

        body = {
            "model": self.model,
            "max_tokens": max_tokens or self.config.get("max_tokens", 4000),
            "temperature": self.common.get("temperature", 0.1),
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.common.get("timeout_seconds", 120)) as client:
                response = await client.post(self.API_URL, json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            return CompletionResult(success=False, error=f"{e.response.status_code} | {e.response.text}")
        except httpx.TimeoutException as e:
            return CompletionResult(success=False, error=f"Request timed out: {e}")
        except (httpx.HTTPError, ValueError) as e:
            return CompletionResult(success=False, error=str(e) or type(e).__name__)

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return CompletionResult(success=False, error="Malformed response: no choices returned")
        if not isinstance(content, str):
            return CompletionResult(success=False, error="Malformed response: message content is not text")

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return CompletionResult(
            success=True,
            content=content,
            tokens_used={
                "input": usage.get("prompt_tokens") or 0,
                "output": usage.get("completion_tokens") or 0,
            },
        )
