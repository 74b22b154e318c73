"""Anthropic Messages API provider."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..models.gateway import CompletionResult
from .base import BaseProvider


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    default_model = "claude-sonnet-4-5-20250929"
    API_URL = "https://api.anthropic.com/v1/messages"

    def _get_api_key(self) -> Optional[str]:
        env_var = self.config.get("api_key_env", "ANTHROPIC_API_KEY")
        return os.environ.get(env_var)

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 0) -> CompletionResult:
        api_key = self._get_api_key()
        if not api_key:
            env_var = self.config.get("api_key_env", "ANTHROPIC_API_KEY")
            return CompletionResult(success=False, error=f"401 | API key not found in environment variable: {env_var}")

        body = {
            "model": self.model,
            "max_tokens": max_tokens or self.config.get("max_tokens", 4000),
            "temperature": self.common.get("temperature", 0.1),
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
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

        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            return CompletionResult(success=False, error="Malformed response: no content blocks returned")

        content = "".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return CompletionResult(
            success=True,
            content=content,
            tokens_used={
                "input": usage.get("input_tokens") or 0,
                "output": usage.get("output_tokens") or 0,
            },
        )
