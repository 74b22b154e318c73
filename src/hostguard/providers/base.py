"""External analysis providers with retry logic.

Providers only accept a ClearedPayload built by SensitiveDataFirewall.clear();
there is no other way to hand them text.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, Protocol, runtime_checkable

from ..core.firewall import ClearedPayload
from ..core.prompt import extract_per_finding
from ..errors import GatewayError
from ..models.gateway import CompletionResult, GatewayResult
from ..utils.sanitize import sanitize_error

logger = logging.getLogger(__name__)

RETRYABLE_MARKERS = ("429", "500", "502", "503", "504", "timeout", "timed out")
FATAL_MARKERS = ("400", "401", "403", "404")


@runtime_checkable
class GatewayProvider(Protocol):
    name: str
    model: str

    async def analyze(self, payload: ClearedPayload) -> GatewayResult: ...


def is_retryable_error(message: str) -> bool:
    message = message or ""
    if any(code in message for code in FATAL_MARKERS):
        return False
    return any(marker in message for marker in RETRYABLE_MARKERS)


def render_user_content(payload: ClearedPayload) -> str:
    """Prompt plus the structured summary, exactly as the gate inspected them."""
    if not payload.summary:
        return payload.prompt
    summary = json.dumps(payload.summary, sort_keys=True, default=str)
    return f"{payload.prompt}\n\nStructured summary:\n{summary}"


class BaseProvider:
    """Shared retry handling and the cleared-payload check."""

    name: str = "base"
    default_model: str = ""

    def __init__(self, provider_config: dict, common_config: dict):
        self.config = provider_config
        self.common = common_config
        self.max_attempts = common_config.get("retry_attempts", 3)
        self.retry_delay = common_config.get("retry_delay_seconds", 5)

    @property
    def model(self) -> str:
        return self.config.get("model", self.default_model)

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 0) -> CompletionResult:
        raise NotImplementedError

    async def complete_with_retry(self, system_prompt: str, user_prompt: str, max_tokens: int = 0) -> CompletionResult:
        """Wrap complete() with retry logic including rate-limit handling."""
        rate_limit_max = max(self.max_attempts, 5)
        last_result: Optional[CompletionResult] = None

        for attempt in range(1, rate_limit_max + 1):
            result = await self.complete(system_prompt, user_prompt, max_tokens)
            last_result = result

            if result.success:
                return result

            error_msg = result.error or ""
            is_rate_limit = "429" in error_msg
            effective_max = rate_limit_max if is_rate_limit else self.max_attempts
            if not is_retryable_error(error_msg) or attempt >= effective_max:
                result.error = sanitize_error(error_msg)
                return result

            # Rate limits: 30s base. Others: standard backoff.
            base_delay = 30 if is_rate_limit else self.retry_delay
            wait_time = base_delay * min(attempt, 3)
            logger.info("%s attempt %d failed, retrying in %ss", self.name, attempt, wait_time)
            await asyncio.sleep(wait_time)

        return last_result or CompletionResult(success=False, error="Max retries exceeded")

    async def analyze(self, payload: ClearedPayload) -> GatewayResult:
        if not isinstance(payload, ClearedPayload) or not payload.is_cleared:
            raise GatewayError("Payload has not passed the sensitive data firewall", provider=self.name)

        result = await self.complete_with_retry(payload.system_prompt, render_user_content(payload))
        if not result.success:
            error = result.error or "Unknown provider error"
            raise GatewayError(error, provider=self.name, retryable=is_retryable_error(error))

        content = result.content or ""
        return GatewayResult(
            provider=self.name,
            model=self.model,
            analysis_text=content,
            per_finding=extract_per_finding(content),
            usage=result.tokens_used or {},
        )


def get_gateway_provider(
    config: dict,
    provider_override: Optional[str] = None,
    model_override: Optional[str] = None,
) -> Optional[BaseProvider]:
    """Factory for the configured provider. Returns None for provider 'none'."""
    external = config.get("external_analysis", {})
    provider_name = provider_override or external.get("provider", "none")
    if provider_name in (None, "", "none"):
        return None

    provider_config = dict(external.get(provider_name, {}))
    if model_override:
        provider_config["model"] = model_override

    common_config = {k: v for k, v in external.items() if k not in ("anthropic", "openai")}

    if provider_name == "anthropic":
        from .anthropic import AnthropicProvider
        return AnthropicProvider(provider_config, common_config)
    elif provider_name == "openai":
        from .openai_provider import OpenAIProvider
        return OpenAIProvider(provider_config, common_config)
    else:
        raise ValueError(f"Unknown external analysis provider: {provider_name}")
