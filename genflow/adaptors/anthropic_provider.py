"""Anthropic (Claude) provider adaptor. Text generation only."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from genflow.adaptors.base import GenerationResult, ModelPricing, ProviderAdaptor
from genflow.config import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from genflow.errors import AdaptorError, TransientProviderError
from genflow.models import Usage

logger = logging.getLogger(__name__)


def classify_error(e: anthropic.APIError) -> Exception:
    """Map SDK exceptions onto the retryable / permanent split."""
    if isinstance(e, (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError)):
        return TransientProviderError(f"Anthropic transient error: {e}", code=type(e).__name__.upper())
    if isinstance(e, anthropic.APIStatusError) and e.status_code >= 500:
        return TransientProviderError(f"Anthropic server error: {e}", code="SERVER_ERROR")
    return AdaptorError(f"Anthropic API error: {e}", code=type(e).__name__.upper())


class AnthropicAdaptor(ProviderAdaptor):
    provider_id = "anthropic"
    display_name = "Anthropic Claude"
    capabilities = ("textGeneration",)
    # USD per million tokens
    MODELS = {
        "claude-opus-4-6": ModelPricing(15.0, 75.0),
        "claude-sonnet-4-5": ModelPricing(3.0, 15.0),
        "claude-haiku-4-5": ModelPricing(1.0, 5.0),
    }

    def __init__(self, model_id: str = "claude-sonnet-4-5", config: dict | None = None, credentials: dict | None = None):
        super().__init__(model_id, config, credentials)
        self.client = anthropic.AsyncAnthropic(api_key=self.credentials.get("api_key") or None)

    def validate_config(self, config: dict[str, Any]) -> bool:
        if not self.credentials.get("api_key"):
            logger.warning("Anthropic adaptor has no api_key")
            return False
        temperature = config.get("temperature")
        if temperature is not None and not 0.0 <= float(temperature) <= 1.0:
            return False
        return self.model_id.startswith("claude")

    async def health_check(self) -> bool:
        try:
            await self.client.models.list(limit=1)
            return True
        except anthropic.APIError as e:
            logger.warning(f"Anthropic health check failed: {e}")
            return False

    async def generate_text(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        merged = {**self.config, **params}
        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": int(merged.get("max_tokens", DEFAULT_MAX_TOKENS)),
            "temperature": float(merged.get("temperature", DEFAULT_TEMPERATURE)),
        }
        if merged.get("system_prompt"):
            kwargs["system"] = merged["system_prompt"]

        try:
            raw = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise classify_error(e) from e

        text = "\n".join(block.text for block in raw.content if block.type == "text")
        return GenerationResult(
            payload=text,
            usage=Usage(raw.usage.input_tokens, raw.usage.output_tokens),
            model=self.model_id,
            raw=raw,
        )
