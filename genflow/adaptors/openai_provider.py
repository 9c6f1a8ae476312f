"""OpenAI provider adaptor: GPT text, image generation, and Sora video."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import openai

from genflow.adaptors.base import GenerationResult, ModelPricing, ProviderAdaptor
from genflow.config import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from genflow.errors import AdaptorError, TransientProviderError
from genflow.models import Usage

logger = logging.getLogger(__name__)


def classify_error(e: openai.APIError) -> Exception:
    if isinstance(e, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
        return TransientProviderError(f"OpenAI transient error: {e}", code=type(e).__name__.upper())
    if isinstance(e, openai.APIStatusError) and e.status_code >= 500:
        return TransientProviderError(f"OpenAI server error: {e}", code="SERVER_ERROR")
    return AdaptorError(f"OpenAI API error: {e}", code=type(e).__name__.upper())


class OpenAIAdaptor(ProviderAdaptor):
    provider_id = "openai"
    display_name = "OpenAI"
    capabilities = ("textGeneration", "imageGeneration", "videoGeneration")
    MODELS = {
        "gpt-4o": ModelPricing(2.5, 10.0),
        "gpt-4.1": ModelPricing(2.0, 8.0),
        "gpt-4o-mini": ModelPricing(0.15, 0.6),
        # per image
        "gpt-image-1": ModelPricing(0.0, 0.04, per_units=1),
        "dall-e-3": ModelPricing(0.0, 0.04, per_units=1),
        # per second of video
        "sora-2": ModelPricing(0.0, 0.10, per_units=1),
    }

    VIDEO_POLL_INTERVAL = 5.0

    def __init__(self, model_id: str = "gpt-4o", config: dict | None = None, credentials: dict | None = None):
        super().__init__(model_id, config, credentials)
        self.client = openai.AsyncOpenAI(
            api_key=self.credentials.get("api_key") or None,
            organization=self.credentials.get("organization") or None,
        )

    def validate_config(self, config: dict[str, Any]) -> bool:
        if not self.credentials.get("api_key"):
            logger.warning("OpenAI adaptor has no api_key")
            return False
        temperature = config.get("temperature")
        if temperature is not None and not 0.0 <= float(temperature) <= 2.0:
            return False
        return True

    async def health_check(self) -> bool:
        try:
            await self.client.models.retrieve(self.model_id)
            return True
        except openai.APIError as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False

    async def generate_text(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        merged = {**self.config, **params}
        messages = []
        if merged.get("system_prompt"):
            messages.append({"role": "system", "content": merged["system_prompt"]})
        messages.append({"role": "user", "content": prompt})

        try:
            raw = await self.client.chat.completions.create(
                model=self.model_id,
                messages=messages,
                max_tokens=int(merged.get("max_tokens", DEFAULT_MAX_TOKENS)),
                temperature=float(merged.get("temperature", DEFAULT_TEMPERATURE)),
            )
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise classify_error(e) from e

        return GenerationResult(
            payload=raw.choices[0].message.content,
            usage=Usage(raw.usage.prompt_tokens, raw.usage.completion_tokens),
            model=self.model_id,
            raw=raw,
        )

    async def generate_image(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        merged = {**self.config, **params}
        count = int(merged.get("n", 1))
        try:
            raw = await self.client.images.generate(
                model=self.model_id,
                prompt=prompt,
                size=merged.get("size", "1024x1024"),
                n=count,
            )
        except openai.APIError as e:
            logger.error(f"OpenAI image error: {e}")
            raise classify_error(e) from e

        images = [
            {"url": img.url, "b64Json": img.b64_json, "revisedPrompt": getattr(img, "revised_prompt", None)}
            for img in raw.data or []
        ]
        return GenerationResult(payload=images, usage=Usage(0, len(images)), model=self.model_id, raw=raw)

    async def generate_video(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        merged = {**self.config, **params}
        seconds = str(merged.get("seconds", "4"))
        try:
            video = await self.client.videos.create(
                model=self.model_id,
                prompt=prompt,
                seconds=seconds,
                size=merged.get("size", "1280x720"),
            )
            while video.status in ("queued", "in_progress"):
                await asyncio.sleep(self.VIDEO_POLL_INTERVAL)
                video = await self.client.videos.retrieve(video.id)
        except openai.APIError as e:
            logger.error(f"OpenAI video error: {e}")
            raise classify_error(e) from e

        if video.status != "completed":
            error = getattr(video, "error", None)
            raise AdaptorError(f"Video generation {video.id} ended with status {video.status}: {error}", code="VIDEO_FAILED")

        payload = {"videoId": video.id, "status": video.status, "seconds": seconds}
        return GenerationResult(payload=payload, usage=Usage(0, int(seconds)), model=self.model_id, raw=video)
