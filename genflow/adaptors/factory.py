"""Adaptor factory: wire the built-in adaptors into a registry."""

from __future__ import annotations

from genflow.adaptors.registry import AdaptorRegistry


def parse_model_string(model: str) -> tuple[str | None, str]:
    """Parse 'provider/model-name' into (provider, model). Infers the provider when possible."""
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    if model.startswith("claude"):
        return "anthropic", model
    if model.startswith(("gpt", "o1", "o3", "dall-e", "sora")):
        return "openai", model
    return None, model


def create_default_registry() -> AdaptorRegistry:
    """Create a registry with the built-in Anthropic and OpenAI adaptors."""
    from genflow.adaptors.anthropic_provider import AnthropicAdaptor
    from genflow.adaptors.openai_provider import OpenAIAdaptor

    registry = AdaptorRegistry()
    registry.register("anthropic", AnthropicAdaptor)
    registry.register("openai", OpenAIAdaptor)
    return registry
