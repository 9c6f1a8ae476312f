"""Provider adaptor layer: model-agnostic generation interface."""

from genflow.adaptors.base import GenerationResult, ModelPricing, ProviderAdaptor
from genflow.adaptors.factory import create_default_registry, parse_model_string
from genflow.adaptors.registry import AdaptorRegistry

__all__ = [
    "AdaptorRegistry",
    "GenerationResult",
    "ModelPricing",
    "ProviderAdaptor",
    "create_default_registry",
    "parse_model_string",
]
