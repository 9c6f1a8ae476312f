"""Base provider adaptor: the interface every generation backend implements."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from genflow.errors import AdaptorError
from genflow.models import Usage

logger = logging.getLogger(__name__)


@dataclass
class ModelPricing:
    """Unit pricing for one model. Cost = (in * input_rate + out * output_rate) / per_units."""

    input_rate: float = 0.0
    output_rate: float = 0.0
    per_units: int = 1_000_000

    def estimate(self, input_units: int, output_units: int) -> float:
        return (input_units * self.input_rate + output_units * self.output_rate) / self.per_units

    def to_dict(self) -> dict:
        return {"inputRate": self.input_rate, "outputRate": self.output_rate, "perUnits": self.per_units}


@dataclass
class GenerationResult:
    payload: Any
    usage: Usage = field(default_factory=Usage)
    model: str | None = None
    raw: Any = None


class ProviderAdaptor(ABC):
    """A pluggable generation backend bound to one model.

    Subclasses override the ``generate_*`` methods for the capabilities they
    support; unsupported capabilities raise AdaptorError. ``validate_config``
    and ``health_check`` are mandatory.
    """

    provider_id: str = ""
    display_name: str = ""
    capabilities: tuple[str, ...] = ()
    MODELS: dict[str, ModelPricing] = {}

    def __init__(self, model_id: str, config: dict | None = None, credentials: dict | None = None):
        self.model_id = model_id
        self.config = config or {}
        self.credentials = credentials or {}

    async def generate_text(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        raise AdaptorError(f"{self.provider_id} does not support text generation", code="UNSUPPORTED_CAPABILITY")

    async def generate_image(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        raise AdaptorError(f"{self.provider_id} does not support image generation", code="UNSUPPORTED_CAPABILITY")

    async def generate_video(self, prompt: str, params: dict[str, Any]) -> GenerationResult:
        raise AdaptorError(f"{self.provider_id} does not support video generation", code="UNSUPPORTED_CAPABILITY")

    @abstractmethod
    def validate_config(self, config: dict[str, Any]) -> bool:
        """Check that credentials and parameters are usable. Must not do network I/O."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend is reachable and accepting requests."""

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def pricing(self) -> ModelPricing:
        return self.MODELS.get(self.model_id, ModelPricing())

    def estimate_cost(self, usage: Usage) -> float:
        return self.pricing().estimate(usage.input_units, usage.output_units)

    @classmethod
    def available_models(cls) -> list[str]:
        return list(cls.MODELS.keys())
