"""Adaptor registry: maps adaptor ids to constructors. One instance per configuration."""

from __future__ import annotations

import logging
from typing import Callable

from genflow.adaptors.base import ProviderAdaptor
from genflow.errors import AdaptorError

logger = logging.getLogger(__name__)

# Constructor signature: (model_id, config, credentials) -> adaptor
AdaptorFactory = Callable[[str, dict, dict], ProviderAdaptor]


class AdaptorRegistry:
    """Explicitly constructed registry of adaptor constructors.

    Instances are independent, so tests and tenants can each hold their own.
    """

    def __init__(self):
        self._factories: dict[str, AdaptorFactory] = {}

    def register(self, adaptor_id: str, factory: AdaptorFactory):
        if adaptor_id in self._factories:
            raise ValueError(f"Adaptor '{adaptor_id}' is already registered")
        self._factories[adaptor_id] = factory
        logger.debug(f"Registered adaptor: {adaptor_id}")

    def has(self, adaptor_id: str) -> bool:
        return adaptor_id in self._factories

    def ids(self) -> list[str]:
        return list(self._factories.keys())

    def factory(self, adaptor_id: str) -> AdaptorFactory:
        factory = self._factories.get(adaptor_id)
        if factory is None:
            raise AdaptorError(
                f"Adaptor '{adaptor_id}' is not registered. Available: {', '.join(self.ids()) or 'none'}",
                code="NOT_REGISTERED",
            )
        return factory

    def resolve(
        self,
        adaptor_id: str,
        model_id: str,
        config: dict | None = None,
        credentials: dict | None = None,
    ) -> ProviderAdaptor:
        """Instantiate the adaptor for a model."""
        factory = self.factory(adaptor_id)
        try:
            return factory(model_id, config or {}, credentials or {})
        except AdaptorError:
            raise
        except Exception as e:
            raise AdaptorError(
                f"Failed to initialize adaptor '{adaptor_id}' with model '{model_id}': {e}",
                code="INIT_FAILED",
            ) from e
