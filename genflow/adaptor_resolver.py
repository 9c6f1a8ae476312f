"""AdaptorResolver: which provider+model handles capability C for stage S of project P.

Resolution order, first match wins:

0. an adaptor/model pinned on the node's provider selector
1. an AdaptorConfig for this exact project + stage + capability
2. the project's capability-wide default (no stage)
3. a global AdaptorConfig (stage-specific, then capability-wide), then the
   process-wide defaults from ``genflow.config``
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from genflow import config
from genflow.adaptors.base import ModelPricing, ProviderAdaptor
from genflow.adaptors.factory import parse_model_string
from genflow.adaptors.registry import AdaptorRegistry
from genflow.errors import AdaptorError
from genflow.models import AdaptorConfig, Selector
from genflow.store import ADAPTOR_CONFIGS, DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedAdaptor:
    adaptor_id: str
    model_id: str
    capability: str
    adaptor: ProviderAdaptor
    source: str  # node | project | project_default | global
    parameters: dict[str, Any] = field(default_factory=dict)
    pricing: ModelPricing = field(default_factory=ModelPricing)

    def to_dict(self) -> dict:
        return {
            "adaptorId": self.adaptor_id,
            "modelId": self.model_id,
            "capability": self.capability,
            "source": self.source,
            "parameters": self.parameters,
            "pricing": self.pricing.to_dict(),
        }


@dataclass
class _Choice:
    adaptor_id: str
    model_id: str
    source: str
    parameters: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict)


class ResolutionCache:
    """Per-execution cache. Never share one across executions."""

    def __init__(self):
        self._entries: dict[tuple, ResolvedAdaptor] = {}

    def get(self, key: tuple) -> ResolvedAdaptor | None:
        return self._entries.get(key)

    def put(self, key: tuple, value: ResolvedAdaptor):
        self._entries[key] = value

    def __len__(self) -> int:
        return len(self._entries)


class AdaptorResolver:
    def __init__(
        self,
        store: DocumentStore,
        registry: AdaptorRegistry,
        default_adaptors: dict[str, tuple[str, str]] | None = None,
        global_credentials: dict[str, dict] | None = None,
        check_health: bool = True,
        health_check_timeout_ms: int = config.HEALTH_CHECK_TIMEOUT_MS,
    ):
        self.store = store
        self.registry = registry
        self.default_adaptors = default_adaptors if default_adaptors is not None else dict(config.DEFAULT_ADAPTORS)
        self.global_credentials = global_credentials if global_credentials is not None else config.PROVIDER_CREDENTIALS
        self.check_health = check_health
        self.health_check_timeout_ms = health_check_timeout_ms

    async def resolve(
        self,
        project_id: str | None,
        stage_type: str | None,
        capability: str,
        selector: Selector | None = None,
        cache: ResolutionCache | None = None,
    ) -> ResolvedAdaptor:
        """Return a validated, healthy adaptor handle. Raises AdaptorError otherwise."""
        choice = self.lookup(project_id, stage_type, capability, selector)
        key = (project_id, stage_type, capability, choice.adaptor_id, choice.model_id)
        if cache is not None:
            cached = cache.get(key)
            if cached is not None:
                return cached

        adaptor = self.registry.resolve(choice.adaptor_id, choice.model_id, choice.parameters, choice.credentials)

        if not adaptor.supports(capability):
            raise AdaptorError(
                f"Adaptor '{choice.adaptor_id}' does not support {capability}", code="UNSUPPORTED_CAPABILITY"
            )
        if not adaptor.validate_config(choice.parameters):
            raise AdaptorError(
                f"Adaptor '{choice.adaptor_id}/{choice.model_id}' has invalid credentials or configuration",
                code="INVALID_CONFIG",
            )
        if self.check_health:
            try:
                healthy = await asyncio.wait_for(adaptor.health_check(), self.health_check_timeout_ms / 1000)
            except asyncio.TimeoutError as e:
                raise AdaptorError(
                    f"Health check for '{choice.adaptor_id}' did not answer within {self.health_check_timeout_ms}ms",
                    code="UNHEALTHY",
                ) from e
            except Exception as e:
                raise AdaptorError(f"Health check for '{choice.adaptor_id}' raised: {e}", code="UNHEALTHY") from e
            if not healthy:
                raise AdaptorError(f"Adaptor '{choice.adaptor_id}' is unhealthy", code="UNHEALTHY")

        resolved = ResolvedAdaptor(
            adaptor_id=choice.adaptor_id,
            model_id=choice.model_id,
            capability=capability,
            adaptor=adaptor,
            source=choice.source,
            parameters=choice.parameters,
            pricing=adaptor.pricing(),
        )
        logger.info(
            f"Resolved {capability} for project={project_id} stage={stage_type} -> "
            f"{choice.adaptor_id}/{choice.model_id} (source: {choice.source})"
        )
        if cache is not None:
            cache.put(key, resolved)
        return resolved

    def lookup(
        self,
        project_id: str | None,
        stage_type: str | None,
        capability: str,
        selector: Selector | None = None,
    ) -> _Choice:
        """Walk the fallback chain over stored configs. No adaptor is instantiated."""
        if selector and (selector.adaptor_id or selector.model_id):
            adaptor_id = selector.adaptor_id
            model_id = selector.model_id or ""
            if not adaptor_id:
                adaptor_id, model_id = parse_model_string(model_id)
            if not adaptor_id:
                raise AdaptorError(f"Cannot infer an adaptor for model '{selector.model_id}'", code="NO_CONFIGURATION")
            if not model_id:
                model_id = self._default_model(adaptor_id, capability)
            return _Choice(adaptor_id, model_id, "node", credentials=self._credentials(adaptor_id, {}))

        configs = sorted(
            (AdaptorConfig.from_dict(d) for d in self.store.list(ADAPTOR_CONFIGS, capability=capability)),
            key=lambda c: c.id,
        )

        def first(predicate) -> AdaptorConfig | None:
            return next((c for c in configs if predicate(c)), None)

        chain = []
        if project_id:
            chain.append(("project", lambda c: c.project_id == project_id and c.stage_type == stage_type and stage_type))
            chain.append(("project_default", lambda c: c.project_id == project_id and c.stage_type is None))
        chain.append(("global", lambda c: c.project_id is None and stage_type and c.stage_type == stage_type))
        chain.append(("global", lambda c: c.project_id is None and c.stage_type is None))

        for source, predicate in chain:
            match = first(predicate)
            if match is not None:
                return _Choice(
                    match.provider_id,
                    match.model_id,
                    source,
                    parameters=dict(match.parameters),
                    credentials=self._credentials(match.provider_id, match.credentials),
                )

        default = self.default_adaptors.get(capability)
        if default is None:
            raise AdaptorError(f"No adaptor configured for capability '{capability}'", code="NO_CONFIGURATION")
        adaptor_id, model_id = default
        return _Choice(adaptor_id, model_id, "global", credentials=self._credentials(adaptor_id, {}))

    def _credentials(self, adaptor_id: str, explicit: dict) -> dict:
        if explicit:
            return dict(explicit)
        return dict(self.global_credentials.get(adaptor_id, {}))

    def _default_model(self, adaptor_id: str, capability: str) -> str:
        default = self.default_adaptors.get(capability)
        if default and default[0] == adaptor_id:
            return default[1]
        factory = self.registry.factory(adaptor_id)
        models = getattr(factory, "available_models", lambda: [])()
        if not models:
            raise AdaptorError(f"No default model known for adaptor '{adaptor_id}'", code="NO_CONFIGURATION")
        return models[0]

    async def list_available_adaptors(self) -> list[dict]:
        """Every registered adaptor with its models and a health probe on the first model."""
        result = []
        for adaptor_id in self.registry.ids():
            factory = self.registry.factory(adaptor_id)
            models = list(getattr(factory, "available_models", lambda: [])())
            status = "unknown"
            if models:
                try:
                    adaptor = self.registry.resolve(adaptor_id, models[0], {}, self._credentials(adaptor_id, {}))
                    if not adaptor.validate_config({}):
                        status = "unconfigured"
                    else:
                        status = "ok" if await adaptor.health_check() else "error"
                except AdaptorError as e:
                    logger.warning(f"Adaptor {adaptor_id} unavailable: {e}")
                    status = "unavailable"
            result.append({
                "id": adaptor_id,
                "name": getattr(factory, "display_name", "") or adaptor_id,
                "status": status,
                "models": models,
                "defaultModel": models[0] if models else None,
            })
        return result
