"""Core data structures: recipes, executions, action results, prompt templates, adaptor configs.

Every record round-trips through ``to_dict()`` / ``from_dict()`` using the
document-store schema (camelCase keys), so an execution can be persisted,
reloaded, and resumed from plain JSON.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from genflow import config


def generate_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class NodeKind(str, Enum):
    TEXT_GENERATION = "text-generation"
    IMAGE_GENERATION = "image-generation"
    VIDEO_GENERATION = "video-generation"
    DATA_TRANSFORM = "data-transform"

    @classmethod
    def parse(cls, value: str) -> "NodeKind":
        """Accept both hyphen and underscore spellings, plus the legacy 'data_processing'."""
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "data-processing":
            normalized = "data-transform"
        return cls(normalized)

    @property
    def capability(self) -> str | None:
        return _KIND_CAPABILITY[self]


_KIND_CAPABILITY = {
    NodeKind.TEXT_GENERATION: "textGeneration",
    NodeKind.IMAGE_GENERATION: "imageGeneration",
    NodeKind.VIDEO_GENERATION: "videoGeneration",
    NodeKind.DATA_TRANSFORM: None,
}


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)


ERROR_POLICIES = ("fail", "skip", "retry")


# ---------------------------------------------------------------------------
# Recipe
# ---------------------------------------------------------------------------


@dataclass
class ErrorPolicy:
    on_error: str = "fail"  # fail | skip | retry
    retry_count: int = 0
    timeout_ms: int | None = None
    default_output: Any = None

    def to_dict(self) -> dict:
        return {
            "onError": self.on_error,
            "retryCount": self.retry_count,
            "timeoutMs": self.timeout_ms,
            "defaultOutput": self.default_output,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ErrorPolicy":
        data = data or {}
        return cls(
            on_error=data.get("onError", "fail"),
            retry_count=int(data.get("retryCount", 0) or 0),
            timeout_ms=data.get("timeoutMs"),
            default_output=copy.deepcopy(data.get("defaultOutput")),
        )


@dataclass
class Selector:
    """Stage + capability reference used by the adaptor and prompt resolvers.

    A provider selector may also pin an explicit adaptor/model pair, which
    takes precedence over every stored configuration.
    """

    stage_type: str | None = None
    capability: str | None = None
    adaptor_id: str | None = None
    model_id: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"stageType": self.stage_type, "capability": self.capability}
        if self.adaptor_id:
            d["adaptorId"] = self.adaptor_id
        if self.model_id:
            d["modelId"] = self.model_id
        return d

    @classmethod
    def from_dict(cls, data: dict | None) -> "Selector":
        data = data or {}
        return cls(
            stage_type=data.get("stageType"),
            capability=data.get("capability"),
            adaptor_id=data.get("adaptorId"),
            model_id=data.get("modelId"),
        )


@dataclass
class Node:
    id: str
    kind: NodeKind
    output_key: str
    name: str = ""
    input_mapping: dict[str, Any] = field(default_factory=dict)
    optional_inputs: list[str] = field(default_factory=list)
    provider_selector: Selector = field(default_factory=Selector)
    prompt_selector: Selector = field(default_factory=Selector)
    dependencies: list[str] = field(default_factory=list)
    error_policy: ErrorPolicy = field(default_factory=ErrorPolicy)
    config: dict[str, Any] = field(default_factory=dict)

    def capability(self) -> str | None:
        return self.provider_selector.capability or self.kind.capability

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "inputMapping": copy.deepcopy(self.input_mapping),
            "optionalInputs": list(self.optional_inputs),
            "outputKey": self.output_key,
            "providerSelector": self.provider_selector.to_dict(),
            "promptSelector": self.prompt_selector.to_dict(),
            "dependencies": list(self.dependencies),
            "errorPolicy": self.error_policy.to_dict(),
            "config": copy.deepcopy(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Node":
        # Older documents use "type", "errorHandling" and "parameters".
        kind = data.get("kind") or data.get("type") or ""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            kind=NodeKind.parse(kind),
            input_mapping=copy.deepcopy(data.get("inputMapping") or {}),
            optional_inputs=list(data.get("optionalInputs") or []),
            output_key=data.get("outputKey", ""),
            provider_selector=Selector.from_dict(data.get("providerSelector")),
            prompt_selector=Selector.from_dict(data.get("promptSelector")),
            dependencies=list(data.get("dependencies") or []),
            error_policy=ErrorPolicy.from_dict(data.get("errorPolicy") or data.get("errorHandling")),
            config=copy.deepcopy(data.get("config") or data.get("parameters") or {}),
        )


@dataclass
class Edge:
    source: str
    target: str

    def to_dict(self) -> dict:
        return {"from": self.source, "to": self.target}

    @classmethod
    def from_dict(cls, data: dict) -> "Edge":
        return cls(source=data.get("from", ""), target=data.get("to", ""))


@dataclass
class RetryPolicy:
    max_retries: int = 1
    backoff_ms: int = config.DEFAULT_BACKOFF_MS
    backoff_multiplier: float = config.DEFAULT_BACKOFF_MULTIPLIER
    max_backoff_ms: int = config.MAX_BACKOFF_MS

    def delay_ms(self, attempt: int) -> int:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = self.backoff_ms * (self.backoff_multiplier ** max(attempt - 1, 0))
        return int(min(delay, self.max_backoff_ms))

    def to_dict(self) -> dict:
        return {
            "maxRetries": self.max_retries,
            "backoffMs": self.backoff_ms,
            "backoffMultiplier": self.backoff_multiplier,
            "maxBackoffMs": self.max_backoff_ms,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_retries=int(data.get("maxRetries", 1)),
            backoff_ms=int(data.get("backoffMs", config.DEFAULT_BACKOFF_MS)),
            backoff_multiplier=float(data.get("backoffMultiplier", config.DEFAULT_BACKOFF_MULTIPLIER)),
            max_backoff_ms=int(data.get("maxBackoffMs", config.MAX_BACKOFF_MS)),
        )


@dataclass
class ExecutionConfig:
    timeout_ms: int | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    continue_on_error: bool = False
    parallel_execution: bool = False
    max_concurrent_per_provider: int | None = None

    def to_dict(self) -> dict:
        return {
            "timeoutMs": self.timeout_ms,
            "retryPolicy": self.retry_policy.to_dict(),
            "continueOnError": self.continue_on_error,
            "parallelExecution": self.parallel_execution,
            "maxConcurrentPerProvider": self.max_concurrent_per_provider,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ExecutionConfig":
        data = data or {}
        return cls(
            timeout_ms=data.get("timeoutMs", data.get("timeout")),
            retry_policy=RetryPolicy.from_dict(data.get("retryPolicy")),
            continue_on_error=bool(data.get("continueOnError", False)),
            parallel_execution=bool(data.get("parallelExecution", False)),
            max_concurrent_per_provider=data.get("maxConcurrentPerProvider"),
        )


@dataclass
class Recipe:
    id: str = field(default_factory=lambda: generate_id("recipe_"))
    name: str = "Untitled Recipe"
    description: str = ""
    stage_type: str = ""
    version: int = 1
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    execution_config: ExecutionConfig = field(default_factory=ExecutionConfig)
    metadata: dict[str, Any] = field(default_factory=dict)

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def node_map(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "stageType": self.stage_type,
            "version": self.version,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "executionConfig": self.execution_config.to_dict(),
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Recipe":
        return cls(
            id=data.get("id") or generate_id("recipe_"),
            name=data.get("name", "Untitled Recipe"),
            description=data.get("description", ""),
            stage_type=data.get("stageType", ""),
            version=int(data.get("version", 1)),
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            execution_config=ExecutionConfig.from_dict(data.get("executionConfig")),
            metadata=copy.deepcopy(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    input_units: int = 0
    output_units: int = 0
    estimated_cost: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            self.input_units + other.input_units,
            self.output_units + other.output_units,
            self.estimated_cost + other.estimated_cost,
        )

    def to_dict(self) -> dict:
        return {
            "inputUnits": self.input_units,
            "outputUnits": self.output_units,
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "Usage":
        data = data or {}
        return cls(
            input_units=int(data.get("inputUnits", 0)),
            output_units=int(data.get("outputUnits", 0)),
            estimated_cost=float(data.get("estimatedCost", 0.0)),
        )


@dataclass
class ActionResult:
    node_id: str
    output_key: str
    status: NodeStatus = NodeStatus.PENDING
    input: dict[str, Any] | None = None
    output: Any = None
    error: dict[str, Any] | None = None  # {kind, message, code}
    started_at: float | None = None
    completed_at: float | None = None
    duration_ms: int = 0
    attempts: int = 0
    adaptor_id: str | None = None
    model_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    diagnostics: list[dict] = field(default_factory=list)

    def finish(self, status: NodeStatus, completed_at: float | None = None):
        self.status = status
        self.completed_at = completed_at if completed_at is not None else time.time()
        if self.started_at is not None:
            self.duration_ms = int((self.completed_at - self.started_at) * 1000)

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "outputKey": self.output_key,
            "status": self.status.value,
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
            "error": copy.deepcopy(self.error),
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
            "attempts": self.attempts,
            "adaptorId": self.adaptor_id,
            "modelId": self.model_id,
            "usage": self.usage.to_dict(),
            "diagnostics": copy.deepcopy(self.diagnostics),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActionResult":
        return cls(
            node_id=data["nodeId"],
            output_key=data.get("outputKey", ""),
            status=NodeStatus(data.get("status", "pending")),
            input=copy.deepcopy(data.get("input")),
            output=copy.deepcopy(data.get("output")),
            error=copy.deepcopy(data.get("error")),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            duration_ms=int(data.get("durationMs", 0)),
            attempts=int(data.get("attempts", 0)),
            adaptor_id=data.get("adaptorId"),
            model_id=data.get("modelId"),
            usage=Usage.from_dict(data.get("usage")),
            diagnostics=copy.deepcopy(data.get("diagnostics") or []),
        )


@dataclass
class Execution:
    recipe_id: str
    id: str = field(default_factory=lambda: generate_id("exec_"))
    recipe_version: int = 1
    project_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    node_results: dict[str, ActionResult] = field(default_factory=dict)  # outputKey -> result
    active_node_ids: list[str] = field(default_factory=list)
    cancel_requested: bool = False
    error: dict[str, Any] | None = None
    triggered_by: str = "system"
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None

    def result_for_node(self, node_id: str) -> ActionResult | None:
        for r in self.node_results.values():
            if r.node_id == node_id:
                return r
        return None

    def summary(self) -> dict:
        counts = {s.value: 0 for s in NodeStatus}
        total = Usage()
        for r in self.node_results.values():
            counts[r.status.value] += 1
            total = total + r.usage
        return {
            "status": self.status.value,
            "nodeCounts": counts,
            "hasErrors": counts["failed"] > 0,
            "usage": total.to_dict(),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipeId": self.recipe_id,
            "recipeVersion": self.recipe_version,
            "projectId": self.project_id,
            "input": copy.deepcopy(self.input),
            "status": self.status.value,
            "nodeResults": {k: r.to_dict() for k, r in self.node_results.items()},
            "activeNodeIds": list(self.active_node_ids),
            "cancelRequested": self.cancel_requested,
            "error": copy.deepcopy(self.error),
            "triggeredBy": self.triggered_by,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Execution":
        return cls(
            id=data["id"],
            recipe_id=data["recipeId"],
            recipe_version=int(data.get("recipeVersion", 1)),
            project_id=data.get("projectId"),
            input=copy.deepcopy(data.get("input") or {}),
            status=ExecutionStatus(data.get("status", "pending")),
            node_results={k: ActionResult.from_dict(v) for k, v in (data.get("nodeResults") or {}).items()},
            active_node_ids=list(data.get("activeNodeIds") or []),
            cancel_requested=bool(data.get("cancelRequested", False)),
            error=copy.deepcopy(data.get("error")),
            triggered_by=data.get("triggeredBy", "system"),
            created_at=data.get("createdAt") or time.time(),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------


PROMPT_SCOPES = ("global-default", "project-default", "project-override")


@dataclass
class PromptSet:
    system_prompt: str = ""
    user_template: str = ""
    output_format: str = "text"  # text | json
    variables: list[str] = field(default_factory=list)  # required placeholders

    def to_dict(self) -> dict:
        return {
            "systemPrompt": self.system_prompt,
            "userTemplate": self.user_template,
            "outputFormat": self.output_format,
            "variables": list(self.variables),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "PromptSet":
        data = data or {}
        return cls(
            system_prompt=data.get("systemPrompt", ""),
            user_template=data.get("userTemplate", data.get("userPromptTemplate", "")),
            output_format=data.get("outputFormat", "text"),
            variables=list(data.get("variables") or []),
        )


@dataclass
class PromptTemplate:
    stage_type: str
    id: str = field(default_factory=lambda: generate_id("prompt_"))
    version: int = 1
    project_id: str | None = None
    prompts: dict[str, PromptSet] = field(default_factory=dict)  # capability -> prompt set
    scope: str = "global-default"
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stageType": self.stage_type,
            "version": self.version,
            "projectId": self.project_id,
            "prompts": {cap: p.to_dict() for cap, p in self.prompts.items()},
            "scope": self.scope,
            "isActive": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PromptTemplate":
        return cls(
            id=data.get("id") or generate_id("prompt_"),
            stage_type=data.get("stageType", ""),
            version=int(data.get("version", 1)),
            project_id=data.get("projectId"),
            prompts={cap: PromptSet.from_dict(p) for cap, p in (data.get("prompts") or {}).items()},
            scope=data.get("scope", "global-default"),
            is_active=bool(data.get("isActive", True)),
        )


# ---------------------------------------------------------------------------
# Adaptor configuration
# ---------------------------------------------------------------------------


@dataclass
class AdaptorConfig:
    capability: str
    provider_id: str
    model_id: str
    id: str = field(default_factory=lambda: generate_id("adaptor_"))
    project_id: str | None = None  # None -> global entry
    stage_type: str | None = None  # None -> capability-wide default
    parameters: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "stageType": self.stage_type,
            "capability": self.capability,
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "parameters": copy.deepcopy(self.parameters),
            "credentials": copy.deepcopy(self.credentials),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AdaptorConfig":
        return cls(
            id=data.get("id") or generate_id("adaptor_"),
            project_id=data.get("projectId"),
            stage_type=data.get("stageType"),
            capability=data.get("capability", ""),
            provider_id=data.get("providerId", ""),
            model_id=data.get("modelId", ""),
            parameters=copy.deepcopy(data.get("parameters") or {}),
            credentials=copy.deepcopy(data.get("credentials") or {}),
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    execution_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "execution_id": self.execution_id, "ts": self.ts, "data": self.data}
