"""ActionDispatcher: runs one node's concrete invocation against its adaptor or transform.

Owns per-node timeouts and retries. Transient provider failures and timeouts
are retried when the node's error policy says ``retry``; permanent adaptor
errors are raised on the first attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, assert_never

from genflow import config
from genflow.adaptor_resolver import ResolvedAdaptor
from genflow.adaptors.base import GenerationResult
from genflow.errors import AdaptorError, DispatchTimeout, ExecutionError, GenflowError, TransientProviderError
from genflow.models import Node, NodeKind, RetryPolicy, Usage
from genflow.prompts import ResolvedPrompt
from genflow.transforms import TransformRegistry, create_default_transforms

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


@dataclass
class Invocation:
    """Everything needed to run one node, assembled by the orchestrator."""

    inputs: dict[str, Any] = field(default_factory=dict)
    prompt: ResolvedPrompt | None = None
    adaptor: ResolvedAdaptor | None = None


@dataclass
class DispatchOutcome:
    output: Any
    usage: Usage = field(default_factory=Usage)
    attempts: int = 1


def parse_json_output(text: str) -> Any:
    """Parse model output that should be JSON, tolerating a fenced code block around it."""
    candidate = text.strip()
    match = _FENCE.search(candidate)
    if match:
        candidate = match.group(1).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise AdaptorError(f"Model output is not valid JSON: {e}", code="INVALID_JSON") from e


def _remaining_ms(deadline: float | None) -> int | None:
    if deadline is None:
        return None
    return int((deadline - time.monotonic()) * 1000)


def _out_of_time(node: Node, attempts: int) -> ExecutionError:
    error = ExecutionError(f"Execution timeout reached while running node {node.id}", code="EXECUTION_TIMEOUT")
    error.attempts = attempts
    return error


class ActionDispatcher:
    def __init__(
        self,
        transforms: TransformRegistry | None = None,
        default_timeout_ms: int = config.DEFAULT_NODE_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transforms = transforms or create_default_transforms()
        self.default_timeout_ms = default_timeout_ms
        self._sleep = sleep

    async def dispatch(
        self,
        node: Node,
        invocation: Invocation,
        timeout_ms: int | None = None,
        retry_policy: RetryPolicy | None = None,
        deadline: float | None = None,
    ) -> DispatchOutcome:
        """Run the node, retrying transient failures per its error policy.

        ``timeout_ms`` caps the node's own timeout. ``deadline`` is the
        execution's ``time.monotonic()`` ceiling: every attempt and every
        backoff fits inside it, and a retry that cannot start before it raises
        ExecutionError(EXECUTION_TIMEOUT). Any raised GenflowError has an
        ``attempts`` attribute set.
        """
        policy = node.error_policy
        retry_policy = retry_policy or RetryPolicy()
        max_attempts = 1
        if policy.on_error == "retry":
            # retryCount 0 on a retry node means "use the recipe-wide maxRetries"
            max_attempts += max(policy.retry_count or retry_policy.max_retries, 0)

        node_timeout = policy.timeout_ms or self.default_timeout_ms
        if timeout_ms is not None:
            node_timeout = min(node_timeout, timeout_ms)

        attempt = 0
        while True:
            remaining = _remaining_ms(deadline)
            if remaining is not None and remaining <= 0:
                raise _out_of_time(node, attempt)
            attempt += 1
            attempt_timeout = node_timeout if remaining is None else min(node_timeout, remaining)
            try:
                output, usage = await self._with_timeout(node, invocation, attempt_timeout)
                return DispatchOutcome(output=output, usage=usage, attempts=attempt)
            except TransientProviderError as e:
                e.attempts = attempt
                if attempt >= max_attempts:
                    logger.warning(f"Node {node.id} failed after {attempt} attempt(s): {e}")
                    raise
                delay_ms = retry_policy.delay_ms(attempt)
                remaining = _remaining_ms(deadline)
                if remaining is not None and remaining <= delay_ms:
                    logger.warning(f"Node {node.id} attempt {attempt} failed ({e.kind}), no time left to retry")
                    raise _out_of_time(node, attempt) from e
                logger.info(f"Node {node.id} attempt {attempt} failed ({e.kind}), retrying in {delay_ms}ms")
                await self._sleep(delay_ms / 1000)
            except GenflowError as e:
                e.attempts = attempt
                raise

    async def _with_timeout(self, node: Node, invocation: Invocation, timeout_ms: int) -> tuple[Any, Usage]:
        task = asyncio.ensure_future(self._call(node, invocation))
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if not done:
            # Abandon the call; whatever it eventually returns is discarded.
            task.cancel()
            raise DispatchTimeout(f"Node {node.id} did not finish within {timeout_ms}ms", code="NODE_TIMEOUT")
        return task.result()

    async def _call(self, node: Node, invocation: Invocation) -> tuple[Any, Usage]:
        match node.kind:
            case NodeKind.TEXT_GENERATION:
                adaptor, prompt, params = self._generation_args(node, invocation)
                result = await adaptor.adaptor.generate_text(prompt.user_prompt, params)
                output = result.payload
                if prompt.output_format == "json" and isinstance(output, str):
                    output = parse_json_output(output)
                return output, self._priced(result, adaptor)
            case NodeKind.IMAGE_GENERATION:
                adaptor, prompt, params = self._generation_args(node, invocation)
                result = await adaptor.adaptor.generate_image(prompt.user_prompt, params)
                return result.payload, self._priced(result, adaptor)
            case NodeKind.VIDEO_GENERATION:
                adaptor, prompt, params = self._generation_args(node, invocation)
                result = await adaptor.adaptor.generate_video(prompt.user_prompt, params)
                return result.payload, self._priced(result, adaptor)
            case NodeKind.DATA_TRANSFORM:
                output = await self.transforms.apply(invocation.inputs, node.config)
                return output, Usage()
            case _:
                assert_never(node.kind)

    def _generation_args(self, node: Node, invocation: Invocation) -> tuple[ResolvedAdaptor, ResolvedPrompt, dict]:
        if invocation.adaptor is None:
            raise AdaptorError(f"Node {node.id} ({node.kind.value}) has no resolved adaptor", code="NO_ADAPTOR")
        if invocation.prompt is None:
            raise AdaptorError(f"Node {node.id} ({node.kind.value}) has no resolved prompt", code="NO_PROMPT")
        params = {**invocation.adaptor.parameters, **node.config}
        if invocation.prompt.system_prompt:
            params["system_prompt"] = invocation.prompt.system_prompt
        return invocation.adaptor, invocation.prompt, params

    @staticmethod
    def _priced(result: GenerationResult, adaptor: ResolvedAdaptor) -> Usage:
        usage = result.usage
        cost = adaptor.pricing.estimate(usage.input_units, usage.output_units)
        return Usage(usage.input_units, usage.output_units, cost)
