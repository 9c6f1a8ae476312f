"""Orchestrator: drives one execution of a recipe from validation to a terminal state.

One coordinating coroutine per execution walks the validated order. For each
node it resolves inputs, adaptor and prompt, dispatches, and records the
result through the ExecutionTracker, which it alone writes to. Cancellation
and the overall timeout are checked between dispatches.

With ``executionConfig.parallelExecution`` nodes of the same topological rank
run concurrently, bounded per provider; results are still recorded by the
coordinating coroutine in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from genflow import config
from genflow.adaptor_resolver import AdaptorResolver, ResolutionCache
from genflow.adaptors import AdaptorRegistry, create_default_registry
from genflow.dispatcher import ActionDispatcher, Invocation
from genflow.errors import AdaptorError, ExecutionError, GenflowError, NotFoundError, ResolutionError
from genflow.events import EventBus
from genflow.inputs import InputResolver, is_published
from genflow.models import (
    ActionResult,
    Execution,
    ExecutionStatus,
    Node,
    NodeKind,
    NodeStatus,
    Recipe,
)
from genflow.prompts import PromptResolver
from genflow.recipes import RecipeManager
from genflow.store import DocumentStore
from genflow.tracker import ExecutionTracker
from genflow.transforms import TransformRegistry
from genflow.validator import RecipeValidator

logger = logging.getLogger(__name__)

# Why the remaining nodes of an execution were not run.
STOP_CANCELLED = "cancelled"
STOP_TIMEOUT = "timeout"
STOP_PREEMPTED = "preempted"
STOP_ABORTED = "aborted"

_SKIP_CODES = {
    STOP_CANCELLED: ("CANCELLED", "Execution was cancelled before this node started"),
    STOP_TIMEOUT: ("EXECUTION_TIMEOUT", "Execution timeout reached before this node started"),
    STOP_PREEMPTED: ("PREEMPTED", "An earlier node failed and continueOnError is off"),
    STOP_ABORTED: ("ABORTED", "Execution aborted by an internal error"),
}


@dataclass
class _RunState:
    """Everything one execution needs between nodes. Lives only in the coordinating coroutine."""

    recipe: Recipe
    order: list[str]
    execution_id: str | None
    project_id: str | None
    external_input: dict[str, Any]
    deadline: float | None = None
    node_results: dict[str, ActionResult] = field(default_factory=dict)
    cache: ResolutionCache = field(default_factory=ResolutionCache)
    semaphores: dict[str, asyncio.Semaphore] = field(default_factory=dict)
    max_per_provider: int = config.MAX_CONCURRENT_PER_PROVIDER
    stop_reason: str | None = None
    first_failure: ActionResult | None = None
    unresolved_consumers: list[str] = field(default_factory=list)
    internal_error: str | None = None

    @property
    def continue_on_error(self) -> bool:
        return self.recipe.execution_config.continue_on_error

    def remaining_ms(self) -> int | None:
        if self.deadline is None:
            return None
        return int((self.deadline - time.monotonic()) * 1000)

    def semaphore(self, adaptor_id: str) -> asyncio.Semaphore:
        if adaptor_id not in self.semaphores:
            self.semaphores[adaptor_id] = asyncio.Semaphore(self.max_per_provider)
        return self.semaphores[adaptor_id]


class Orchestrator:
    def __init__(
        self,
        store: DocumentStore,
        registry: AdaptorRegistry | None = None,
        events: EventBus | None = None,
        transforms: TransformRegistry | None = None,
        adaptor_resolver: AdaptorResolver | None = None,
        dispatcher: ActionDispatcher | None = None,
        default_timeout_ms: int = config.DEFAULT_EXECUTION_TIMEOUT_MS,
        max_concurrent_per_provider: int = config.MAX_CONCURRENT_PER_PROVIDER,
    ):
        self.store = store
        self.validator = RecipeValidator()
        self.recipes = RecipeManager(store, self.validator)
        self.tracker = ExecutionTracker(store)
        self.inputs = InputResolver()
        self.adaptors = adaptor_resolver or AdaptorResolver(store, registry or create_default_registry())
        self.prompts = PromptResolver(store)
        self.dispatcher = dispatcher or ActionDispatcher(transforms)
        self.events = events or EventBus()
        self.default_timeout_ms = default_timeout_ms
        self.max_concurrent_per_provider = max_concurrent_per_provider
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_recipe(
        self,
        recipe_id: str,
        external_input: dict[str, Any] | None = None,
        project_id: str | None = None,
        triggered_by: str = "system",
    ) -> Execution:
        """Validate, run to completion, and return the final Execution.

        Raises NotFoundError or ValidationError before any Execution is created.
        """
        recipe, order, execution = self._prepare(recipe_id, external_input, project_id, triggered_by)
        return await self._run(recipe, order, execution)

    async def start_execution(
        self,
        recipe_id: str,
        external_input: dict[str, Any] | None = None,
        project_id: str | None = None,
        triggered_by: str = "system",
    ) -> str:
        """Validate synchronously, then run in a background task. Returns the execution id."""
        recipe, order, execution = self._prepare(recipe_id, external_input, project_id, triggered_by)
        task = asyncio.create_task(self._run(recipe, order, execution))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution.id, None))
        return execution.id

    async def wait(self, execution_id: str) -> Execution:
        """Wait for a background execution started by this orchestrator to finish."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.tracker.get_execution(execution_id)

    def cancel(self, execution_id: str) -> bool:
        """Flag the execution for cancellation. In-flight provider calls are not interrupted."""
        flagged = self.tracker.request_cancel(execution_id)
        if flagged:
            self.events.emit_simple("execution.cancel_requested", execution_id)
        return flagged

    async def retry_execution(self, execution_id: str, triggered_by: str | None = None) -> str:
        """Start a new execution with the same recipe, input and project as an earlier one."""
        previous = self.tracker.get_execution(execution_id)
        new_id = await self.start_execution(
            previous.recipe_id,
            previous.input,
            previous.project_id,
            triggered_by or previous.triggered_by,
        )
        logger.info(f"Retrying execution {execution_id} as {new_id}")
        return new_id

    async def test_node(
        self,
        recipe_id: str,
        node_id: str,
        external_input: dict[str, Any] | None = None,
        project_id: str | None = None,
        mock_outputs: dict[str, Any] | None = None,
        execute_dependencies: bool = True,
    ) -> ActionResult:
        """Run a single node outside any persisted execution.

        Upstream outputs come from ``mock_outputs`` (keyed by outputKey). With
        ``execute_dependencies`` any ancestor without a mock is run first.
        """
        recipe = self.recipes.get(recipe_id)
        order = self.validator.validate(recipe)
        node = recipe.node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found in recipe {recipe_id}")

        state = _RunState(
            recipe=recipe,
            order=order,
            execution_id=None,
            project_id=project_id,
            external_input=dict(external_input or {}),
        )
        producers = {n.output_key: n.id for n in recipe.nodes}
        for key, output in (mock_outputs or {}).items():
            state.node_results[key] = ActionResult(
                node_id=producers.get(key, f"mock:{key}"), output_key=key, status=NodeStatus.COMPLETED, output=output
            )

        if execute_dependencies:
            ancestors = self.validator.ancestors(recipe, node_id)
            for nid in order:
                upstream = recipe.node(nid)
                if nid in ancestors and upstream.output_key not in state.node_results:
                    state.node_results[upstream.output_key] = await self._run_node(state, upstream)

        return await self._run_node(state, node)

    # ------------------------------------------------------------------
    # Execution loop
    # ------------------------------------------------------------------

    def _prepare(self, recipe_id, external_input, project_id, triggered_by) -> tuple[Recipe, list[str], Execution]:
        recipe = self.recipes.get(recipe_id)
        order = self.validator.validate(recipe)
        execution = self.tracker.create(recipe, project_id, external_input, triggered_by)
        self.events.emit_simple(
            "execution.created", execution.id, recipe_id=recipe.id, recipe_version=recipe.version, project_id=project_id
        )
        return recipe, order, execution

    async def _run(self, recipe: Recipe, order: list[str], execution: Execution) -> Execution:
        exec_cfg = recipe.execution_config
        timeout_ms = exec_cfg.timeout_ms or self.default_timeout_ms
        state = _RunState(
            recipe=recipe,
            order=order,
            execution_id=execution.id,
            project_id=execution.project_id,
            external_input=execution.input,
            deadline=time.monotonic() + timeout_ms / 1000 if timeout_ms else None,
            max_per_provider=exec_cfg.max_concurrent_per_provider or self.max_concurrent_per_provider,
        )

        if self.tracker.is_cancel_requested(execution.id):
            final = self.tracker.finish(
                execution.id,
                ExecutionStatus.CANCELLED,
                ExecutionError("Execution cancelled before it started", code="CANCELLED").to_dict(),
            )
            self.events.emit_simple("execution.cancelled", execution.id)
            return final

        self.tracker.mark_running(execution.id)
        self.events.emit_simple("execution.started", execution.id, nodes=len(order), parallel=exec_cfg.parallel_execution)
        logger.info(f"Execution {execution.id} started: recipe {recipe.id} ({len(order)} nodes)")

        try:
            if exec_cfg.parallel_execution:
                await self._run_ranks(state)
            else:
                await self._run_sequential(state)
        except Exception as e:
            logger.error(f"Execution {execution.id} aborted: {e}", exc_info=True)
            state.stop_reason = STOP_ABORTED
            state.internal_error = str(e)

        if state.stop_reason is None and self.tracker.is_cancel_requested(execution.id):
            # A cancel accepted while the last node was in flight still ends the execution cancelled.
            logger.info(f"Execution {execution.id} cancelled after its last dispatch")
            state.stop_reason = STOP_CANCELLED

        return self._finalize(state)

    async def _run_sequential(self, state: _RunState):
        nodes = state.recipe.node_map()
        for node_id in state.order:
            if self._should_stop(state):
                return
            result = await self._run_node(state, nodes[node_id])
            self._record(state, result)

    async def _run_ranks(self, state: _RunState):
        nodes = state.recipe.node_map()
        for rank in self.validator.execution_ranks(state.recipe, state.order):
            if self._should_stop(state):
                return
            results = await asyncio.gather(*(self._run_node(state, nodes[nid]) for nid in rank))
            for result in results:
                self._record(state, result)

    def _should_stop(self, state: _RunState) -> bool:
        if state.stop_reason:
            return True
        if self.tracker.is_cancel_requested(state.execution_id):
            logger.info(f"Execution {state.execution_id} cancelled, skipping remaining nodes")
            state.stop_reason = STOP_CANCELLED
            return True
        remaining = state.remaining_ms()
        if remaining is not None and remaining <= 0:
            logger.warning(f"Execution {state.execution_id} exceeded its timeout, skipping remaining nodes")
            state.stop_reason = STOP_TIMEOUT
            return True
        return False

    def _record(self, state: _RunState, result: ActionResult):
        state.node_results[result.output_key] = result
        self.tracker.append_node_result(state.execution_id, result)
        self.events.emit_simple(
            f"node.{result.status.value}",
            state.execution_id,
            node_id=result.node_id,
            output_key=result.output_key,
            attempts=result.attempts,
            duration_ms=result.duration_ms,
            error=result.error,
        )
        if result.status == NodeStatus.FAILED:
            if state.first_failure is None:
                state.first_failure = result
            if not state.continue_on_error:
                remaining = state.remaining_ms()
                # A node cut short by the execution budget fails the execution as a timeout.
                timed_out = (result.error or {}).get("code") == "EXECUTION_TIMEOUT" or (
                    remaining is not None and remaining <= 0
                )
                state.stop_reason = STOP_TIMEOUT if timed_out else STOP_PREEMPTED

    def _finalize(self, state: _RunState) -> Execution:
        nodes = state.recipe.node_map()
        reason = state.stop_reason or STOP_ABORTED
        code, message = _SKIP_CODES[reason]
        for node_id in state.order:
            node = nodes[node_id]
            if node.output_key in state.node_results:
                continue
            skipped = ActionResult(node_id=node.id, output_key=node.output_key)
            skipped.error = {"kind": "skipped", "message": message, "code": code}
            skipped.finish(NodeStatus.SKIPPED)
            self._record(state, skipped)

        status, error = self._final_status(state)
        final = self.tracker.finish(state.execution_id, status, error)
        self.events.emit_simple(f"execution.{status.value}", state.execution_id, summary=final.summary(), error=error)
        logger.info(f"Execution {state.execution_id} -> {status.value} {final.summary()['nodeCounts']}")
        return final

    @staticmethod
    def _final_status(state: _RunState) -> tuple[ExecutionStatus, dict | None]:
        if state.stop_reason == STOP_CANCELLED:
            return ExecutionStatus.CANCELLED, ExecutionError("Execution cancelled", code="CANCELLED").to_dict()
        if state.stop_reason == STOP_TIMEOUT:
            return ExecutionStatus.FAILED, ExecutionError(
                "Execution timeout exceeded", code="EXECUTION_TIMEOUT"
            ).to_dict()
        if state.stop_reason == STOP_ABORTED:
            return ExecutionStatus.FAILED, ExecutionError(
                f"Execution aborted: {state.internal_error}", code="INTERNAL"
            ).to_dict()
        if state.first_failure is not None and not state.continue_on_error:
            failed = state.first_failure
            message = (failed.error or {}).get("message", "")
            return ExecutionStatus.FAILED, ExecutionError(
                f"Node {failed.node_id} failed: {message}", code="NODE_FAILED"
            ).to_dict()
        if state.unresolved_consumers:
            return ExecutionStatus.FAILED, ExecutionError(
                f"Required inputs could not be resolved for: {', '.join(state.unresolved_consumers)}",
                code="UNRESOLVED_CONSUMER",
            ).to_dict()
        return ExecutionStatus.COMPLETED, None

    # ------------------------------------------------------------------
    # One node
    # ------------------------------------------------------------------

    async def _run_node(self, state: _RunState, node: Node) -> ActionResult:
        """Resolve and dispatch one node. Always returns a terminal ActionResult."""
        result = ActionResult(node_id=node.id, output_key=node.output_key)
        deps = self.validator.dependencies_of(state.recipe)[node.id]
        by_id = {r.node_id: r for r in state.node_results.values()}
        blocked = [d for d in deps if not is_published(by_id.get(d))]

        # Single-node tests gate on inputs alone; missing ones fail the node below.
        if blocked and state.execution_id is not None:
            try:
                inputs = self.inputs.resolve(node, state.external_input, state.node_results)
            except ResolutionError as e:
                state.unresolved_consumers.append(node.id)
                return self._skip(result, f"Dependencies not satisfied ({', '.join(blocked)}): {e.message}")
            if not state.continue_on_error:
                return self._skip(result, f"Dependencies not satisfied: {', '.join(blocked)}")
            logger.info(f"Node {node.id} runs despite unsatisfied {blocked}: its inputs do not need them")
        else:
            inputs = None

        if state.execution_id is not None:
            self.tracker.mark_node_active(state.execution_id, node.id)
            self.events.emit_simple("node.running", state.execution_id, node_id=node.id)
        result.started_at = time.time()

        try:
            if inputs is None:
                inputs = self.inputs.resolve(node, state.external_input, state.node_results)
            result.input = inputs
            invocation = await self._build_invocation(state, node, inputs, result)
            outcome = await self._dispatch(state, node, invocation)
        except GenflowError as e:
            return self._fail(node, result, e, attempts=getattr(e, "attempts", 0))
        except Exception as e:
            logger.error(f"Node {node.id} raised unexpectedly: {e}", exc_info=True)
            return self._fail(node, result, AdaptorError(f"Unexpected error: {e}", code="UNEXPECTED"), attempts=1)
        finally:
            # Rank siblings may still be in flight; only this node's call is over.
            if state.execution_id is not None:
                self.tracker.mark_node_inactive(state.execution_id, node.id)

        result.output = outcome.output
        result.usage = outcome.usage
        result.attempts = outcome.attempts
        result.finish(NodeStatus.COMPLETED)
        return result

    async def _build_invocation(self, state: _RunState, node: Node, inputs: dict, result: ActionResult) -> Invocation:
        if node.kind == NodeKind.DATA_TRANSFORM:
            return Invocation(inputs=inputs)

        capability = node.capability()
        self._check_budget(state, node)
        remaining = state.remaining_ms()
        resolving = self.adaptors.resolve(
            state.project_id,
            node.provider_selector.stage_type or state.recipe.stage_type,
            capability,
            node.provider_selector,
            state.cache,
        )
        try:
            # Health checks count against the execution budget.
            adaptor = await asyncio.wait_for(resolving, None if remaining is None else remaining / 1000)
        except asyncio.TimeoutError as e:
            raise ExecutionError(
                f"Execution timeout reached while resolving an adaptor for node {node.id}", code="EXECUTION_TIMEOUT"
            ) from e
        result.adaptor_id = adaptor.adaptor_id
        result.model_id = adaptor.model_id

        prompt = self.prompts.resolve(
            node.prompt_selector.stage_type or state.recipe.stage_type,
            node.prompt_selector.capability or capability,
            inputs,
            state.project_id,
        )
        result.diagnostics = [d.to_dict() for d in prompt.diagnostics]
        prompt.raise_for_errors()
        return Invocation(inputs=inputs, prompt=prompt, adaptor=adaptor)

    async def _dispatch(self, state: _RunState, node: Node, invocation: Invocation):
        self._check_budget(state, node)
        retry_policy = state.recipe.execution_config.retry_policy

        if invocation.adaptor is None:
            return await self.dispatcher.dispatch(node, invocation, retry_policy=retry_policy, deadline=state.deadline)
        async with state.semaphore(invocation.adaptor.adaptor_id):
            return await self.dispatcher.dispatch(node, invocation, retry_policy=retry_policy, deadline=state.deadline)

    @staticmethod
    def _check_budget(state: _RunState, node: Node):
        remaining = state.remaining_ms()
        if remaining is not None and remaining <= 0:
            raise ExecutionError(f"No time left in the execution budget for node {node.id}", code="EXECUTION_TIMEOUT")

    @staticmethod
    def _skip(result: ActionResult, reason: str) -> ActionResult:
        logger.info(f"Skipping node {result.node_id}: {reason}")
        result.error = {"kind": "skipped", "message": reason, "code": "DEPENDENCY_NOT_SATISFIED"}
        result.finish(NodeStatus.SKIPPED)
        return result

    @staticmethod
    def _fail(node: Node, result: ActionResult, error: GenflowError, attempts: int) -> ActionResult:
        result.error = error.to_dict()
        result.attempts = attempts
        if node.error_policy.on_error == "skip":
            logger.warning(f"Node {node.id} failed ({error.kind}), skipping per error policy: {error.message}")
            result.output = node.error_policy.default_output
            result.finish(NodeStatus.SKIPPED)
        else:
            logger.warning(f"Node {node.id} failed ({error.kind}): {error.message}")
            result.finish(NodeStatus.FAILED)
        return result
