"""ExecutionTracker: the single writer of execution documents.

Lifecycle::

    execution: pending -> running -> completed | failed | cancelled
               pending -> cancelled
    node:      pending -> running -> completed | failed | skipped

A node's running phase is recorded in ``activeNodeIds``; its ActionResult is
appended once, already terminal, and never replaced.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from genflow.errors import NotFoundError, StateTransitionError
from genflow.models import ActionResult, Execution, ExecutionStatus, Recipe
from genflow.store import EXECUTIONS, DocumentStore

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
}


class ExecutionTracker:
    def __init__(self, store: DocumentStore):
        self.store = store
        self._lock = threading.Lock()

    def create(
        self,
        recipe: Recipe,
        project_id: str | None,
        external_input: dict[str, Any] | None,
        triggered_by: str = "system",
    ) -> Execution:
        execution = Execution(
            recipe_id=recipe.id,
            recipe_version=recipe.version,
            project_id=project_id,
            input=dict(external_input or {}),
            triggered_by=triggered_by,
        )
        with self._lock:
            self._save(execution)
        logger.info(f"Created execution {execution.id} for recipe {recipe.id} v{recipe.version}")
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        doc = self.store.get(EXECUTIONS, execution_id)
        if doc is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return Execution.from_dict(doc)

    def list_executions(self, recipe_id: str | None = None, project_id: str | None = None) -> list[Execution]:
        filters = {}
        if recipe_id is not None:
            filters["recipeId"] = recipe_id
        if project_id is not None:
            filters["projectId"] = project_id
        executions = [Execution.from_dict(d) for d in self.store.list(EXECUTIONS, **filters)]
        return sorted(executions, key=lambda e: e.created_at, reverse=True)

    def mark_running(self, execution_id: str) -> Execution:
        with self._lock:
            execution = self.get_execution(execution_id)
            self._transition(execution, ExecutionStatus.RUNNING)
            execution.started_at = time.time()
            self._save(execution)
        return execution

    def mark_node_active(self, execution_id: str, node_id: str):
        with self._lock:
            execution = self.get_execution(execution_id)
            self._require_running(execution, f"start node {node_id}")
            if execution.result_for_node(node_id) is not None:
                raise StateTransitionError(f"Node {node_id} already has a result in {execution_id}")
            if node_id not in execution.active_node_ids:
                execution.active_node_ids.append(node_id)
                self._save(execution)

    def mark_node_inactive(self, execution_id: str, node_id: str):
        with self._lock:
            execution = self.get_execution(execution_id)
            if node_id in execution.active_node_ids:
                execution.active_node_ids.remove(node_id)
                self._save(execution)

    def append_node_result(self, execution_id: str, result: ActionResult) -> Execution:
        """Record a node's terminal result. Each node and output key is written at most once."""
        if not result.status.is_terminal:
            raise StateTransitionError(
                f"Node {result.node_id} result must be terminal, got {result.status.value}"
            )
        with self._lock:
            execution = self.get_execution(execution_id)
            self._require_running(execution, f"record node {result.node_id}")
            if result.output_key in execution.node_results or execution.result_for_node(result.node_id):
                raise StateTransitionError(
                    f"Node {result.node_id} ({result.output_key}) already recorded in {execution_id}"
                )
            execution.node_results[result.output_key] = result
            if result.node_id in execution.active_node_ids:
                execution.active_node_ids.remove(result.node_id)
            self._save(execution)
        logger.info(f"[{execution_id}] node {result.node_id} -> {result.status.value} ({result.duration_ms}ms)")
        return execution

    def finish(self, execution_id: str, status: ExecutionStatus, error: dict | None = None) -> Execution:
        if not status.is_terminal:
            raise StateTransitionError(f"finish() needs a terminal status, got {status.value}")
        with self._lock:
            execution = self.get_execution(execution_id)
            self._transition(execution, status)
            execution.error = error
            execution.completed_at = time.time()
            execution.active_node_ids = []
            self._save(execution)
        logger.info(f"Execution {execution_id} finished: {status.value}")
        return execution

    def request_cancel(self, execution_id: str) -> bool:
        """Set the cancel flag. Returns False if the execution already finished."""
        with self._lock:
            execution = self.get_execution(execution_id)
            if execution.status.is_terminal:
                return False
            execution.cancel_requested = True
            self._save(execution)
        logger.info(f"Cancellation requested for {execution_id}")
        return True

    def is_cancel_requested(self, execution_id: str) -> bool:
        return self.get_execution(execution_id).cancel_requested

    # -- internals --

    def _save(self, execution: Execution):
        self.store.put(EXECUTIONS, execution.id, execution.to_dict())

    @staticmethod
    def _transition(execution: Execution, target: ExecutionStatus):
        allowed = _TRANSITIONS.get(execution.status, set())
        if target not in allowed:
            raise StateTransitionError(
                f"Execution {execution.id} cannot go from {execution.status.value} to {target.value}"
            )
        execution.status = target

    @staticmethod
    def _require_running(execution: Execution, action: str):
        if execution.status != ExecutionStatus.RUNNING:
            raise StateTransitionError(
                f"Cannot {action}: execution {execution.id} is {execution.status.value}"
            )
