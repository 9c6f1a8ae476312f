"""Test Orchestrator end to end against the fake adaptors."""

import asyncio
import time

import pytest

from fakes import FakeBackend, linear_abc, make_orchestrator, node, recipe
from genflow.errors import AdaptorError, NotFoundError, TransientProviderError, ValidationError
from genflow.models import ExecutionStatus, NodeStatus, PromptSet, PromptTemplate
from genflow.store import PROMPT_TEMPLATES, RECIPES, JsonFileDocumentStore
from genflow.tracker import ExecutionTracker

INPUT = {"topic": "cats", "detail": "whiskers"}


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def orch(backend):
    return make_orchestrator(backend=backend)


def run(orch, doc, payload=INPUT, project_id="p1"):
    orch.recipes.create(doc)
    return asyncio.run(orch.execute_recipe(doc["id"], payload, project_id))


def statuses(execution):
    return {r.node_id: r.status for r in execution.node_results.values()}


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_linear_recipe_completes(orch, backend):
    execution = run(orch, linear_abc())
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.error is None
    assert statuses(execution) == {"a": NodeStatus.COMPLETED, "b": NodeStatus.COMPLETED, "c": NodeStatus.COMPLETED}
    assert backend.prompts() == ["cats", "whiskers", "echo: cats"]
    assert execution.node_results["step_c"].output == "echo: echo: cats"
    assert execution.active_node_ids == []


def test_result_records_adaptor_usage_and_attempts(orch):
    execution = run(orch, linear_abc())
    result = execution.node_results["step_a"]
    assert (result.adaptor_id, result.model_id) == ("fake", "fake-text")
    assert result.attempts == 1
    assert result.input == {"prompt": "cats"}
    assert execution.summary()["usage"]["inputUnits"] == 30


def test_execution_is_persisted(orch):
    execution = run(orch, linear_abc())
    reloaded = orch.tracker.get_execution(execution.id)
    assert reloaded.to_dict() == execution.to_dict()
    assert reloaded.recipe_version == 1


def test_runs_against_json_store(tmp_path, backend):
    store = JsonFileDocumentStore(tmp_path)
    execution = run(make_orchestrator(store=store, backend=backend), linear_abc())
    reloaded = ExecutionTracker(JsonFileDocumentStore(tmp_path)).get_execution(execution.id)
    assert reloaded.status == ExecutionStatus.COMPLETED
    assert reloaded.node_results["step_b"].output == "echo: whiskers"


def test_events_emitted(orch):
    execution = run(orch, linear_abc())
    types = [e.type for e in orch.events.recent(limit=100, execution_id=execution.id)]
    assert types[:2] == ["execution.created", "execution.started"]
    assert types[-1] == "execution.completed"
    assert types.count("node.running") == 3
    assert types.count("node.completed") == 3


def test_prompt_template_applied(orch, backend):
    template = PromptTemplate(
        id="t1",
        stage_type="stage_2",
        prompts={"textGeneration": PromptSet(system_prompt="Be brief.", user_template="Write about {prompt}")},
    )
    orch.store.put(PROMPT_TEMPLATES, template.id, template.to_dict())
    execution = run(orch, recipe([node("a")]))
    assert backend.prompts() == ["Write about cats"]
    assert backend.calls[0]["params"]["system_prompt"] == "Be brief."
    assert execution.node_results["a_out"].diagnostics == []


def test_required_prompt_variable_fails_before_dispatch(orch, backend):
    template = PromptTemplate(
        id="t1",
        stage_type="stage_2",
        prompts={"textGeneration": PromptSet(user_template="{prompt} for {audience}", variables=["audience"])},
    )
    orch.store.put(PROMPT_TEMPLATES, template.id, template.to_dict())
    execution = run(orch, recipe([node("a")]))
    result = execution.node_results["a_out"]
    assert result.status == NodeStatus.FAILED
    assert result.error["code"] == "UNRESOLVED_VARIABLE"
    assert result.diagnostics[0]["variable"] == "audience"
    assert backend.calls == []


def test_data_transform_node(orch, backend):
    doc = recipe(
        [
            node("a", "title"),
            node("b", "body", inputs={"prompt": "external.detail"}),
            node("join", "doc", kind="data-transform", inputs={"t": "title", "b": "body"},
                 config={"transform": "template", "template": "{t} / {b}"}),
        ],
        [("a", "join"), ("b", "join")],
    )
    execution = run(orch, doc)
    assert execution.node_results["doc"].output == "echo: cats / echo: whiskers"
    assert execution.node_results["doc"].adaptor_id is None
    assert len(backend.calls) == 2


def test_node_provider_pin(orch, backend):
    doc = recipe([node("a", providerSelector={"adaptorId": "textonly", "modelId": "small"})])
    execution = run(orch, doc)
    assert execution.node_results["a_out"].adaptor_id == "textonly"
    assert backend.calls[0]["model"] == "small"


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_failure_stops_execution_without_continue_on_error(orch, backend):
    backend.script("whiskers", AdaptorError("rejected"))
    execution = run(orch, linear_abc())
    assert statuses(execution) == {"a": NodeStatus.COMPLETED, "b": NodeStatus.FAILED, "c": NodeStatus.SKIPPED}
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error["code"] == "NODE_FAILED"
    assert execution.node_results["step_c"].error["code"] == "PREEMPTED"
    assert len(backend.calls) == 2


def test_continue_on_error_runs_independent_consumer(orch, backend):
    backend.script("whiskers", AdaptorError("rejected"))
    execution = run(orch, linear_abc(continueOnError=True))
    assert statuses(execution) == {"a": NodeStatus.COMPLETED, "b": NodeStatus.FAILED, "c": NodeStatus.COMPLETED}
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.summary()["hasErrors"] is True


def test_continue_on_error_with_unresolvable_consumer_fails(orch, backend):
    backend.script("whiskers", AdaptorError("rejected"))
    doc = linear_abc(continueOnError=True)
    doc["nodes"][2]["inputMapping"] = {"prompt": "step_b"}
    execution = run(orch, doc)
    c = execution.node_results["step_c"]
    assert c.status == NodeStatus.SKIPPED
    assert c.error["code"] == "DEPENDENCY_NOT_SATISFIED"
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error["code"] == "UNRESOLVED_CONSUMER"


def test_skip_policy_publishes_default_output(orch, backend):
    backend.script("whiskers", AdaptorError("rejected"))
    doc = linear_abc()
    doc["nodes"][1]["errorPolicy"] = {"onError": "skip", "defaultOutput": "fallback"}
    doc["nodes"][2]["inputMapping"] = {"prompt": "step_b"}
    execution = run(orch, doc)
    b = execution.node_results["step_b"]
    assert b.status == NodeStatus.SKIPPED
    assert b.output == "fallback"
    assert b.error["message"] == "rejected"
    assert execution.node_results["step_c"].output == "echo: fallback"
    assert execution.status == ExecutionStatus.COMPLETED


def test_retry_policy_recovers_transient_failure(orch, backend):
    backend.script("whiskers", TransientProviderError("429"), "recovered")
    doc = linear_abc()
    doc["nodes"][1]["errorPolicy"] = {"onError": "retry", "retryCount": 2}
    execution = run(orch, doc)
    b = execution.node_results["step_b"]
    assert b.status == NodeStatus.COMPLETED
    assert b.output == "recovered"
    assert b.attempts == 2


def test_unhealthy_adaptor_fails_node(orch, backend):
    backend.healthy = False
    execution = run(orch, recipe([node("a")]))
    assert execution.node_results["a_out"].error["code"] == "UNHEALTHY"
    assert execution.status == ExecutionStatus.FAILED
    assert backend.calls == []


def test_missing_recipe_creates_no_execution(orch):
    with pytest.raises(NotFoundError):
        asyncio.run(orch.execute_recipe("nope", {}))
    assert orch.tracker.list_executions() == []


def test_invalid_recipe_creates_no_execution(orch):
    doc = recipe([node("a"), node("b")], [("a", "b"), ("b", "a")])
    orch.store.put(RECIPES, doc["id"], doc)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(orch.execute_recipe(doc["id"], {}))
    assert exc.value.violation == "cycle"
    assert orch.tracker.list_executions() == []


# ---------------------------------------------------------------------------
# Timeouts, cancellation, parallelism
# ---------------------------------------------------------------------------


def test_overall_timeout(orch, backend):
    backend.delay = 0.5
    execution = run(orch, linear_abc(timeoutMs=50))
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error["code"] == "EXECUTION_TIMEOUT"
    assert execution.node_results["step_a"].error["kind"] == "timeout"
    assert execution.node_results["step_b"].error["code"] == "EXECUTION_TIMEOUT"
    assert execution.node_results["step_c"].status == NodeStatus.SKIPPED


def test_node_timeout(orch, backend):
    backend.delay = 0.5
    doc = recipe([node("a", errorPolicy={"timeoutMs": 20})])
    execution = run(orch, doc)
    result = execution.node_results["a_out"]
    assert result.status == NodeStatus.FAILED
    assert result.error["code"] == "NODE_TIMEOUT"
    assert execution.error["code"] == "NODE_FAILED"


def test_retries_stay_within_execution_budget(orch, backend):
    backend.delay = 1.0
    doc = recipe([node("a", errorPolicy={"onError": "retry", "retryCount": 4})], timeoutMs=100)
    started = time.monotonic()
    execution = run(orch, doc)
    assert time.monotonic() - started < 0.5
    result = execution.node_results["a_out"]
    assert result.status == NodeStatus.FAILED
    assert result.error["code"] == "EXECUTION_TIMEOUT"
    assert result.attempts == 1
    assert execution.error["code"] == "EXECUTION_TIMEOUT"
    assert len(backend.calls) == 1


def test_slow_health_check_counts_against_budget(orch, backend):
    backend.health_delay = 1.0
    started = time.monotonic()
    execution = run(orch, recipe([node("a")], timeoutMs=100))
    assert time.monotonic() - started < 0.5
    assert execution.node_results["a_out"].error["code"] == "EXECUTION_TIMEOUT"
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error["code"] == "EXECUTION_TIMEOUT"
    assert backend.calls == []


def test_cancel_mid_flight_skips_remaining(orch, backend):
    orch.recipes.create(linear_abc())
    backend.delay = 0.05

    async def scenario():
        execution_id = await orch.start_execution("r1", INPUT)
        await asyncio.sleep(0.01)
        assert orch.cancel(execution_id) is True
        return await orch.wait(execution_id)

    execution = asyncio.run(scenario())
    assert execution.status == ExecutionStatus.CANCELLED
    # The in-flight call is allowed to finish.
    assert execution.node_results["step_a"].status == NodeStatus.COMPLETED
    assert execution.node_results["step_b"].error["code"] == "CANCELLED"
    assert execution.node_results["step_c"].status == NodeStatus.SKIPPED
    assert len(backend.calls) == 1


def test_cancel_before_start(orch, backend):
    orch.recipes.create(linear_abc())

    async def scenario():
        execution_id = await orch.start_execution("r1", INPUT)
        orch.cancel(execution_id)
        return await orch.wait(execution_id)

    execution = asyncio.run(scenario())
    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.node_results == {}
    assert backend.calls == []


def test_cancel_after_finish_is_refused(orch):
    execution = run(orch, linear_abc())
    assert orch.cancel(execution.id) is False
    assert orch.tracker.get_execution(execution.id).status == ExecutionStatus.COMPLETED


def test_cancel_during_last_node_ends_cancelled(orch, backend):
    orch.recipes.create(recipe([node("a")]))
    backend.delay = 0.05

    async def scenario():
        execution_id = await orch.start_execution("r1", INPUT)
        await asyncio.sleep(0.01)
        assert orch.cancel(execution_id) is True
        return await orch.wait(execution_id)

    execution = asyncio.run(scenario())
    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.error["code"] == "CANCELLED"
    assert execution.node_results["a_out"].status == NodeStatus.COMPLETED


def fan_out(**execution_config):
    return recipe(
        [node("root"), node("x"), node("y"), node("z")],
        [("root", "x"), ("root", "y"), ("root", "z")],
        **execution_config,
    )


def test_sequential_by_default(orch, backend):
    backend.delay = 0.01
    run(orch, fan_out())
    assert backend.max_in_flight == 1


def test_parallel_ranks_bounded_per_provider(orch, backend):
    backend.delay = 0.02
    execution = run(orch, fan_out(parallelExecution=True, maxConcurrentPerProvider=2))
    assert execution.status == ExecutionStatus.COMPLETED
    assert backend.max_in_flight == 2
    assert len(backend.calls) == 4


def test_node_leaves_active_set_when_its_call_returns(orch, backend):
    backend.delay = 0.02
    seen = []
    mark_inactive = orch.tracker.mark_node_inactive

    def recording(execution_id, node_id):
        mark_inactive(execution_id, node_id)
        seen.append((node_id, orch.tracker.get_execution(execution_id).active_node_ids))

    orch.tracker.mark_node_inactive = recording
    execution = run(orch, fan_out(parallelExecution=True, maxConcurrentPerProvider=5))
    assert execution.status == ExecutionStatus.COMPLETED
    assert seen[0] == ("root", [])
    # The first of the rank to return still sees its two siblings in flight.
    first, active = seen[1]
    assert first in {"x", "y", "z"}
    assert sorted(active) == sorted({"x", "y", "z"} - {first})
    assert execution.active_node_ids == []


def test_parallel_ranks_run_together(orch, backend):
    backend.delay = 0.02
    run(orch, fan_out(parallelExecution=True, maxConcurrentPerProvider=5))
    assert backend.max_in_flight == 3


# ---------------------------------------------------------------------------
# Retry and single-node testing
# ---------------------------------------------------------------------------


def test_retry_execution_starts_fresh(orch, backend):
    backend.script("whiskers", AdaptorError("rejected"))
    failed = run(orch, linear_abc())
    assert failed.status == ExecutionStatus.FAILED
    backend.scripts.clear()

    async def scenario():
        new_id = await orch.retry_execution(failed.id, triggered_by="retry")
        return await orch.wait(new_id)

    retried = asyncio.run(scenario())
    assert retried.id != failed.id
    assert retried.status == ExecutionStatus.COMPLETED
    assert retried.input == failed.input
    assert retried.project_id == "p1"
    assert retried.triggered_by == "retry"
    assert orch.tracker.get_execution(failed.id).status == ExecutionStatus.FAILED


def test_node_with_mocked_upstream(orch, backend):
    orch.recipes.create(linear_abc())
    result = asyncio.run(
        orch.test_node("r1", "c", INPUT, mock_outputs={"step_a": "mocked"}, execute_dependencies=False)
    )
    assert result.status == NodeStatus.COMPLETED
    assert result.output == "echo: mocked"
    assert backend.prompts() == ["mocked"]
    assert orch.tracker.list_executions() == []


def test_node_runs_unmocked_ancestors(orch, backend):
    orch.recipes.create(linear_abc())
    result = asyncio.run(orch.test_node("r1", "c", INPUT))
    assert result.output == "echo: echo: cats"
    assert backend.prompts() == ["cats", "whiskers", "echo: cats"]


def test_node_without_upstream_fails_resolution(orch, backend):
    orch.recipes.create(linear_abc())
    result = asyncio.run(orch.test_node("r1", "c", INPUT, execute_dependencies=False))
    assert result.status == NodeStatus.FAILED
    assert result.error["code"] == "UNRESOLVED_INPUT"
    assert backend.calls == []


def test_node_unknown_id(orch):
    orch.recipes.create(linear_abc())
    with pytest.raises(NotFoundError):
        asyncio.run(orch.test_node("r1", "ghost", INPUT))
