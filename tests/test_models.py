"""Test core data structures."""

import pytest

from fakes import linear_abc
from genflow.models import (
    ActionResult,
    AdaptorConfig,
    Event,
    Execution,
    ExecutionStatus,
    NodeKind,
    NodeStatus,
    PromptTemplate,
    RetryPolicy,
    Usage,
    generate_id,
)
from genflow.validator import parse_recipe


def test_generate_id():
    id1 = generate_id("exec_")
    id2 = generate_id("exec_")
    assert id1.startswith("exec_")
    assert len(id1) == len("exec_") + 12
    assert id1 != id2


def test_node_kind_parse():
    assert NodeKind.parse("text-generation") is NodeKind.TEXT_GENERATION
    assert NodeKind.parse("IMAGE_GENERATION") is NodeKind.IMAGE_GENERATION
    assert NodeKind.parse("data_processing") is NodeKind.DATA_TRANSFORM
    with pytest.raises(ValueError):
        NodeKind.parse("audio-generation")


def test_node_kind_capability():
    assert NodeKind.VIDEO_GENERATION.capability == "videoGeneration"
    assert NodeKind.DATA_TRANSFORM.capability is None


def test_terminal_statuses():
    assert ExecutionStatus.CANCELLED.is_terminal
    assert not ExecutionStatus.RUNNING.is_terminal
    assert NodeStatus.SKIPPED.is_terminal
    assert not NodeStatus.PENDING.is_terminal


def test_legacy_node_fields():
    r = parse_recipe({
        "id": "r",
        "name": "legacy",
        "nodes": [{
            "id": "a",
            "type": "text_generation",
            "outputKey": "a",
            "errorHandling": {"onError": "retry", "retryCount": 2},
            "parameters": {"temperature": 0.3},
        }],
    })
    a = r.nodes[0]
    assert a.kind is NodeKind.TEXT_GENERATION
    assert a.error_policy.retry_count == 2
    assert a.config == {"temperature": 0.3}


def test_recipe_round_trip():
    r = parse_recipe(linear_abc(continueOnError=True, timeoutMs=5000))
    d = r.to_dict()
    assert d["executionConfig"]["continueOnError"] is True
    assert d["executionConfig"]["timeoutMs"] == 5000
    assert d["edges"][0] == {"from": "a", "to": "b"}
    assert parse_recipe(d).to_dict() == d


def test_retry_policy_backoff():
    policy = RetryPolicy(backoff_ms=500, backoff_multiplier=3.0, max_backoff_ms=10_000)
    assert [policy.delay_ms(n) for n in (1, 2, 3, 4)] == [500, 1500, 4500, 10_000]


def test_usage_addition():
    total = Usage(1, 2, 0.5) + Usage(3, 4, 0.25)
    assert (total.input_units, total.output_units, total.estimated_cost) == (4, 6, 0.75)


def test_action_result_finish_sets_duration():
    result = ActionResult(node_id="a", output_key="a", started_at=100.0)
    result.finish(NodeStatus.COMPLETED, completed_at=101.5)
    assert result.duration_ms == 1500
    assert result.status == NodeStatus.COMPLETED


def test_execution_round_trip_and_summary():
    execution = Execution(recipe_id="r1", project_id="p1", input={"topic": "x"})
    execution.node_results["a"] = ActionResult(
        node_id="a", output_key="a", status=NodeStatus.COMPLETED, output={"k": [1]}, usage=Usage(10, 20, 0.01)
    )
    execution.node_results["b"] = ActionResult(
        node_id="b", output_key="b", status=NodeStatus.FAILED, error={"kind": "adaptor", "message": "no", "code": "X"}
    )
    reloaded = Execution.from_dict(execution.to_dict())
    assert reloaded.to_dict() == execution.to_dict()
    assert reloaded.result_for_node("b").error["code"] == "X"

    summary = reloaded.summary()
    assert summary["nodeCounts"]["completed"] == 1
    assert summary["nodeCounts"]["failed"] == 1
    assert summary["hasErrors"] is True
    assert summary["usage"]["inputUnits"] == 10


def test_prompt_template_accepts_legacy_user_prompt_key():
    template = PromptTemplate.from_dict({
        "stageType": "stage_1",
        "prompts": {"textGeneration": {"userPromptTemplate": "Hi {name}"}},
    })
    assert template.prompts["textGeneration"].user_template == "Hi {name}"
    assert template.scope == "global-default"
    assert template.is_active


def test_adaptor_config_round_trip():
    cfg = AdaptorConfig(capability="textGeneration", provider_id="anthropic", model_id="claude-sonnet-4-5",
                        project_id="p1", parameters={"temperature": 0.2})
    assert AdaptorConfig.from_dict(cfg.to_dict()) == cfg


def test_event():
    event = Event(type="node.completed", execution_id="e1", data={"node_id": "n1"})
    d = event.to_dict()
    assert d["type"] == "node.completed"
    assert d["execution_id"] == "e1"
    assert d["data"]["node_id"] == "n1"
