"""Test ActionDispatcher: kind routing, JSON output, retries, timeouts, cost."""

import asyncio
import time

import pytest

from fakes import FAKE_DEFAULTS, FakeBackend, fake_registry
from genflow.adaptor_resolver import AdaptorResolver
from genflow.dispatcher import ActionDispatcher, Invocation, parse_json_output
from genflow.errors import AdaptorError, DispatchTimeout, ExecutionError, TransientProviderError
from genflow.models import ErrorPolicy, Node, NodeKind, RetryPolicy
from genflow.prompts import ResolvedPrompt
from genflow.store import MemoryDocumentStore


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_node(kind=NodeKind.TEXT_GENERATION, on_error="fail", retry_count=0, timeout_ms=None, config=None):
    return Node(
        id="n1",
        kind=kind,
        output_key="out",
        error_policy=ErrorPolicy(on_error=on_error, retry_count=retry_count, timeout_ms=timeout_ms),
        config=config or {},
    )


def invocation(backend, prompt="hello", capability="textGeneration", output_format="text", system=""):
    resolver = AdaptorResolver(
        MemoryDocumentStore(), fake_registry(backend), default_adaptors=dict(FAKE_DEFAULTS), global_credentials={}
    )
    adaptor = asyncio.run(resolver.resolve(None, "stage", capability))
    return Invocation(
        inputs={"prompt": prompt},
        prompt=ResolvedPrompt(system_prompt=system, user_prompt=prompt, output_format=output_format),
        adaptor=adaptor,
    )


def dispatch(dispatcher, node, inv, **kwargs):
    return asyncio.run(dispatcher.dispatch(node, inv, **kwargs))


def test_text_generation():
    backend = FakeBackend()
    outcome = dispatch(ActionDispatcher(), make_node(), invocation(backend))
    assert outcome.output == "echo: hello"
    assert outcome.attempts == 1
    assert backend.calls[0]["capability"] == "textGeneration"


def test_image_and_video_route_to_their_methods():
    backend = FakeBackend()
    dispatcher = ActionDispatcher()
    dispatch(dispatcher, make_node(NodeKind.IMAGE_GENERATION), invocation(backend, capability="imageGeneration"))
    dispatch(dispatcher, make_node(NodeKind.VIDEO_GENERATION), invocation(backend, capability="videoGeneration"))
    assert [c["capability"] for c in backend.calls] == ["imageGeneration", "videoGeneration"]
    assert [c["model"] for c in backend.calls] == ["fake-image", "fake-video"]


def test_data_transform_needs_no_adaptor():
    node = make_node(NodeKind.DATA_TRANSFORM, config={"transform": "merge"})
    outcome = dispatch(ActionDispatcher(), node, Invocation(inputs={"a": {"x": 1}, "b": {"y": 2}}))
    assert outcome.output == {"x": 1, "y": 2}
    assert outcome.usage.estimated_cost == 0


def test_generation_without_adaptor_fails():
    with pytest.raises(AdaptorError) as exc:
        dispatch(ActionDispatcher(), make_node(), Invocation(inputs={}))
    assert exc.value.code == "NO_ADAPTOR"


def test_params_merge_adaptor_node_and_system_prompt():
    backend = FakeBackend()
    inv = invocation(backend, system="Be brief.")
    inv.adaptor.parameters = {"temperature": 0.1, "max_tokens": 10}
    dispatch(ActionDispatcher(), make_node(config={"temperature": 0.9}), inv)
    params = backend.calls[0]["params"]
    assert params == {"temperature": 0.9, "max_tokens": 10, "system_prompt": "Be brief."}


def test_cost_from_pricing():
    backend = FakeBackend()
    outcome = dispatch(ActionDispatcher(), make_node(), invocation(backend))
    # 10 input at $1/M + 20 output at $2/M
    assert outcome.usage.input_units == 10
    assert outcome.usage.output_units == 20
    assert outcome.usage.estimated_cost == pytest.approx(50 / 1_000_000)


def test_json_output_parsed():
    backend = FakeBackend()
    backend.script("hello", '```json\n{"title": "T", "tags": ["a"]}\n```')
    outcome = dispatch(ActionDispatcher(), make_node(), invocation(backend, output_format="json"))
    assert outcome.output == {"title": "T", "tags": ["a"]}


def test_invalid_json_output_is_permanent():
    backend = FakeBackend()
    backend.script("hello", "not json at all")
    with pytest.raises(AdaptorError) as exc:
        dispatch(ActionDispatcher(), make_node(on_error="retry", retry_count=3), invocation(backend, output_format="json"))
    assert exc.value.code == "INVALID_JSON"
    assert len(backend.calls) == 1


def test_parse_json_output_plain():
    assert parse_json_output(' [1, 2] ') == [1, 2]


def test_transient_failure_retried_then_succeeds():
    backend = FakeBackend()
    backend.script("hello", TransientProviderError("rate limited"), TransientProviderError("again"), "ok")
    sleeper = SleepRecorder()
    dispatcher = ActionDispatcher(sleep=sleeper)
    policy = RetryPolicy(backoff_ms=100, backoff_multiplier=2.0, max_backoff_ms=1000)
    outcome = dispatch(dispatcher, make_node(on_error="retry", retry_count=3), invocation(backend), retry_policy=policy)
    assert outcome.output == "ok"
    assert outcome.attempts == 3
    assert sleeper.delays == [0.1, 0.2]


def test_retries_exhausted_carries_attempts():
    backend = FakeBackend()
    backend.script("hello", TransientProviderError("down"))
    with pytest.raises(TransientProviderError) as exc:
        dispatch(ActionDispatcher(sleep=SleepRecorder()), make_node(on_error="retry", retry_count=2), invocation(backend))
    assert exc.value.attempts == 3
    assert len(backend.calls) == 3


def test_retry_count_zero_uses_recipe_max_retries():
    backend = FakeBackend()
    backend.script("hello", TransientProviderError("down"))
    with pytest.raises(TransientProviderError) as exc:
        dispatch(
            ActionDispatcher(sleep=SleepRecorder()),
            make_node(on_error="retry"),
            invocation(backend),
            retry_policy=RetryPolicy(max_retries=4),
        )
    assert exc.value.attempts == 5


def test_permanent_error_never_retried():
    backend = FakeBackend()
    backend.script("hello", AdaptorError("bad request"))
    with pytest.raises(AdaptorError) as exc:
        dispatch(ActionDispatcher(sleep=SleepRecorder()), make_node(on_error="retry", retry_count=5), invocation(backend))
    assert exc.value.attempts == 1
    assert len(backend.calls) == 1


def test_transient_not_retried_when_policy_is_fail():
    backend = FakeBackend()
    backend.script("hello", TransientProviderError("down"))
    with pytest.raises(TransientProviderError):
        dispatch(ActionDispatcher(), make_node(on_error="fail", retry_count=5), invocation(backend))
    assert len(backend.calls) == 1


def test_timeout_abandons_call():
    backend = FakeBackend()
    backend.delay = 5.0
    with pytest.raises(DispatchTimeout) as exc:
        dispatch(ActionDispatcher(), make_node(timeout_ms=50), invocation(backend))
    assert exc.value.kind == "timeout"
    assert exc.value.attempts == 1


def test_timeout_is_retryable():
    backend = FakeBackend()
    backend.delay = 5.0
    with pytest.raises(DispatchTimeout) as exc:
        dispatch(ActionDispatcher(sleep=SleepRecorder()), make_node(on_error="retry", retry_count=1, timeout_ms=20), invocation(backend))
    assert exc.value.attempts == 2


def test_caller_cap_shortens_node_timeout():
    backend = FakeBackend()
    backend.delay = 5.0
    with pytest.raises(DispatchTimeout):
        dispatch(ActionDispatcher(), make_node(timeout_ms=60_000), invocation(backend), timeout_ms=30)


def test_retry_that_cannot_fit_before_deadline_stops():
    backend = FakeBackend()
    backend.script("hello", TransientProviderError("rate limited"), "ok")
    sleeper = SleepRecorder()
    policy = RetryPolicy(backoff_ms=10_000)
    with pytest.raises(ExecutionError) as exc:
        dispatch(
            ActionDispatcher(sleep=sleeper),
            make_node(on_error="retry", retry_count=3),
            invocation(backend),
            retry_policy=policy,
            deadline=time.monotonic() + 1.0,
        )
    assert exc.value.code == "EXECUTION_TIMEOUT"
    assert exc.value.attempts == 1
    assert sleeper.delays == []
    assert len(backend.calls) == 1


def test_each_attempt_is_capped_by_the_deadline():
    backend = FakeBackend()
    backend.delay = 1.0
    started = time.monotonic()
    with pytest.raises(ExecutionError) as exc:
        dispatch(
            ActionDispatcher(sleep=SleepRecorder()),
            make_node(on_error="retry", retry_count=4),
            invocation(backend),
            retry_policy=RetryPolicy(backoff_ms=1),
            deadline=started + 0.1,
        )
    assert time.monotonic() - started < 0.4
    assert exc.value.code == "EXECUTION_TIMEOUT"
    assert len(backend.calls) <= 2


def test_past_deadline_makes_no_call():
    backend = FakeBackend()
    with pytest.raises(ExecutionError) as exc:
        dispatch(ActionDispatcher(), make_node(), invocation(backend), deadline=time.monotonic() - 1)
    assert exc.value.attempts == 0
    assert backend.calls == []
