"""Tests for typedflow.core.flow - defining, running and tracing flows."""

from __future__ import annotations

import json
import logging

import pytest
from opentelemetry.trace import StatusCode
from pydantic import BaseModel

from typedflow.core.errors import FlowNotFoundError, FlowValidationError, PermissionDeniedError
from typedflow.core.flow import (
    CallableFlow,
    Flow,
    define_flow,
    register_flow,
    register_streaming_flow,
    resolve_flow,
    run_flow,
    stream_flow,
)
from typedflow.core.registry import active_registry


async def double(x):
    return x * 2


def require_auth(auth, payload):
    if not auth:
        raise PermissionDeniedError()


class Greeting(BaseModel):
    name: str


# =============================================================================
# Tests: running
# =============================================================================


class TestRun:
    """Tests for running a flow directly."""

    @pytest.mark.anyio
    async def test_runs_body_with_parsed_input(self, registry):
        flow = define_flow("double", double, input_schema=int, output_schema=int, registry=registry)

        assert await flow(21) == 42

    @pytest.mark.anyio
    async def test_mapping_input_builds_model(self, registry):
        async def greet(greeting: Greeting) -> str:
            return f"Hello {greeting.name}"

        flow = define_flow("greet", greet, input_schema=Greeting, registry=registry)

        assert await flow({"name": "Ada"}) == "Hello Ada"

    @pytest.mark.anyio
    async def test_invalid_input_never_reaches_body(self, registry):
        calls = []

        async def body(x):
            calls.append(x)
            return x

        flow = define_flow("strict", body, input_schema=int, registry=registry)

        with pytest.raises(FlowValidationError) as exc_info:
            await flow("oops")

        assert calls == []
        assert exc_info.value.errors
        assert exc_info.value.errors[0]["type"] == "int_type"

    @pytest.mark.anyio
    @pytest.mark.parametrize("payload", ["21", True, 21.5])
    async def test_wrong_types_are_not_coerced(self, registry, payload):
        calls = []

        async def body(x):
            calls.append(x)
            return x * 2

        flow = define_flow("double", body, input_schema=int, output_schema=int, registry=registry)

        with pytest.raises(FlowValidationError, match="Invalid input"):
            await flow(payload)

        assert calls == []

    @pytest.mark.anyio
    async def test_output_is_validated(self, registry):
        async def wrong(x):
            return "not a number"

        flow = define_flow("wrong", wrong, output_schema=int, registry=registry)

        with pytest.raises(FlowValidationError, match="Invalid output"):
            await flow(1)

    @pytest.mark.anyio
    async def test_no_schema_passes_values_through(self, registry):
        async def echo(x):
            return x

        flow = define_flow("echo", echo, registry=registry)

        assert await flow({"any": ["thing"]}) == {"any": ["thing"]}
        assert await flow() is None

    @pytest.mark.anyio
    async def test_body_errors_propagate(self, registry):
        async def broken(x):
            raise RuntimeError("boom")

        flow = define_flow("broken", broken, registry=registry)

        with pytest.raises(RuntimeError, match="boom"):
            await flow(1)

    @pytest.mark.anyio
    async def test_invoke_returns_result_and_trace_id(self, registry, span_exporter):
        define_flow("double", double, input_schema=int, registry=registry)

        with active_registry(registry):
            result = await registry.lookup_flow("double").invoke(4)

        assert result.result == 8
        assert len(result.trace_id) == 32
        assert int(result.trace_id, 16) != 0


# =============================================================================
# Tests: auth policy
# =============================================================================


class TestAuthPolicy:
    """Tests for auth policies on direct runs."""

    @pytest.mark.anyio
    async def test_policy_rejects(self, registry):
        flow = define_flow("guarded", double, auth_policy=require_auth, registry=registry)

        with pytest.raises(PermissionDeniedError, match="Permission denied"):
            await flow(2)

    @pytest.mark.anyio
    async def test_policy_grants(self, registry):
        flow = define_flow("guarded", double, auth_policy=require_auth, registry=registry)

        assert await flow(2, auth={"uid": "u1"}) == 4

    @pytest.mark.anyio
    async def test_policy_sees_auth_and_raw_payload(self, registry):
        seen = []

        async def policy(auth, payload):
            seen.append((auth, payload))

        async def greet(greeting: Greeting) -> str:
            return greeting.name

        flow = define_flow("greet", greet, input_schema=Greeting, auth_policy=policy, registry=registry)

        assert await flow({"name": "Ada"}, auth="token") == "Ada"

        # The policy gets the mapping, not the parsed model
        assert seen == [("token", {"name": "Ada"})]


# =============================================================================
# Tests: registration and lookup
# =============================================================================


class TestRegistration:
    """Tests for registering and resolving flows."""

    def test_define_flow_registers(self, registry):
        flow = define_flow("double", double, registry=registry)

        assert isinstance(flow, CallableFlow)
        assert registry.lookup_flow("double") is flow.flow

    def test_duplicate_name_rejected(self, registry):
        define_flow("double", double, registry=registry)

        with pytest.raises(ValueError, match="already registered"):
            define_flow("double", double, registry=registry)

    @pytest.mark.anyio
    async def test_decorator_uses_function_name(self, registry):
        @register_flow(input_schema=int, registry=registry)
        async def triple(x):
            return x * 3

        assert triple.name == "triple"
        assert await triple(2) == 6

    def test_define_uses_active_registry(self, registry):
        with active_registry(registry):
            define_flow("double", double)

        assert registry.lookup_flow("double") is not None

    @pytest.mark.anyio
    async def test_run_flow_by_name(self, registry):
        define_flow("double", double, input_schema=int, registry=registry)

        with active_registry(registry):
            assert await run_flow("double", 5) == 10

    @pytest.mark.anyio
    async def test_run_flow_unknown_name(self, registry):
        with active_registry(registry):
            with pytest.raises(FlowNotFoundError, match="Flow not found: missing"):
                await run_flow("missing")

    def test_resolve_accepts_flow_and_wrapper(self, registry):
        wrapper = define_flow("double", double, registry=registry)

        assert resolve_flow(wrapper) is wrapper.flow
        assert resolve_flow(wrapper.flow) is wrapper.flow

    def test_flows_listed_by_name(self, registry):
        define_flow("b", double, registry=registry)
        define_flow("a", double, registry=registry)

        assert [flow.name for flow in registry.list_flows()] == ["a", "b"]

    def test_manifest(self, registry):
        define_flow("double", double, input_schema=int, output_schema=int, registry=registry)

        manifest = registry.get_manifest("double")

        assert manifest == {
            "name": "double",
            "input_schema": {"type": "integer"},
            "output_schema": {"type": "integer"},
            "stream_schema": None,
            "streaming": False,
            "requires_auth": False,
        }
        assert registry.get_manifest("missing") is None


# =============================================================================
# Tests: plugins
# =============================================================================


class TestPlugins:
    """Tests for lazy plugin initialization."""

    @pytest.mark.anyio
    async def test_plugins_initialize_once(self, registry):
        calls = []

        async def init_plugin():
            calls.append("init")

        registry.register_plugin("plugin", init_plugin)
        flow = define_flow("double", double, registry=registry)

        await flow(1)
        await flow(2)

        assert calls == ["init"]

    @pytest.mark.anyio
    async def test_late_plugin_runs_on_next_invocation(self, registry):
        calls = []
        registry.register_plugin("first", lambda: calls.append("first"))
        flow = define_flow("double", double, registry=registry)

        await flow(1)
        registry.register_plugin("second", lambda: calls.append("second"))
        await flow(1)

        assert calls == ["first", "second"]

    @pytest.mark.anyio
    async def test_run_flow_on_wrapper_uses_its_registry(self, registry):
        calls = []
        registry.register_plugin("plugin", lambda: calls.append("init"))
        wrapper = define_flow("double", double, registry=registry)

        assert await run_flow(wrapper, 2) == 4
        assert calls == ["init"]

    @pytest.mark.anyio
    async def test_stream_flow_on_wrapper_uses_its_registry(self, registry):
        calls = []
        registry.register_plugin("plugin", lambda: calls.append("init"))

        @register_streaming_flow(registry=registry)
        async def countdown(n, send):
            for i in range(n, 0, -1):
                send(i)
            return "liftoff"

        response = stream_flow(countdown, 2)

        assert [chunk async for chunk in response.stream] == [2, 1]
        assert await response.output == "liftoff"
        assert calls == ["init"]

    def test_duplicate_plugin_rejected(self, registry):
        registry.register_plugin("plugin", lambda: None)

        with pytest.raises(ValueError, match="already registered"):
            registry.register_plugin("plugin", lambda: None)


# =============================================================================
# Tests: middleware
# =============================================================================


@pytest.mark.anyio
async def test_middleware_warns_on_direct_run(registry, caplog):
    flow = define_flow("mw", double, middleware=[lambda: None], registry=registry)

    with caplog.at_level(logging.WARNING, logger="typedflow.core.flow"):
        assert await flow(1) == 2

    assert "Flow (mw) middleware won't run when invoked with run()." in caplog.text


# =============================================================================
# Tests: tracing
# =============================================================================


class TestTracing:
    """Tests for flow spans."""

    @pytest.mark.anyio
    async def test_successful_flow_span(self, registry, span_exporter):
        flow = define_flow("double", double, input_schema=int, registry=registry)

        await flow(21)

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "double"
        assert span.attributes["typedflow:type"] == "flow"
        assert span.attributes["typedflow:path"] == "/double"
        assert span.attributes["typedflow:state"] == "success"
        assert json.loads(span.attributes["typedflow:input"]) == 21
        assert json.loads(span.attributes["typedflow:output"]) == 42
        assert span.attributes["typedflow:metadata:flow:name"] == "double"
        assert span.attributes["typedflow:metadata:flow:state"] == "done"
        assert span.status.status_code != StatusCode.ERROR

    @pytest.mark.anyio
    async def test_failed_flow_span(self, registry, span_exporter):
        async def broken(x):
            raise RuntimeError("boom")

        flow = define_flow("broken", broken, registry=registry)

        with pytest.raises(RuntimeError):
            await flow(1)

        (span,) = span_exporter.get_finished_spans()
        assert span.attributes["typedflow:state"] == "error"
        assert span.attributes["typedflow:metadata:flow:state"] == "error"
        assert "typedflow:output" not in span.attributes
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "boom"
        assert [event.name for event in span.events] == ["exception"]

    @pytest.mark.anyio
    async def test_labels_recorded(self, registry, span_exporter):
        define_flow("double", double, registry=registry)

        with active_registry(registry):
            await registry.lookup_flow("double").invoke(1, labels={"source": "test"})

        (span,) = span_exporter.get_finished_spans()
        assert span.attributes["typedflow:metadata:flow:label:source"] == "test"

    @pytest.mark.anyio
    async def test_nested_flow_span(self, registry, span_exporter):
        inner = define_flow("inner", double, registry=registry)

        async def outer_body(x):
            return await inner(x) + 1

        outer = define_flow("outer", outer_body, registry=registry)

        assert await outer(2) == 5

        spans = {span.name: span for span in span_exporter.get_finished_spans()}
        assert spans["inner"].attributes["typedflow:path"] == "/outer/inner"
        assert spans["inner"].parent.span_id == spans["outer"].context.span_id
        assert spans["inner"].context.trace_id == spans["outer"].context.trace_id

    def test_flow_repr(self, registry):
        flow = Flow("double", double)

        assert repr(flow) == "Flow(name='double', streaming=False)"
