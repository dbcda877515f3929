"""Flows: named, schema-typed units of work.

A flow wraps a coroutine function with input/output validation, an optional
auth policy, tracing and optional streaming. Flows can be:

- called directly (``await my_flow(data)``), which goes through ``run``
- called from other flows, nesting their spans under the caller's span
- streamed (``my_flow.flow.stream(data)``), yielding chunks as they are emitted
- exposed over HTTP by ``typedflow.server.FlowServer``
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import nullcontext
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, ContextManager, Sequence, Union

from pydantic import TypeAdapter

from .channel import StreamingChannel
from .context import auth_context
from .errors import FlowNotFoundError
from .registry import Registry, active_registry
from .schema import parse, to_json_schema, to_type_adapter
from .tracing import (
    SPAN_TYPE_ATTR,
    flow_metadata_prefix,
    new_trace,
    set_custom_metadata_attribute,
    set_custom_metadata_attributes,
)

logger = logging.getLogger(__name__)

StreamingCallback = Callable[[Any], None]
AuthPolicy = Callable[[Any, Any], Union[Awaitable[None], None]]
FlowFn = Callable[..., Awaitable[Any]]


@dataclass
class FlowResult:
    """Result of a flow invocation."""
    result: Any
    trace_id: str


@dataclass
class FlowManifest:
    """Self-description of a flow's interface."""
    name: str
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    stream_schema: dict[str, Any] | None = None
    streaming: bool = False
    requires_auth: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StreamingResponse:
    """
    Chunks and final output of a streamed invocation.

    ``stream`` is a one-shot async iterator over the emitted chunks; it raises
    the invocation's error (if any) after its last chunk. ``output`` is a
    future of the final output. Either can be consumed without the other.
    """
    stream: AsyncIterator[Any]
    output: "asyncio.Future[Any]"


def _discard_chunk(chunk: Any) -> None:
    pass


async def _drain(channel: StreamingChannel, output: "asyncio.Future[Any]") -> AsyncIterator[Any]:
    async for chunk in channel:
        yield chunk
    # Surfaces the invocation's failure to the consumer
    await output


class Flow:
    """
    A named, schema-typed unit of work.

    A flow declared without a stream schema is non-streaming: its body is
    called as ``fn(input)``. A flow with a stream schema is called as
    ``fn(input, streaming_callback)``.
    """

    def __init__(
        self,
        name: str,
        fn: FlowFn,
        input_schema: Any = None,
        output_schema: Any = None,
        stream_schema: Any = None,
        auth_policy: AuthPolicy | None = None,
        middleware: Sequence[Callable[..., Any]] | None = None,
    ):
        self.name = name
        self.fn = fn
        self.input_schema = input_schema
        self.output_schema = output_schema
        self.stream_schema = stream_schema
        self.auth_policy = auth_policy
        self.middleware = list(middleware) if middleware else []
        self._input_adapter: TypeAdapter | None = to_type_adapter(input_schema)
        self._output_adapter: TypeAdapter | None = to_type_adapter(output_schema)
        self._stream_adapter: TypeAdapter | None = to_type_adapter(stream_schema)

    @property
    def streaming(self) -> bool:
        return self._stream_adapter is not None

    def describe(self) -> FlowManifest:
        return FlowManifest(
            name=self.name,
            input_schema=to_json_schema(self._input_adapter),
            output_schema=to_json_schema(self._output_adapter),
            stream_schema=to_json_schema(self._stream_adapter),
            streaming=self.streaming,
            requires_auth=self.auth_policy is not None,
        )

    def parse_input(self, payload: Any) -> Any:
        """Validate a payload against the input schema (if any)."""
        return parse(self._input_adapter, payload, "input")

    async def authorize(self, auth: Any, payload: Any) -> None:
        """
        Run the auth policy against the unvalidated payload.

        A policy rejects by raising; returning normally grants access.
        """
        if self.auth_policy is None:
            return
        result = self.auth_policy(auth, payload)
        if inspect.isawaitable(result):
            await result

    async def _call_body(self, input: Any, streaming_callback: StreamingCallback | None) -> Any:
        if self._stream_adapter is None:
            return await self.fn(input)

        emit = streaming_callback or _discard_chunk

        def emit_chunk(chunk: Any) -> None:
            emit(parse(self._stream_adapter, chunk, "chunk"))

        return await self.fn(input, emit_chunk)

    async def invoke(
        self,
        input: Any,
        streaming_callback: StreamingCallback | None = None,
        labels: dict[str, str] | None = None,
        auth: Any = None,
    ) -> FlowResult:
        """
        Execute the flow body with an already validated input.

        Opens one span for the invocation. The output is validated against
        the output schema (if any) before it is recorded and returned.
        """
        await Registry.get_instance().initialize_plugins()
        logger.debug(f"Invoking flow: {self.name}")

        with auth_context(auth):
            with new_trace(self.name, labels={SPAN_TYPE_ATTR: "flow"}) as metadata:
                for label, value in (labels or {}).items():
                    set_custom_metadata_attribute(flow_metadata_prefix(f"label:{label}"), value)
                set_custom_metadata_attributes({flow_metadata_prefix("name"): self.name})

                metadata.record_input(input)
                try:
                    output = await self._call_body(input, streaming_callback)
                    output = parse(self._output_adapter, output, "output")
                except Exception:
                    set_custom_metadata_attribute(flow_metadata_prefix("state"), "error")
                    raise

                metadata.record_output(output)
                set_custom_metadata_attribute(flow_metadata_prefix("state"), "done")
                return FlowResult(result=output, trace_id=metadata.trace_id)

    async def run(self, payload: Any = None, auth: Any = None) -> Any:
        """
        Run the flow. This is used when calling a flow directly or from another flow.

        Raises:
            FlowValidationError: If the payload does not match the input schema
        """
        input = self.parse_input(payload)
        await self.authorize(auth, payload)

        if self.middleware:
            logger.warning(f"Flow ({self.name}) middleware won't run when invoked with run().")

        result = await self.invoke(input, auth=auth)
        return result.result

    def stream(self, payload: Any = None, auth: Any = None) -> StreamingResponse:
        """
        Run the flow in the background and stream its chunks.

        Returns immediately; must be called with a running event loop. The
        auth policy runs first, then input validation, then the body.
        """
        async def prepare() -> Any:
            await self.authorize(auth, payload)
            return self.parse_input(payload)

        return self._start_stream(prepare, auth=auth)

    def stream_authorized(
        self,
        payload: Any = None,
        auth: Any = None,
        labels: dict[str, str] | None = None,
    ) -> StreamingResponse:
        """
        Like stream(), for a caller that already ran the auth policy.

        The payload is still validated inside the invocation, so a mismatch
        ends the stream with a FlowValidationError.
        """
        async def prepare() -> Any:
            return self.parse_input(payload)

        return self._start_stream(prepare, auth=auth, labels=labels)

    def _start_stream(
        self,
        prepare: Callable[[], Awaitable[Any]],
        auth: Any = None,
        labels: dict[str, str] | None = None,
    ) -> StreamingResponse:
        channel: StreamingChannel = StreamingChannel()

        async def invocation() -> Any:
            try:
                input = await prepare()
                result = await self.invoke(
                    input,
                    streaming_callback=channel.send,
                    labels=labels,
                    auth=auth,
                )
                return result.result
            finally:
                channel.close()

        output = asyncio.ensure_future(invocation())
        return StreamingResponse(stream=_drain(channel, output), output=output)

    def __repr__(self) -> str:
        return f"Flow(name={self.name!r}, streaming={self.streaming})"


class CallableFlow:
    """Non-streaming flow bound to the registry it was defined in. Awaiting a call runs it."""

    def __init__(self, flow: Flow, registry: Registry):
        self.flow = flow
        self.registry = registry

    @property
    def name(self) -> str:
        return self.flow.name

    async def __call__(self, input: Any = None, auth: Any = None) -> Any:
        with active_registry(self.registry):
            return await self.flow.run(input, auth=auth)

    def __repr__(self) -> str:
        return f"CallableFlow({self.flow.name!r})"


class StreamableFlow:
    """Streaming flow bound to the registry it was defined in. Calling it streams it."""

    def __init__(self, flow: Flow, registry: Registry):
        self.flow = flow
        self.registry = registry

    @property
    def name(self) -> str:
        return self.flow.name

    def __call__(self, input: Any = None, auth: Any = None) -> StreamingResponse:
        with active_registry(self.registry):
            return self.flow.stream(input, auth=auth)

    def __repr__(self) -> str:
        return f"StreamableFlow({self.flow.name!r})"


def define_flow(
    name: str,
    fn: FlowFn,
    input_schema: Any = None,
    output_schema: Any = None,
    auth_policy: AuthPolicy | None = None,
    middleware: Sequence[Callable[..., Any]] | None = None,
    registry: Registry | None = None,
) -> CallableFlow:
    """
    Define a non-streaming flow and register it.

    Args:
        name: Unique flow name (also the HTTP route name)
        fn: ``async def fn(input) -> output``
        input_schema: Schema the input is parsed with
        output_schema: Schema the output is parsed with
        auth_policy: ``policy(auth, payload)``, raises to reject
        middleware: FastAPI dependencies run before the HTTP handler only
        registry: Registry to register in (default: the active registry)

    Raises:
        ValueError: If the name is already registered
    """
    registry = registry or Registry.get_instance()
    new_flow = Flow(
        name,
        fn,
        input_schema=input_schema,
        output_schema=output_schema,
        auth_policy=auth_policy,
        middleware=middleware,
    )
    registry.register_flow(new_flow)
    return CallableFlow(new_flow, registry)


def define_streaming_flow(
    name: str,
    fn: FlowFn,
    input_schema: Any = None,
    output_schema: Any = None,
    stream_schema: Any = Any,
    auth_policy: AuthPolicy | None = None,
    middleware: Sequence[Callable[..., Any]] | None = None,
    registry: Registry | None = None,
) -> StreamableFlow:
    """
    Define a streaming flow and register it.

    The body is ``async def fn(input, streaming_callback) -> output``; each
    ``streaming_callback(chunk)`` call is validated against ``stream_schema``.
    """
    if stream_schema is None:
        stream_schema = Any
    registry = registry or Registry.get_instance()
    new_flow = Flow(
        name,
        fn,
        input_schema=input_schema,
        output_schema=output_schema,
        stream_schema=stream_schema,
        auth_policy=auth_policy,
        middleware=middleware,
    )
    registry.register_flow(new_flow)
    return StreamableFlow(new_flow, registry)


def register_flow(name: str | None = None, **options: Any):
    """
    Decorator to define a non-streaming flow.

    Usage:
        @register_flow("double", input_schema=int, output_schema=int)
        async def double(x):
            return x * 2
    """
    def decorator(fn: FlowFn) -> CallableFlow:
        return define_flow(name or fn.__name__, fn, **options)
    return decorator


def register_streaming_flow(name: str | None = None, **options: Any):
    """Decorator to define a streaming flow (see define_streaming_flow)."""
    def decorator(fn: FlowFn) -> StreamableFlow:
        return define_streaming_flow(name or fn.__name__, fn, **options)
    return decorator


def resolve_flow(target: "Flow | CallableFlow | StreamableFlow | str") -> Flow:
    """
    Resolve a flow object, a wrapper or a name in the active registry.

    Raises:
        FlowNotFoundError: If no flow is registered under the name
    """
    if isinstance(target, Flow):
        return target
    if isinstance(target, (CallableFlow, StreamableFlow)):
        return target.flow
    found = Registry.get_instance().lookup_flow(target)
    if found is None:
        raise FlowNotFoundError(target)
    return found


def _registry_scope(target: "Flow | CallableFlow | StreamableFlow | str") -> ContextManager[Any]:
    """Bind a wrapper's own registry; other targets run under the active one."""
    if isinstance(target, (CallableFlow, StreamableFlow)):
        return active_registry(target.registry)
    return nullcontext()


async def run_flow(
    target: "Flow | CallableFlow | StreamableFlow | str",
    payload: Any = None,
    auth: Any = None,
) -> Any:
    """Run a flow by object or by name and return its output."""
    with _registry_scope(target):
        return await resolve_flow(target).run(payload, auth=auth)


def stream_flow(
    target: "Flow | CallableFlow | StreamableFlow | str",
    payload: Any = None,
    auth: Any = None,
) -> StreamingResponse:
    """Stream a flow by object or by name."""
    with _registry_scope(target):
        return resolve_flow(target).stream(payload, auth=auth)
