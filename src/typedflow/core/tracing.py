"""Span recording for flows and flow steps on top of OpenTelemetry."""

from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode, format_trace_id

from .errors import get_error_message
from .schema import to_json_value

TRACER_NAME = "typedflow"
ATTR_PREFIX = "typedflow"

SPAN_TYPE_ATTR = f"{ATTR_PREFIX}:type"
SPAN_NAME_ATTR = f"{ATTR_PREFIX}:name"
SPAN_PATH_ATTR = f"{ATTR_PREFIX}:path"
SPAN_INPUT_ATTR = f"{ATTR_PREFIX}:input"
SPAN_OUTPUT_ATTR = f"{ATTR_PREFIX}:output"
SPAN_STATE_ATTR = f"{ATTR_PREFIX}:state"
METADATA_PREFIX = f"{ATTR_PREFIX}:metadata:"

_tracer_provider: trace.TracerProvider | None = None
_current_path: ContextVar[str] = ContextVar("typedflow_span_path", default="")


def configure_tracing(provider: trace.TracerProvider | None) -> None:
    """
    Use a specific tracer provider for flow spans.

    Passing None falls back to the globally registered OpenTelemetry provider.
    """
    global _tracer_provider
    _tracer_provider = provider


def get_tracer() -> trace.Tracer:
    """Get the tracer flow spans are recorded with."""
    if _tracer_provider is not None:
        return _tracer_provider.get_tracer(TRACER_NAME)
    return trace.get_tracer(TRACER_NAME)


def serialize(value: Any) -> str:
    """JSON-encode a value for a span attribute."""
    return json.dumps(to_json_value(value))


@dataclass
class SpanMetadata:
    """Mutable view of the span opened by new_trace()."""
    name: str
    path: str
    span: Span = field(repr=False)
    state: str | None = None  # "success" or "error" once closed
    input: Any = None
    output: str | None = None

    @property
    def trace_id(self) -> str:
        return format_trace_id(self.span.get_span_context().trace_id)

    def record_input(self, value: Any) -> None:
        """Record the input on the span right away."""
        self.input = value
        if value is not None:
            self.span.set_attribute(SPAN_INPUT_ATTR, serialize(value))

    def record_output(self, value: Any) -> None:
        self.output = serialize(value)
        self.span.set_attribute(SPAN_OUTPUT_ATTR, self.output)

    def __str__(self) -> str:
        status = {"success": "✓", "error": "✗"}.get(self.state or "", "…")
        return f"{status} {self.path}"


@contextmanager
def new_trace(
    name: str,
    labels: dict[str, str] | None = None,
) -> Iterator[SpanMetadata]:
    """
    Open a span as a child of the current one and yield its metadata.

    The span is always ended. If the block raises, the exception is recorded,
    the span status is set to ERROR and the exception propagates.

    Usage:
        with new_trace("my-flow", labels={SPAN_TYPE_ATTR: "flow"}) as meta:
            meta.record_input(data)
            ...
    """
    path = f"{_current_path.get()}/{name}"
    token = _current_path.set(path)
    try:
        with get_tracer().start_as_current_span(
            name,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            metadata = SpanMetadata(name=name, path=path, span=span)
            span.set_attribute(SPAN_NAME_ATTR, name)
            span.set_attribute(SPAN_PATH_ATTR, path)
            for key, value in (labels or {}).items():
                span.set_attribute(key, value)
            try:
                yield metadata
            except Exception as e:
                metadata.state = "error"
                span.set_status(Status(StatusCode.ERROR, get_error_message(e)))
                span.record_exception(e)
                raise
            else:
                metadata.state = "success"
            finally:
                # Cancellation skips both branches above
                span.set_attribute(SPAN_STATE_ATTR, metadata.state or "error")
    finally:
        _current_path.reset(token)


def current_span_path() -> str:
    """Path of the innermost open flow span ("" outside any flow)."""
    return _current_path.get()


def set_custom_metadata_attribute(key: str, value: str) -> None:
    """Attach a metadata attribute to the current span."""
    trace.get_current_span().set_attribute(METADATA_PREFIX + key, value)


def set_custom_metadata_attributes(values: dict[str, str]) -> None:
    for key, value in values.items():
        set_custom_metadata_attribute(key, value)


def flow_metadata_prefix(name: str) -> str:
    """Namespace a metadata key under the flow scope."""
    return f"flow:{name}"
