"""Core flow execution framework."""

from .channel import ChannelClosedError, StreamingChannel
from .context import auth_context, get_flow_auth
from .errors import (
    FlowError,
    FlowValidationError,
    PermissionDeniedError,
    FlowNotFoundError,
    FlowServerError,
    get_error_message,
    get_error_stack,
)
from .flow import (
    Flow,
    FlowManifest,
    FlowResult,
    StreamingResponse,
    CallableFlow,
    StreamableFlow,
    define_flow,
    define_streaming_flow,
    register_flow,
    register_streaming_flow,
    resolve_flow,
    run_flow,
    stream_flow,
)
from .registry import Registry, active_registry
from .step import run_step, run_step_with_input
from .tracing import SpanMetadata, configure_tracing, new_trace, SPAN_TYPE_ATTR

__all__ = [
    # Channel
    "StreamingChannel",
    "ChannelClosedError",
    # Context
    "auth_context",
    "get_flow_auth",
    # Errors
    "FlowError",
    "FlowValidationError",
    "PermissionDeniedError",
    "FlowNotFoundError",
    "FlowServerError",
    "get_error_message",
    "get_error_stack",
    # Flow
    "Flow",
    "FlowManifest",
    "FlowResult",
    "StreamingResponse",
    "CallableFlow",
    "StreamableFlow",
    "define_flow",
    "define_streaming_flow",
    "register_flow",
    "register_streaming_flow",
    "resolve_flow",
    "run_flow",
    "stream_flow",
    # Registry
    "Registry",
    "active_registry",
    # Steps
    "run_step",
    "run_step_with_input",
    # Tracing
    "SpanMetadata",
    "configure_tracing",
    "new_trace",
    "SPAN_TYPE_ATTR",
]
