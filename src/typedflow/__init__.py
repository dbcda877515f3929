"""typedflow: schema-typed, streamable flows exposed over HTTP."""

from .core import (
    Flow,
    FlowManifest,
    FlowResult,
    StreamingResponse,
    CallableFlow,
    StreamableFlow,
    StreamingChannel,
    Registry,
    active_registry,
    auth_context,
    get_flow_auth,
    define_flow,
    define_streaming_flow,
    register_flow,
    register_streaming_flow,
    run_flow,
    stream_flow,
    run_step,
    run_step_with_input,
    configure_tracing,
    FlowError,
    FlowValidationError,
    PermissionDeniedError,
    FlowNotFoundError,
    FlowServerError,
)
from .server import FlowServer, FlowServerOptions, FlowServerSupervisor

__version__ = "0.1.0"

__all__ = [
    "Flow",
    "FlowManifest",
    "FlowResult",
    "StreamingResponse",
    "CallableFlow",
    "StreamableFlow",
    "StreamingChannel",
    "Registry",
    "active_registry",
    "auth_context",
    "get_flow_auth",
    "define_flow",
    "define_streaming_flow",
    "register_flow",
    "register_streaming_flow",
    "run_flow",
    "stream_flow",
    "run_step",
    "run_step_with_input",
    "configure_tracing",
    "FlowError",
    "FlowValidationError",
    "PermissionDeniedError",
    "FlowNotFoundError",
    "FlowServerError",
    "FlowServer",
    "FlowServerOptions",
    "FlowServerSupervisor",
]
