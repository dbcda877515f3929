"""Flow HTTP service."""

from .app import create_app
from .flow_server import (
    BodyParserOptions,
    FlowServer,
    FlowServerOptions,
    FlowServerSupervisor,
)
from .models import (
    FlowRequest,
    FlowResultResponse,
    ErrorStatus,
    ErrorResponse,
)

__all__ = [
    "create_app",
    "BodyParserOptions",
    "FlowServer",
    "FlowServerOptions",
    "FlowServerSupervisor",
    "FlowRequest",
    "FlowResultResponse",
    "ErrorStatus",
    "ErrorResponse",
]
