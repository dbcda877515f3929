"""Pydantic models for the flow HTTP wire format."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


# === Request ===

class FlowRequest(BaseModel):
    """Body of a flow invocation request."""
    data: Any = None


# === Responses ===

class FlowResultResponse(BaseModel):
    """Successful invocation (and the last line of a successful stream)."""
    result: Any = None


class ErrorStatus(BaseModel):
    """Structured error: a status tag, a message and optional diagnostics."""
    status: str
    message: str
    details: str | None = None


class ErrorResponse(BaseModel):
    """Failed invocation (and the last line of a failed stream)."""
    error: ErrorStatus


# Status tags
INTERNAL = "INTERNAL"
PERMISSION_DENIED = "PERMISSION_DENIED"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
