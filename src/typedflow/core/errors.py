"""Error types and error formatting helpers."""

from __future__ import annotations

import traceback
from typing import Any


class FlowError(Exception):
    """Base exception for all flow errors."""
    pass


class FlowValidationError(FlowError):
    """A value failed to parse against a flow schema."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class PermissionDeniedError(FlowError):
    """Raised by auth policies to reject an invocation."""

    def __init__(self, message: str = "Permission denied to resource"):
        super().__init__(message)


class FlowNotFoundError(FlowError, LookupError):
    """No flow with the requested name is registered."""

    def __init__(self, name: str):
        super().__init__(f"Flow not found: {name}")
        self.name = name


class FlowServerError(FlowError):
    """Failure binding, serving or shutting down a flow server."""

    def __init__(self, message: str, port: int | None = None):
        super().__init__(message)
        self.port = port


def get_error_message(error: BaseException) -> str:
    """Human readable message for an error, falling back to its type name."""
    message = str(error)
    return message if message else type(error).__name__


def get_error_stack(error: BaseException) -> str:
    """Formatted traceback of an error, used as diagnostic detail."""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))
