"""Auth context scoped to a single flow invocation.

The auth value is held in a context variable, so steps and asyncio tasks
started inside an invocation see the value that invocation bound. Each flow
invocation binds its own value, nested ones included.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

_auth_context: ContextVar[Any] = ContextVar("typedflow_auth_context", default=None)


@contextmanager
def auth_context(auth: Any) -> Iterator[Any]:
    """Bind an auth value for the duration of the block, then restore the previous one."""
    token = _auth_context.set(auth)
    try:
        yield auth
    finally:
        _auth_context.reset(token)


def get_flow_auth() -> Any:
    """Auth value of the flow invocation currently running (None outside one)."""
    return _auth_context.get()
