"""Step recording inside flow bodies.

Each step gets its own span (tagged ``flowStep``) nested under the running
flow's span, so sub-computations show up individually in traces.

Usage:
    async def body(topic):
        outline = await run_step("outline", lambda: make_outline(topic))
        return await run_step_with_input("expand", outline, expand)
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

from .tracing import SPAN_TYPE_ATTR, new_trace

T = TypeVar("T")


async def run_step(name: str, fn: Callable[[], Awaitable[T]]) -> T:
    """Run a zero-argument coroutine function as a recorded step."""
    with new_trace(name, labels={SPAN_TYPE_ATTR: "flowStep"}) as metadata:
        output = await fn()
        metadata.record_output(output)
        return output


async def run_step_with_input(
    name: str,
    input: Any,
    fn: Callable[[Any], Awaitable[T]],
) -> T:
    """
    Run a coroutine function on an explicit input as a recorded step.

    The input is recorded on the span before ``fn`` runs, so it is kept
    even when ``fn`` raises.
    """
    with new_trace(name, labels={SPAN_TYPE_ATTR: "flowStep"}) as metadata:
        metadata.record_input(input)
        output = await fn(input)
        metadata.record_output(output)
        return output
