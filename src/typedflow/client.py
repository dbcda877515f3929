"""Client for flows exposed by a remote flow server."""

from __future__ import annotations

import inspect
import json
from typing import Any, Callable

import httpx

from .core.errors import FlowError

_NO_LINE = object()


class RemoteFlowError(FlowError):
    """A remote flow returned an error envelope."""

    def __init__(
        self,
        message: str,
        status: str = "INTERNAL",
        http_status: int | None = None,
        details: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.http_status = http_status
        self.details = details

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any], http_status: int | None = None) -> "RemoteFlowError":
        error = envelope.get("error") or {}
        return cls(
            error.get("message", "Unknown error"),
            status=error.get("status", "INTERNAL"),
            http_status=http_status,
            details=error.get("details"),
        )


class RemoteFlowClient:
    """
    Calls flows over the HTTP contract of ``FlowServer``.

    Usage:
        client = RemoteFlowClient("http://localhost:3400")
        doubled = await client.run("double", 21)
        total = await client.stream("count", 3, on_chunk=print)
    """

    def __init__(
        self,
        base_url: str,
        path_prefix: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.path_prefix = path_prefix
        self.headers = headers or {}
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    def flow_path(self, flow_name: str) -> str:
        return f"/{self.path_prefix}{flow_name}"

    async def run(self, flow_name: str, data: Any = None) -> Any:
        """
        Run a remote flow and return its result.

        Raises:
            RemoteFlowError: If the server answers with an error envelope
        """
        async with self._client() as client:
            response = await client.post(self.flow_path(flow_name), json={"data": data})

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise RemoteFlowError(
                f"Flow server error ({response.status_code}): {response.text}",
                http_status=response.status_code,
            ) from e

        if response.status_code != 200 or "error" in body:
            raise RemoteFlowError.from_envelope(body, http_status=response.status_code)
        return body.get("result")

    async def stream(
        self,
        flow_name: str,
        data: Any = None,
        on_chunk: Callable[[Any], Any] | None = None,
    ) -> Any:
        """
        Stream a remote flow, passing each chunk to ``on_chunk``.

        ``on_chunk`` may be sync or async. Returns the final result.

        Raises:
            RemoteFlowError: If the request is rejected or the stream ends with an error line
        """
        async with self._client() as client:
            async with client.stream(
                "POST",
                self.flow_path(flow_name),
                params={"stream": "true"},
                json={"data": data},
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise RemoteFlowError.from_envelope(response.json(), http_status=response.status_code)

                # Each line is delivered once the next one shows it was not the last
                pending: Any = _NO_LINE
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    if pending is not _NO_LINE:
                        await _deliver(on_chunk, pending)
                    pending = json.loads(line)

        # The final line carries the result or the error
        final = None if pending is _NO_LINE else pending
        if isinstance(final, dict) and "error" in final:
            raise RemoteFlowError.from_envelope(final, http_status=200)
        if not isinstance(final, dict) or "result" not in final:
            raise RemoteFlowError("Stream ended without a result line", http_status=200)
        return final["result"]


async def _deliver(on_chunk: Callable[[Any], Any] | None, chunk: Any) -> None:
    if on_chunk is None:
        return
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result
