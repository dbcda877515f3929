"""HTTP route handlers exposing flows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Iterable

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import get_error_message, get_error_stack
from ..core.flow import Flow
from ..core.flow import StreamingResponse as FlowStreamingResponse
from ..core.registry import Registry, active_registry
from .models import (
    ErrorResponse,
    ErrorStatus,
    FlowRequest,
    FlowResultResponse,
    INTERNAL,
    INVALID_ARGUMENT,
    PERMISSION_DENIED,
    RESOURCE_EXHAUSTED,
)

logger = logging.getLogger(__name__)

STREAM_DELIMITER = "\n"


def encode_line(value: Any) -> str:
    """JSON-encode one line of a streamed response."""
    return json.dumps(jsonable_encoder(value)) + STREAM_DELIMITER


def internal_error(error: BaseException) -> ErrorResponse:
    return ErrorResponse(
        error=ErrorStatus(
            status=INTERNAL,
            message=get_error_message(error),
            details=get_error_stack(error),
        )
    )


def error_response(status_code: int, status: str, message: str, details: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorStatus(status=status, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def stream_lines(response: FlowStreamingResponse) -> AsyncIterator[str]:
    """
    Render a streamed invocation as newline-delimited JSON.

    One line per chunk, then a final result line or, if the invocation
    failed, a final error line.
    """
    try:
        async for chunk in response.stream:
            yield encode_line(chunk)
    except Exception as e:
        logger.error(f"Streamed flow failed: {e}")
        yield encode_line(internal_error(e).model_dump(exclude_none=True))
        return
    yield encode_line(FlowResultResponse(result=response.output.result()).model_dump())


def _declared_length(request: Request) -> int | None:
    """Body size announced by the client, if any."""
    try:
        return int(request.headers["content-length"])
    except (KeyError, ValueError):
        return None


async def handle_flow_request(
    flow: Flow,
    request: Request,
    stream: bool,
    body_limit: int,
    inflight: set[asyncio.Future],
) -> Response:
    """
    Run a flow for one HTTP request.

    Errors raised by the flow never escape: they are rendered as error
    envelopes (or as the last line of a streamed response). Input validation
    runs as part of the invocation, so a mismatch is reported like any other
    flow failure.
    """
    declared = _declared_length(request)
    if declared is not None and declared > body_limit:
        return error_response(413, RESOURCE_EXHAUSTED, "Request entity too large")
    body = await request.body()
    # Chunked uploads carry no length up front
    if len(body) > body_limit:
        return error_response(413, RESOURCE_EXHAUSTED, "Request entity too large")
    try:
        flow_request = FlowRequest.model_validate_json(body or b"{}")
    except PydanticValidationError as e:
        return error_response(400, INVALID_ARGUMENT, f"Invalid request body: {e.error_count()} error(s)")

    # Populated by upstream middleware, if any
    auth = getattr(request.state, "auth", None)
    payload = flow_request.data

    try:
        await flow.authorize(auth, payload)
    except Exception as e:
        return error_response(403, PERMISSION_DENIED, str(e) or "Permission denied to resource")

    if stream:
        streamed = flow.stream_authorized(payload, auth=auth)
        # Keeps the invocation alive if the client disconnects mid-stream
        inflight.add(streamed.output)
        streamed.output.add_done_callback(inflight.discard)
        return StreamingResponse(stream_lines(streamed), media_type="text/plain")

    try:
        result = await flow.invoke(flow.parse_input(payload), auth=auth)
    except Exception as e:
        logger.error(f"Flow '{flow.name}' failed: {e}")
        return JSONResponse(status_code=500, content=internal_error(e).model_dump(exclude_none=True))

    return JSONResponse(content=jsonable_encoder(FlowResultResponse(result=result.result)))


def _flow_endpoint(
    flow: Flow,
    registry: Registry,
    body_limit: int,
    inflight: set[asyncio.Future],
):
    async def endpoint(request: Request, stream: str | None = None) -> Response:
        with active_registry(registry):
            return await handle_flow_request(flow, request, stream == "true", body_limit, inflight)

    endpoint.__name__ = f"run_flow_{flow.name}"
    return endpoint


def build_router(
    flows: Iterable[Flow],
    registry: Registry,
    path_prefix: str,
    body_limit: int,
    inflight: set[asyncio.Future],
) -> APIRouter:
    """Build a router with one POST route per flow at ``/{path_prefix}{name}``."""
    router = APIRouter()
    for flow in flows:
        flow_path = f"/{path_prefix}{flow.name}"
        logger.debug(f" - {flow_path}")
        router.add_api_route(
            flow_path,
            _flow_endpoint(flow, registry, body_limit, inflight),
            methods=["POST"],
            dependencies=[Depends(middleware) for middleware in flow.middleware],
            response_model=None,
            tags=["Flows"],
        )
    return router
