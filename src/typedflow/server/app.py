"""FastAPI application factory for flow servers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import settings
from ..core.flow import Flow
from ..core.registry import Registry
from .routes import build_router

logger = logging.getLogger(__name__)

DEFAULT_CORS = {
    "allow_origins": ["*"],
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}


def create_app(
    flows: Iterable[Flow],
    registry: Registry,
    path_prefix: str = "",
    cors: dict[str, Any] | None = None,
    body_limit: int = settings.server_body_limit,
    title: str = "typedflow",
    version: str = "0.1.0",
) -> FastAPI:
    """
    Create the FastAPI application exposing a set of flows.

    Args:
        flows: Flows to expose, one POST route each
        registry: Registry made active while handling requests
        path_prefix: Prefix inserted between "/" and each flow name
        cors: CORSMiddleware keyword arguments (default: allow everything)
        body_limit: Maximum request body size in bytes
    """
    app = FastAPI(
        title=title,
        version=version,
        description="HTTP API for running typed flows",
    )

    app.add_middleware(CORSMiddleware, **(cors if cors is not None else DEFAULT_CORS))

    # Streamed invocations outlive their responses if the client goes away
    inflight: set[asyncio.Future] = set()
    app.state.inflight = inflight

    flows = list(flows)
    if flows:
        logger.debug("Running flow server with flow paths:")
    else:
        logger.warning("No flows registered in flow server.")

    app.include_router(
        build_router(flows, registry, path_prefix, body_limit, inflight)
    )

    return app
