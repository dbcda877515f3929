"""Flow server: exposes registered flows as HTTP endpoints.

Each ``FlowServer`` runs its own uvicorn server inside the current event
loop. Running servers are tracked by a ``FlowServerSupervisor`` owned by the
process entry point, which stops all of them on shutdown.

Usage:
    supervisor = FlowServerSupervisor()
    server = FlowServer(Registry.get_instance(), FlowServerOptions(port=3400), supervisor=supervisor)
    await server.start()
    ...
    await supervisor.stop_all()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

import uvicorn

from .. import settings
from ..config import get_current_env, is_dev_env
from ..core.errors import FlowServerError, get_error_message
from ..core.flow import Flow
from ..core.registry import Registry
from .app import create_app

logger = logging.getLogger(__name__)

RunInEnv = Literal["all", "prod", "dev"]

MAX_PORT = 65535


@dataclass
class BodyParserOptions:
    """JSON body parsing options."""
    limit: int = settings.server_body_limit  # bytes


@dataclass
class FlowServerOptions:
    """Options to configure a flow server."""
    run_in_env: RunInEnv = "prod"  # Environment(s) the server runs in
    flows: list[Flow] | None = None  # None exposes every flow in the registry
    host: str = settings.server_host
    port: int = settings.server_port  # In dev, the actual port may differ if occupied
    cors: dict[str, Any] | None = None  # CORSMiddleware kwargs
    path_prefix: str = ""
    json_parser: BodyParserOptions = field(default_factory=BodyParserOptions)

    @classmethod
    def from_config(cls, config: dict, flows: list[Flow] | None = None) -> "FlowServerOptions":
        """Build options from a config dict as returned by load_config()."""
        server = config.get("server", {})
        return cls(
            run_in_env=server.get("run_in_env", settings.server_run_in_env),
            flows=flows,
            host=server.get("host", settings.server_host),
            port=server.get("port", settings.server_port),
            cors=server.get("cors"),
            path_prefix=server.get("path_prefix", settings.server_path_prefix),
            json_parser=BodyParserOptions(limit=server.get("body_limit", settings.server_body_limit)),
        )


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the embedding process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _socket_family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def is_port_free(host: str, port: int) -> bool:
    """Check whether a TCP port can be bound on host."""
    with socket.socket(_socket_family(host), socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind the listening socket for a server.

    Raises:
        FlowServerError: If the address cannot be bound
    """
    sock = socket.socket(_socket_family(host), socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise FlowServerError(f"Unable to bind flow server to {host}:{port}: {e}", port=port) from e
    return sock


class FlowServerSupervisor:
    """Tracks running flow servers so they can all be stopped together."""

    def __init__(self):
        self._servers: list["FlowServer"] = []

    @property
    def running(self) -> list["FlowServer"]:
        return list(self._servers)

    def track(self, server: "FlowServer") -> None:
        if server not in self._servers:
            self._servers.append(server)

    def untrack(self, server: "FlowServer") -> None:
        if server in self._servers:
            self._servers.remove(server)

    async def stop_all(self) -> None:
        """
        Stop every running server concurrently and wait for all of them.

        Raises:
            FlowServerError: The first shutdown failure, after all servers settled
        """
        results = await asyncio.gather(
            *(server.stop() for server in self.running),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    def __len__(self) -> int:
        return len(self._servers)


class FlowServer:
    """Serves a set of flows over HTTP."""

    def __init__(
        self,
        registry: Registry,
        options: FlowServerOptions | None = None,
        supervisor: FlowServerSupervisor | None = None,
    ):
        self.registry = registry
        self.options = options or FlowServerOptions()
        self.supervisor = supervisor or FlowServerSupervisor()
        # Port actually bound; None when the server is not running
        self.port: int | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Future | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def url(self) -> str | None:
        if self.port is None:
            return None
        return f"http://{self.options.host}:{self.port}"

    def find_port(self) -> int:
        """
        Resolve the port to listen on.

        In dev, probes from the configured port upwards and returns the first
        free one. Elsewhere the configured port is used as-is.
        """
        chosen = self.options.port
        if not is_dev_env():
            return chosen

        last = min(chosen + settings.port_probe_range, MAX_PORT)
        for candidate in range(chosen, last + 1):
            if is_port_free(self.options.host, candidate):
                if candidate != chosen:
                    logger.warning(
                        f"Port {chosen} is already in use, using next available port {candidate} instead."
                    )
                return candidate
        raise FlowServerError(f"No free port between {chosen} and {last}", port=chosen)

    async def start(self) -> None:
        """
        Start serving and register with the supervisor.

        Does nothing when ``run_in_env`` excludes the current environment.

        Raises:
            FlowServerError: If the port cannot be bound or the server fails to start
        """
        if self._server is not None:
            logger.warning(f"Flow server already running on port {self.port}")
            return

        env = get_current_env()
        if self.options.run_in_env not in ("all", env):
            logger.info(
                f"Not starting flow server: configured for '{self.options.run_in_env}', running in '{env}'"
            )
            return

        flows = self.options.flows
        if flows is None:
            flows = self.registry.list_flows()
        app = create_app(
            flows,
            self.registry,
            path_prefix=self.options.path_prefix,
            cors=self.options.cors,
            body_limit=self.options.json_parser.limit,
        )

        sock = bind_socket(self.options.host, self.find_port())
        port = sock.getsockname()[1]

        config = uvicorn.Config(app, lifespan="off", log_config=None, access_log=False)
        server = _EmbeddedServer(config)
        serve_task = asyncio.ensure_future(server.serve(sockets=[sock]))

        while not server.started:
            if serve_task.done():
                sock.close()
                error = serve_task.exception()
                message = get_error_message(error) if error else "server exited during startup"
                raise FlowServerError(f"Flow server failed to start on port {port}: {message}", port=port) from error
            await asyncio.sleep(0.01)

        self.port = port
        self._server = server
        self._serve_task = serve_task
        self.supervisor.track(self)
        logger.info(f"Flow server running on {self.url}")

    async def stop(self) -> None:
        """
        Stop serving and unregister from the supervisor. No-op if not running.

        Raises:
            FlowServerError: If the server fails while shutting down
        """
        if self._server is None:
            return

        port = self.port
        self._server.should_exit = True
        try:
            await self._serve_task
        except Exception as e:
            logger.error(f"Error shutting down flow server on port {port}: {e}")
            raise FlowServerError(f"Error shutting down flow server on port {port}: {e}", port=port) from e

        self.supervisor.untrack(self)
        self.port = None
        self._server = None
        self._serve_task = None
        logger.info(f"Flow server on port {port} has successfully shut down.")

    def __repr__(self) -> str:
        return f"FlowServer(port={self.port}, running={self.running})"
