"""
typedflow command line

Usage:
    typedflow serve app.flows                 # Serve every flow defined in app.flows
    typedflow serve app.flows --port 8080     # Custom port
    typedflow serve app.flows --env dev       # Dev mode: falls back to a free port
    typedflow list app.flows                  # Print flow manifests as JSON

The module is imported first; flows defined at import time register into the
root registry and are exposed by the server.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
import sys
from pathlib import Path

from . import settings
from .config import load_config, validate_config_dict
from .core.registry import Registry
from .server.flow_server import FlowServer, FlowServerOptions, FlowServerSupervisor

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the command line."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )

    # Suppress library loggers unless in debug mode
    if numeric_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def import_flows(module_name: str) -> Registry:
    """Import the module defining flows and return the registry they landed in."""
    # Modules next to the working directory are importable like scripts
    if str(Path.cwd()) not in sys.path:
        sys.path.insert(0, str(Path.cwd()))
    importlib.import_module(module_name)
    return Registry.get_instance()


async def serve(options: FlowServerOptions, registry: Registry) -> int:
    """Run a flow server until SIGINT/SIGTERM, then stop every server."""
    supervisor = FlowServerSupervisor()
    server = FlowServer(registry, options, supervisor=supervisor)

    await server.start()
    if not server.running:
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            continue
        installed.append(sig)

    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.debug("Cleaning up flow server(s)...")
        await supervisor.stop_all()
    return 0


def list_flows(registry: Registry) -> None:
    manifests = [flow.describe().to_dict() for flow in registry.list_flows()]
    if not manifests:
        print("No flows registered.")
        return
    print(json.dumps(manifests, indent=2))


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="typedflow",
        description="Serve and inspect typed flows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, help=f"Config file (default: {settings.config_file})")
    parser.add_argument("--log-level", help="Log level (default: from config, INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Serve flows over HTTP")
    serve_parser.add_argument("module", help="Module that defines the flows (e.g. app.flows)")
    serve_parser.add_argument("--host", help=f"Host to bind to (default: {settings.server_host})")
    serve_parser.add_argument("--port", type=int, help=f"Port to listen on (default: {settings.server_port})")
    serve_parser.add_argument("--path-prefix", help="Prefix for flow routes")
    serve_parser.add_argument("--env", choices=["dev", "prod"], help=f"Environment (env: {settings.env_var})")
    serve_parser.add_argument(
        "--run-in-env",
        choices=["all", "dev", "prod"],
        help="Environment(s) the server runs in (default: prod)",
    )

    list_parser = subparsers.add_parser("list", help="List flow manifests")
    list_parser.add_argument("module", help="Module that defines the flows")

    args = parser.parse_args(argv)

    config = load_config(args.config)
    errors = validate_config_dict(config)
    if errors:
        for error in errors:
            print(f"Config error: {error}", file=sys.stderr)
        sys.exit(1)

    setup_logging(args.log_level or config["logging"]["level"])

    registry = import_flows(args.module)

    if args.command == "list":
        list_flows(registry)
        sys.exit(0)

    # Command line flags override the config file
    if args.env:
        os.environ[settings.env_var] = args.env
    else:
        os.environ.setdefault(settings.env_var, config["env"])
    server_config = config["server"]
    for key in ("host", "port", "path_prefix", "run_in_env"):
        value = getattr(args, key)
        if value is not None:
            server_config[key] = value

    options = FlowServerOptions.from_config(config)
    sys.exit(asyncio.run(serve(options, registry)))


if __name__ == "__main__":
    main()
