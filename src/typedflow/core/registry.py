"""Flow registry and the binding of the currently active registry."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Iterator, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from .flow import Flow

logger = logging.getLogger(__name__)

PluginInitializer = Callable[[], Union[Awaitable[None], None]]

_active_registry: ContextVar["Registry | None"] = ContextVar(
    "typedflow_active_registry", default=None
)


class Registry:
    """
    Registry mapping flow names to flows, plus the plugins they depend on.

    Flows register into the registry that is active when they are defined.
    Plugins are initialized lazily, once, before the first invocation that
    runs under the registry.
    """

    _instance: "Registry | None" = None

    def __init__(self):
        self._flows: dict[str, "Flow"] = {}
        self._plugins: dict[str, PluginInitializer] = {}
        self._plugin_names: set[str] = set()
        self._initialized = False
        self._init_lock: asyncio.Lock | None = None

    @classmethod
    def get_instance(cls) -> "Registry":
        """Get the active registry, falling back to the process root registry."""
        active = _active_registry.get()
        if active is not None:
            return active
        if cls._instance is None:
            cls._instance = Registry()
        return cls._instance

    def register_flow(self, flow: "Flow") -> None:
        """
        Register a flow under its name.

        Raises:
            ValueError: If a flow with the same name is already registered
        """
        if flow.name in self._flows:
            raise ValueError(f"Flow already registered: {flow.name}")
        self._flows[flow.name] = flow
        logger.debug(f"Registered flow: {flow.name}")

    def lookup_flow(self, name: str) -> "Flow | None":
        """Get a flow by name."""
        return self._flows.get(name)

    def list_flows(self) -> list["Flow"]:
        """All registered flows, sorted by name."""
        return [self._flows[name] for name in sorted(self._flows)]

    def get_manifest(self, name: str) -> dict[str, Any] | None:
        """Get the manifest of a flow as a plain dict."""
        flow = self.lookup_flow(name)
        if flow is None:
            return None
        return flow.describe().to_dict()

    def register_plugin(self, name: str, initializer: PluginInitializer) -> None:
        """
        Register a plugin initializer (sync or async, no arguments).

        Raises:
            ValueError: If a plugin with the same name is already registered
        """
        if name in self._plugin_names:
            raise ValueError(f"Plugin already registered: {name}")
        self._plugin_names.add(name)
        self._plugins[name] = initializer
        self._initialized = False

    async def initialize_plugins(self) -> None:
        """Run every pending plugin initializer exactly once."""
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            for name, initializer in self._plugins.items():
                logger.debug(f"Initializing plugin: {name}")
                result = initializer()
                if inspect.isawaitable(result):
                    await result
            # Already-run initializers are dropped so late registrations run alone
            self._plugins.clear()
            self._initialized = True

    def __repr__(self) -> str:
        return f"Registry(flows={sorted(self._flows)!r})"


@contextmanager
def active_registry(registry: Registry) -> Iterator[Registry]:
    """Make a registry the active one for the duration of the block."""
    token = _active_registry.set(registry)
    try:
        yield registry
    finally:
        _active_registry.reset(token)
