"""
Runtime Context.

A Runtime owns every table the engine needs and is passed (as ``self``) to
everything that works on them:

    loader     - resource cache + waitlists
    registry   - component definitions
    resolver   - instance graph construction
    stores     - datastore singleton table
    database() - embedded SQLite database, opened on first use

Design Principle:
    No process-wide state. Several runtimes can coexist in one process and
    never see each other's resources, components or datasets.

Usage:
    async with Runtime(RuntimeSettings(base_path="static")) as runtime:
        app = await runtime.start("components/app.py", {"title": "Notes"})
        notes = await runtime.store({"table": "notes"})
        await notes.set({"text": "hello"})

    runtime.reset()    # forget everything, keep connections
    await runtime.aclose()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from konduit.components.registry import ComponentRegistry
from konduit.config.schemas import Credentials, RuntimeSettings
from konduit.config.settings import get_settings
from konduit.store.channel import Channel, WebSocketChannel
from konduit.store.datastore import Datastore
from konduit.store.embedded import EmbeddedDatabase
from konduit.store.table import DatastoreTable

from .loader import ResourceLoader
from .resolver import DependencyResolver

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str, str], Awaitable[Channel]]


class Runtime:
    """
    Resolution engine context.

    Args:
        settings: Runtime settings (defaults to get_settings(), i.e. the
            KONDUIT_* environment)
        http_client: Shared httpx client for resources and data services;
            when omitted each user creates and owns its own
        channel_factory: ``await factory(url, subprotocol)`` returning a
            Channel; defaults to WebSocketChannel.connect
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        channel_factory: ChannelFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.channel_factory: ChannelFactory = channel_factory or WebSocketChannel.connect

        self.loader = ResourceLoader(self, http_client=http_client)
        self.registry = ComponentRegistry(self)
        self.resolver = DependencyResolver(self)
        self.stores = DatastoreTable(self)
        self._database: EmbeddedDatabase | None = None

    # =========================================================================
    # Resources and components
    # =========================================================================

    async def load(self, *specs: Any) -> Any:
        """Load resources (see ResourceLoader.load)."""
        return await self.loader.load(*specs)

    async def register(self, component: Any, config: Any = None) -> Any:
        """Register a component (see ComponentRegistry.register)."""
        return await self.registry.register(component, config)

    async def instantiate(self, component: Any, config: Any = None) -> Any:
        """Create a fully resolved and initialized instance."""
        return await self.resolver.instantiate(component, config)

    async def start(self, component: Any, config: Any = None) -> Any:
        """Create an instance and render it."""
        return await self.resolver.start(component, config)

    async def solve(self, dependency: Any) -> Any:
        """Produce the value of one dependency tuple."""
        return await self.resolver.solve(dependency)

    # =========================================================================
    # Datastores
    # =========================================================================

    async def store(self, settings: Any = None) -> Datastore:
        """Open (or reuse) the datastore for some settings."""
        return await self.stores.open(settings)

    async def get(self, settings: Any, key_or_query: Any = None, *, credentials: Credentials | None = None) -> Any:
        store = await self.stores.open(settings)
        return await store.get(key_or_query, credentials=credentials)

    async def set(self, settings: Any, data: Any, *, credentials: Credentials | None = None) -> Any:
        store = await self.stores.open(settings)
        return await store.set(data, credentials=credentials)

    async def delete(self, settings: Any, key: Any = None, *, credentials: Credentials | None = None) -> Any:
        store = await self.stores.open(settings)
        return await store.delete(key, credentials=credentials)

    def database(self) -> EmbeddedDatabase:
        """Embedded database, created on first use."""
        if self._database is None:
            self._database = EmbeddedDatabase(self.settings.database_path)
        return self._database

    async def connect_channel(self, url: str) -> Channel:
        return await self.channel_factory(url, self.settings.channel_subprotocol)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def reset(self) -> None:
        """
        Forget all resources, components and datastores at once.

        Parked waiters are cancelled. Open connections are kept; use
        aclose() to release them.
        """
        self.loader.reset()
        self.registry.clear()
        self.stores.clear()
        logger.info("[runtime] Reset")

    async def aclose(self) -> None:
        """Close datastores, the embedded database and owned HTTP clients."""
        await self.stores.aclose()
        if self._database is not None:
            await self._database.close()
            self._database = None
        await self.loader.close()
        logger.info("[runtime] Closed")

    async def __aenter__(self) -> Runtime:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return (
            f"<Runtime resources={len(self.loader.cache)} components={len(self.registry)} "
            f"datastores={len(self.stores)}>"
        )
